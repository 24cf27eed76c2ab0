"""Catalog Compiler: make this node's APT sources and hosts entries match the catalog."""

import ipaddress
import logging
import re
import subprocess
from collections.abc import Iterable
from enum import Enum
from os import utime
from pathlib import Path

import httpx
from pydantic import BaseModel, Field

from aptfleet.catalog import ResourceCatalog
from aptfleet.config import NodeConfig
from aptfleet.constants import MANAGED_PREFIX
from aptfleet.errors import CatalogApplyError
from aptfleet.models import DNSAddress, RepositorySource
from aptfleet.utils import atomic_write, try_parse_date

logger = logging.getLogger(__name__)

HOSTS_BEGIN = "# BEGIN aptfleet managed hosts"
HOSTS_END = "# END aptfleet managed hosts"
MANAGED_HEADER = "# Managed by aptfleet, do not edit."
ARMOR_HEADER = b"-----BEGIN PGP PUBLIC KEY BLOCK-----"
KEY_SUFFIXES = (".asc", ".gpg")

SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.+-]*$")
HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)
HOSTS_LINE_RE = re.compile(r"^(?P<entry>.*?)\s+# (?P<name>\S+)$")


class SkipMode(str, Enum):
    """Key download skip modes.
    FAST: Skip download if the key is already in the keyring directory.
    CHECK: Check Last-Modified and Content-Length headers to decide.
    NONE: Always download.
    """

    FAST = "fast"
    CHECK = "check"
    NONE = "none"


class ReconcileReport(BaseModel):
    """Outcome of one reconcile pass, by resource identity ("kind/name")."""

    node_id: str
    applied: list[str] = Field(default_factory=list)
    unchanged: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.applied or self.removed)


def _label(kind: str, name: str) -> str:
    return f"{kind}/{name}"


def _check_token(resource, field: str, value: str) -> None:
    if not value or any(c.isspace() for c in value):
        raise CatalogApplyError(resource.identity, f"{field} {value!r} must be a single non-empty word")


def split_hosts(text: str) -> tuple[list[str], dict[str, str], list[str]]:
    """Split a hosts file into (lines before, managed lines by name, lines after)."""
    before: list[str] = []
    managed: dict[str, str] = {}
    after: list[str] = []
    current = before
    for line in text.splitlines():
        if line == HOSTS_BEGIN:
            current = None
            continue
        if line == HOSTS_END:
            current = after
            continue
        if current is None:
            if match := HOSTS_LINE_RE.match(line):
                managed[match["name"]] = line
        else:
            current.append(line)
    return before, managed, after


class CatalogCompiler:
    """Applies the resources this node pulls from the catalog, one at a time."""

    def __init__(
        self,
        catalog: ResourceCatalog,
        node: NodeConfig,
        client: httpx.Client | None = None,
        skip_mode: SkipMode = SkipMode.FAST,
    ):
        self.catalog = catalog
        self.node = node
        self.client = client
        self.skip_mode = skip_mode

    def reconcile(self) -> ReconcileReport:
        resources, malformed = self.catalog.pull_checked(self.node.tags)
        report = ReconcileReport(node_id=self.node.node_id)
        logger.debug(f"{self.node.node_id} pulled {len(resources)} resource(s) for tags {sorted(self.node.tags)}")

        keep: set[Path] = set()
        held_hosts: set[str] = set()
        for (kind, name), reason in malformed.items():
            logger.error(f"Failed to apply {_label(kind, name)}: {reason}")
            report.failed[_label(kind, name)] = reason
            # whatever was applied from an earlier, valid declaration stays
            if kind == "repository_source" and SAFE_NAME_RE.match(name):
                keep |= self._managed_files(name)
            elif kind == "dns_address":
                held_hosts.add(name)

        owns_client = self.client is None
        client = self.client or httpx.Client(follow_redirects=True, timeout=30.0)
        try:
            for source in (r for r in resources if isinstance(r, RepositorySource)):
                label = _label(*source.identity)
                try:
                    changed, files = self.apply_source(source, client)
                except CatalogApplyError as e:
                    logger.error(f"Failed to apply {label}: {e.reason}")
                    report.failed[label] = e.reason
                    # leave whatever was applied before in place
                    if SAFE_NAME_RE.match(source.name):
                        keep |= self._managed_files(source.name)
                    continue
                keep |= files
                (report.applied if changed else report.unchanged).append(label)
        finally:
            if owns_client:
                client.close()

        report.removed.extend(self._remove_stale_sources(keep))
        self.apply_hosts([r for r in resources if isinstance(r, DNSAddress)], report, held=held_hosts)

        if report.changed and self.node.refresh_command:
            self._refresh(report)
        logger.info(
            f"Reconciled {self.node.node_id}: {len(report.applied)} applied, {len(report.unchanged)} unchanged, "
            f"{len(report.removed)} removed, {len(report.failed)} failed"
        )
        return report

    # APT sources

    def list_path(self, name: str) -> Path:
        return self.node.sources_dir / f"{MANAGED_PREFIX}{name}.list"

    def key_path(self, name: str, armored: bool = True) -> Path:
        return self.node.keyrings_dir / f"{MANAGED_PREFIX}{name}{'.asc' if armored else '.gpg'}"

    def _existing_key(self, name: str) -> Path | None:
        for armored in (True, False):
            if (path := self.key_path(name, armored)).is_file():
                return path
        return None

    def _managed_files(self, name: str) -> set[Path]:
        return {self.list_path(name), self.key_path(name, True), self.key_path(name, False)}

    def apply_source(self, source: RepositorySource, client: httpx.Client) -> tuple[bool, set[Path]]:
        """Write the key and source list for one repository.

        Returns:
            Whether anything on disk changed, and the managed files backing the source.
        """
        if not SAFE_NAME_RE.match(source.name):
            raise CatalogApplyError(source.identity, "name is not usable as a file name")
        _check_token(source, "location", source.location)
        _check_token(source, "distribution", source.distribution)
        if not source.components:
            raise CatalogApplyError(source.identity, "no components")
        for component in source.components:
            _check_token(source, "component", component)

        key_changed, key_path = self.fetch_key(source, client)

        options = f"[signed-by={key_path}] " if key_path else ""
        target = f"{source.location} {source.distribution} {' '.join(source.components)}"
        lines = [MANAGED_HEADER, f"# {_label(*source.identity)}"]
        if source.key_id:
            lines.append(f"# key {source.key_id}")
        lines.append(f"deb {options}{target}")
        if source.include_source:
            lines.append(f"deb-src {options}{target}")
        content = "\n".join(lines) + "\n"

        list_path = self.list_path(source.name)
        list_changed = not list_path.is_file() or list_path.read_text(encoding="utf-8") != content
        if list_changed:
            try:
                atomic_write(list_path, content)
            except OSError as e:
                raise CatalogApplyError(source.identity, f"unable to write {list_path}: {e}") from e
            logger.info(f"Wrote {list_path}")

        files = {list_path}
        if key_path:
            files.add(key_path)
        return key_changed or list_changed, files

    def fetch_key(self, source: RepositorySource, client: httpx.Client) -> tuple[bool, Path | None]:
        """Download the signing key of a source into the keyring directory.

        Returns:
            Whether the key file changed, and its path (None when the source manages no key).
        """
        if not source.key_source:
            return False, None

        existing = self._existing_key(source.name)
        if existing and self.skip_mode == SkipMode.FAST:
            logger.debug(f"Skipping key download, file already exists: {existing}")
            return False, existing

        try:
            if existing and self.skip_mode == SkipMode.CHECK:
                response = client.head(source.key_source)
                response.raise_for_status()
                if last_modified := try_parse_date(response.headers.get("last-modified")):
                    # allow a second for fs granularity
                    if last_modified.timestamp() <= existing.stat().st_mtime + 1:
                        logger.debug(f"Skipping key download, local file mtime matches: {existing}")
                        return False, existing

            response = client.get(source.key_source)
            response.raise_for_status()
        except httpx.HTTPError as e:
            if existing:
                logger.warning(f"Unable to refresh key for {source.name} from {source.key_source}, keeping {existing}: {e}")
                return False, existing
            raise CatalogApplyError(source.identity, f"unable to download key from {source.key_source}: {e}") from e

        data = response.content
        if not data.strip():
            raise CatalogApplyError(source.identity, f"empty key downloaded from {source.key_source}")

        path = self.key_path(source.name, armored=data.lstrip().startswith(ARMOR_HEADER))
        changed = existing != path or path.read_bytes() != data
        try:
            if changed:
                atomic_write(path, data)
                logger.info(f"Wrote key for {source.name} to {path}")
            if existing and existing != path:
                existing.unlink()
            if last_modified := try_parse_date(response.headers.get("last-modified")):
                utime(path, (last_modified.timestamp(), last_modified.timestamp()))
        except OSError as e:
            raise CatalogApplyError(source.identity, f"unable to write {path}: {e}") from e
        return changed, path

    def _remove_stale_sources(self, keep: set[Path]) -> list[str]:
        removed: list[str] = []
        candidates = []
        if self.node.sources_dir.is_dir():
            candidates.extend(self.node.sources_dir.glob(f"{MANAGED_PREFIX}*.list"))
        if self.node.keyrings_dir.is_dir():
            for suffix in KEY_SUFFIXES:
                candidates.extend(self.node.keyrings_dir.glob(f"{MANAGED_PREFIX}*{suffix}"))

        for path in sorted(candidates):
            if path in keep:
                continue
            path.unlink(missing_ok=True)
            logger.info(f"Removed stale {path}")
            label = _label("repository_source", path.stem.removeprefix(MANAGED_PREFIX))
            if label not in removed:
                removed.append(label)
        return removed

    # hosts

    def host_line(self, address: DNSAddress) -> str:
        try:
            ip = ipaddress.ip_address(address.ip)
        except ValueError as e:
            raise CatalogApplyError(address.identity, f"invalid IP address {address.ip!r}") from e
        names = [address.fqdn, *address.aliases]
        for hostname in names:
            if not HOSTNAME_RE.match(hostname):
                raise CatalogApplyError(address.identity, f"invalid hostname {hostname!r}")
        if any(c.isspace() for c in address.name):
            raise CatalogApplyError(address.identity, "name must not contain whitespace")
        return f"{ip} {' '.join(names)}  # {address.name}"

    def apply_hosts(
        self, addresses: list[DNSAddress], report: ReconcileReport, held: Iterable[str] = ()
    ) -> None:
        """Rebuild the managed block of the hosts file from the pulled addresses.

        Names in held keep their current line, if they have one.
        """
        path = self.node.hosts_file
        text = path.read_text(encoding="utf-8") if path.is_file() else ""
        before, previous, after = split_hosts(text)

        block: dict[str, str] = {name: previous[name] for name in held if name in previous}
        for address in addresses:
            label = _label(*address.identity)
            try:
                block[address.name] = self.host_line(address)
            except CatalogApplyError as e:
                logger.error(f"Failed to apply {label}: {e.reason}")
                report.failed[label] = e.reason
                if address.name in previous:
                    block[address.name] = previous[address.name]
                continue
            if previous.get(address.name) == block[address.name]:
                report.unchanged.append(label)
            else:
                report.applied.append(label)

        for name in sorted(previous.keys() - block.keys()):
            logger.info(f"Removing stale hosts entry for {name}")
            report.removed.append(_label("dns_address", name))

        lines = list(before)
        if block:
            lines.append(HOSTS_BEGIN)
            lines.extend(block[name] for name in sorted(block))
            lines.append(HOSTS_END)
        lines.extend(after)
        content = "\n".join(lines) + "\n" if lines else ""
        if content != text:
            atomic_write(path, content)
            logger.info(f"Updated managed hosts block in {path}")

    def _refresh(self, report: ReconcileReport) -> None:
        command = self.node.refresh_command
        logger.info(f"Running {' '.join(command)}")
        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            logger.error(f"{' '.join(command)} exited with {e.returncode}: {e.stderr.strip()}")
            report.failed["refresh"] = f"exit status {e.returncode}"
        except OSError as e:
            logger.error(f"Unable to run {' '.join(command)}: {e}")
            report.failed["refresh"] = str(e)
