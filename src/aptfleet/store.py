"""Intake, quarantine, pool and snapshot storage under a repository base directory.

Layout::

    {basedir}/incoming/{dist}/          intake, one per distribution
    {basedir}/quarantine/{dist}/        rejected files plus a <file>.reason note
    {basedir}/snapshots/{dist}/{digest} compiled snapshots
    {basedir}/reports/{dist}.json       report of the last compile
    {basedir}/tmp/                      staging, same filesystem as the snapshots
    {docroot}/pool/...                  immutable package pool
    {docroot}/dists/{dist}              symlink to the live snapshot
"""

import fcntl
import logging
import os
import re
import shutil
import tarfile
import zlib
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from debian import arfile, deb822, debfile
from debian.debian_support import Version

from aptfleet.config import DistributionConfig, RepositoryConfig
from aptfleet.errors import PackageValidationError, PublishError, StoreLocked
from aptfleet.models import CompileReport, PackageFile
from aptfleet.utils import atomic_copy, atomic_write, file_digests, sha256_file

logger = logging.getLogger(__name__)

DEB_SUFFIX = ".deb"
CHANGES_SUFFIX = ".changes"
SIDECAR_SUFFIX = ".sha256"
REASON_SUFFIX = ".reason"

PACKAGE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9+.-]+$")


@dataclass
class Upload:
    """A .changes manifest and the intake files it references."""

    manifest: Path
    files: list[Path] = field(default_factory=list)


@dataclass
class IntakeScan:
    """Everything found in one distribution's intake at trigger time."""

    candidates: list[PackageFile] = field(default_factory=list)
    rejected: list[PackageValidationError] = field(default_factory=list)
    pending: list[Path] = field(default_factory=list)
    uploads: list[Upload] = field(default_factory=list)


def read_control(path: Path) -> deb822.Deb822:
    """Return the control stanza of a .deb archive."""
    try:
        with path.open("rb") as handle:
            return debfile.DebFile(fileobj=handle).debcontrol()
    except (debfile.DebError, arfile.ArError, tarfile.TarError, zlib.error, EOFError, KeyError, ValueError) as e:
        raise PackageValidationError(path, f"unreadable package archive: {e}") from e


def component_for_section(section: str | None, dist: DistributionConfig) -> str:
    """'contrib/net' belongs to contrib; a bare section falls in the default component."""
    if section and "/" in section:
        return section.split("/", 1)[0]
    return dist.default_component


class PackageStore:
    """Path-addressed storage owned by the Repository Compiler."""

    def __init__(self, basedir: Path, docroot: Path):
        self.basedir = basedir
        self.docroot = docroot

    @classmethod
    def from_config(cls, config: RepositoryConfig) -> "PackageStore":
        return cls(config.basedir, config.docroot)

    def intake_dir(self, dist: str) -> Path:
        return self.basedir / "incoming" / dist

    def quarantine_dir(self, dist: str) -> Path:
        return self.basedir / "quarantine" / dist

    def snapshots_dir(self, dist: str) -> Path:
        return self.basedir / "snapshots" / dist

    def snapshot_dir(self, dist: str, digest: str) -> Path:
        return self.snapshots_dir(dist) / digest

    def report_path(self, dist: str) -> Path:
        return self.basedir / "reports" / f"{dist}.json"

    def live_link(self, dist: str) -> Path:
        return self.docroot / "dists" / dist

    @property
    def tmp_dir(self) -> Path:
        return self.basedir / "tmp"

    def ensure_layout(self, dist: str) -> None:
        for directory in (
            self.intake_dir(dist),
            self.quarantine_dir(dist),
            self.snapshots_dir(dist),
            self.tmp_dir,
            self.live_link(dist).parent,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the single-writer lock for this base directory, or raise StoreLocked."""
        self.basedir.mkdir(parents=True, exist_ok=True)
        with (self.basedir / "lock").open("a") as handle:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                raise StoreLocked(f"{self.basedir} is locked by another compile") from e
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    # intake

    def scan_intake(self, dist: DistributionConfig) -> IntakeScan:
        """Collect candidates from .changes uploads and loose .deb files."""
        scan = IntakeScan()
        intake = self.intake_dir(dist.name)
        if not intake.is_dir():
            return scan

        claimed: set[Path] = set()
        for manifest in sorted(intake.glob(f"*{CHANGES_SUFFIX}")):
            self._scan_upload(manifest, dist, scan, claimed)

        for path in sorted(intake.glob(f"*{DEB_SUFFIX}")):
            if path in claimed:
                continue
            try:
                scan.candidates.append(self.inspect(path, dist, checksum=self._read_sidecar(path)))
            except PackageValidationError as e:
                scan.rejected.append(e)

        logger.debug(
            f"Intake for {dist.name}: {len(scan.candidates)} candidates, "
            f"{len(scan.rejected)} unreadable, {len(scan.pending)} incomplete uploads"
        )
        return scan

    def _scan_upload(self, manifest: Path, dist: DistributionConfig, scan: IntakeScan, claimed: set[Path]) -> None:
        try:
            with manifest.open("rt", encoding="utf-8") as handle:
                changes = deb822.Changes(handle)
            distribution = changes["Distribution"]
            files = {item["name"]: item for item in changes.get("Files", [])}
            checksums = {item["name"]: item["sha256"] for item in changes.get("Checksums-Sha256", [])}
        except (KeyError, TypeError, ValueError) as e:
            scan.rejected.append(PackageValidationError(manifest, f"malformed upload manifest: {e}"))
            return

        if not files:
            scan.rejected.append(PackageValidationError(manifest, "upload manifest lists no files"))
            return
        if unsafe := [name for name in files if Path(name).name != name]:
            scan.rejected.append(PackageValidationError(manifest, f"upload manifest references paths {unsafe}"))
            return

        referenced = [manifest.parent / name for name in sorted(files)]
        quarantine = self.quarantine_dir(dist.name)
        # a file quarantined on an earlier tick no longer holds the upload back
        missing = [p for p in referenced if not p.exists() and not (quarantine / p.name).exists()]
        if missing:
            logger.info(f"Upload {manifest.name} is incomplete, waiting for {[p.name for p in missing]}")
            scan.pending.append(manifest)
            claimed.update(referenced)
            return

        upload = Upload(manifest=manifest)
        for path in referenced:
            if not path.exists():
                continue
            claimed.add(path)
            upload.files.append(path)
            if path.suffix != DEB_SUFFIX:
                continue
            try:
                if path.name not in checksums:
                    raise PackageValidationError(path, f"{manifest.name} carries no SHA-256 checksum for it")
                entry = files[path.name]
                scan.candidates.append(
                    self.inspect(
                        path,
                        dist,
                        checksum=checksums[path.name],
                        declared_size=int(entry["size"]),
                        section=entry.get("section"),
                        distribution=distribution,
                    )
                )
            except PackageValidationError as e:
                scan.rejected.append(e)
        scan.uploads.append(upload)

    def _sidecar(self, path: Path) -> Path:
        return path.with_name(path.name + SIDECAR_SUFFIX)

    def _read_sidecar(self, path: Path) -> str | None:
        sidecar = self._sidecar(path)
        if not sidecar.is_file():
            return None
        tokens = sidecar.read_text(encoding="utf-8").split()
        return tokens[0].lower() if tokens else None

    def inspect(
        self,
        path: Path,
        dist: DistributionConfig,
        checksum: str | None = None,
        declared_size: int | None = None,
        section: str | None = None,
        distribution: str | None = None,
    ) -> PackageFile:
        """Check a candidate's integrity and read its identity from the control file."""
        digests = file_digests(path)
        size = path.stat().st_size
        if checksum is not None and checksum.lower() != digests["sha256"]:
            raise PackageValidationError(
                path, f"checksum mismatch: expected sha256 {checksum}, got {digests['sha256']}"
            )
        if declared_size is not None and declared_size != size:
            raise PackageValidationError(path, f"size mismatch: expected {declared_size} bytes, got {size}")

        control = read_control(path)
        try:
            name = control["Package"]
            version = control["Version"]
            architecture = control["Architecture"]
        except KeyError as e:
            raise PackageValidationError(path, f"control file lacks the {e.args[0]} field") from e

        if not PACKAGE_NAME_RE.match(name):
            raise PackageValidationError(path, f"invalid package name {name!r}")
        try:
            Version(version)
        except ValueError as e:
            raise PackageValidationError(path, f"invalid version {version!r}") from e

        return PackageFile(
            path=path,
            name=name,
            version=version,
            architecture=architecture,
            component=component_for_section(section or control.get("Section"), dist),
            distribution=distribution or dist.name,
            source=control.get("Source", name).split()[0],
            size=size,
            md5=digests["md5"],
            sha1=digests["sha1"],
            sha256=digests["sha256"],
            checksum=checksum,
            declared_size=declared_size,
            control=dict(control),
        )

    def quarantine(self, dist: str, path: Path, reason: str) -> Path:
        """Move a rejected file out of intake, leaving a note with the reason."""
        target_dir = self.quarantine_dir(dist)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / path.name
        os.replace(path, target)
        sidecar = self._sidecar(path)
        if sidecar.exists():
            os.replace(sidecar, target_dir / sidecar.name)
        atomic_write(target_dir / f"{path.name}{REASON_SUFFIX}", reason + "\n")
        logger.warning(f"Quarantined {path.name}: {reason}")
        return target

    def discard(self, paths: Iterable[Path]) -> None:
        """Remove incorporated files from intake."""
        for path in paths:
            path.unlink(missing_ok=True)
            self._sidecar(path).unlink(missing_ok=True)

    def write_report(self, report: CompileReport) -> Path:
        path = self.report_path(report.distribution)
        atomic_write(path, report.model_dump_json(indent=2) + "\n")
        return path

    # pool

    def add_to_pool(self, package: PackageFile) -> str:
        """Copy a package into the pool, returning its path relative to the document root."""
        target = self.docroot / package.pool_path
        if target.exists():
            if sha256_file(target) != package.sha256:
                raise PackageValidationError(
                    package.path, f"{package.pool_path} is already in the pool with different contents"
                )
            return package.pool_path
        atomic_copy(package.path, target)
        logger.debug(f"Added {package.pool_path} to the pool")
        return package.pool_path

    # snapshots

    def staging_dir(self, dist: str, digest: str) -> Path:
        return self.tmp_dir / f"{dist}-{digest[:12]}-{os.getpid()}"

    def live_snapshot(self, dist: str) -> Path | None:
        link = self.live_link(dist)
        if not link.is_symlink():
            return None
        target = link.resolve()
        return target if target.is_dir() else None

    def swap_live(self, dist: str, target: Path) -> None:
        """Point dists/{dist} at a snapshot with a single rename."""
        link = self.live_link(dist)
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.exists() and not link.is_symlink():
            raise PublishError(f"{link} is a real directory, refusing to replace it")

        swap = link.with_name(f".{dist}.swap")
        swap.unlink(missing_ok=True)
        try:
            os.symlink(os.path.relpath(target, link.parent), swap)
            os.replace(swap, link)
        except OSError as e:
            swap.unlink(missing_ok=True)
            raise PublishError(f"Failed to swap {link} to {target.name}: {e}") from e

    def prune_snapshots(self, dist: str, keep: int) -> list[Path]:
        """Delete all but the live snapshot and the keep-1 most recent others."""
        snapshots = self.snapshots_dir(dist)
        if not snapshots.is_dir():
            return []
        live = self.live_snapshot(dist)
        others = [p for p in snapshots.iterdir() if p.is_dir() and p.resolve() != live]
        others.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        pruned = others[max(keep - 1, 0) :]
        for stale in pruned:
            shutil.rmtree(stale)
            logger.debug(f"Pruned snapshot {stale.name} of {dist}")
        return pruned
