"""Rendering and parsing of Packages indices and Release descriptors."""

import gzip
import hashlib
from collections.abc import Iterator
from datetime import UTC, datetime
from email.utils import format_datetime
from pathlib import Path

from debian import deb822

from aptfleet.config import DistributionConfig
from aptfleet.constants import ORDERED_ARCHITECTURES, ORDERED_COMPONENTS
from aptfleet.models import IndexEntry
from aptfleet.models.packages import GroupKey
from aptfleet.utils import preferred_order

RELEASE_HASHES = (("MD5Sum", "md5"), ("SHA1", "sha1"), ("SHA256", "sha256"))


def group_path(component: str, architecture: str) -> str:
    return f"{component}/binary-{architecture}"


def render_packages(entries: list[IndexEntry]) -> bytes:
    """Render index entries as a Packages file, in the order given."""
    stanzas = []
    for entry in entries:
        paragraph = deb822.Packages()
        for key, value in entry.control.items():
            paragraph[key] = value
        for key, value in entry.file_fields().items():
            paragraph[key] = value
        stanzas.append(paragraph.dump())
    return "\n".join(stanzas).encode("utf-8")


def render_indices(index: dict[GroupKey, list[IndexEntry]]) -> dict[str, bytes]:
    """Render every (component, architecture) group, keyed by path under the distribution."""
    files: dict[str, bytes] = {}
    for component, architecture in sorted(index):
        data = render_packages(index[(component, architecture)])
        base = group_path(component, architecture)
        files[f"{base}/Packages"] = data
        # mtime=0 keeps the compressed bytes reproducible
        files[f"{base}/Packages.gz"] = gzip.compress(data, mtime=0)
    return files


def release_fields(dist: DistributionConfig) -> dict[str, str]:
    """Release header fields other than Date and the checksum lists."""
    fields = {
        "Origin": dist.origin,
        "Label": dist.label,
        "Suite": dist.suite,
        "Codename": dist.name,
    }
    if dist.not_automatic:
        fields["NotAutomatic"] = "yes"
        if dist.auto_promote:
            fields["ButAutomaticUpgrades"] = "yes"
    fields["Architectures"] = " ".join(preferred_order(dist.architectures, ORDERED_ARCHITECTURES))
    fields["Components"] = " ".join(preferred_order(dist.components, ORDERED_COMPONENTS))
    if dist.description:
        fields["Description"] = dist.description
    return fields


def index_digest(dist: DistributionConfig, files: dict[str, bytes]) -> str:
    """Identify a snapshot by everything that goes into it except its date and signature."""
    h = hashlib.sha256()
    for key, value in release_fields(dist).items():
        h.update(f"{key}: {value}\n".encode())
    h.update(f"Signed-By: {dist.signing_key_id}\n".encode())
    for name in sorted(files):
        if name.endswith(".gz"):
            continue
        h.update(name.encode() + b"\0")
        h.update(hashlib.sha256(files[name]).digest())
    return h.hexdigest()


def _checksum_block(files: dict[str, bytes], algorithm: str) -> str:
    rows = [(hashlib.new(algorithm, data).hexdigest(), str(len(data)), name) for name, data in sorted(files.items())]
    width = max(len(size) for _, size, _ in rows)
    return "\n" + "\n".join(f" {digest} {size.rjust(width)} {name}" for digest, size, name in rows)


def render_release(dist: DistributionConfig, files: dict[str, bytes], date: datetime) -> bytes:
    """Render the Release descriptor covering every index file."""
    fields = release_fields(dist)
    release = deb822.Deb822()
    for key in ("Origin", "Label", "Suite", "Codename"):
        release[key] = fields.pop(key)
    release["Date"] = format_datetime(date.astimezone(UTC), usegmt=True)
    for key, value in fields.items():
        release[key] = value
    for key, algorithm in RELEASE_HASHES:
        release[key] = _checksum_block(files, algorithm)
    return release.dump().encode("utf-8")


def read_packages(path: Path) -> Iterator[IndexEntry]:
    """Stream index entries from a Packages file."""
    with path.open("rt", encoding="utf-8") as handle:
        for paragraph in deb822.Packages.iter_paragraphs(handle, use_apt_pkg=False):
            yield IndexEntry.from_stanza(dict(paragraph))


def read_release(path: Path) -> deb822.Release:
    return deb822.Release(path.read_text(encoding="utf-8"))


def release_checksums(release: deb822.Release) -> dict[str, tuple[str, int]]:
    """Map each file listed in a Release descriptor to its (sha256, size)."""
    return {item["name"]: (item["sha256"], int(item["size"])) for item in release.get("SHA256", [])}
