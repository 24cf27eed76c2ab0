"""Package files, Packages index entries and compiled snapshots."""

from datetime import datetime
from pathlib import Path
from typing import Annotated

from debian.debian_support import Version
from pydantic import BaseModel, ConfigDict, Field

type OptionalStr = str | None
ControlFields = Annotated[dict[str, str], Field(default_factory=dict, repr=False)]

# fields a Packages stanza adds on top of the package's own control file
FILE_FIELDS = ("Filename", "Size", "MD5sum", "SHA1", "SHA256")


def pool_prefix(source: str) -> str:
    """Pool subdirectory for a source package, following the Debian archive layout."""
    if source.startswith("lib") and len(source) > 3:
        return source[:4]
    return source[:1]


class PackageFile(BaseModel):
    """A package artifact dropped into intake."""

    model_config = ConfigDict(frozen=True)

    path: Path
    name: str
    version: str
    architecture: str
    component: str
    distribution: str
    source: str
    size: int
    md5: str
    sha1: str
    sha256: str
    checksum: OptionalStr = None
    declared_size: int | None = None
    control: ControlFields

    @property
    def canonical_filename(self) -> str:
        v = Version(self.version)
        stem = v.upstream_version if not v.debian_revision else f"{v.upstream_version}-{v.debian_revision}"
        return f"{self.name}_{stem}_{self.architecture}.deb"

    @property
    def pool_path(self) -> str:
        return f"pool/{self.component}/{pool_prefix(self.source)}/{self.source}/{self.canonical_filename}"


class IndexEntry(BaseModel):
    """One stanza of a Packages index."""

    control: ControlFields
    filename: str
    size: int
    md5: str
    sha1: str
    sha256: str

    @property
    def name(self) -> str:
        return self.control["Package"]

    @property
    def version(self) -> str:
        return self.control["Version"]

    @property
    def architecture(self) -> str:
        return self.control["Architecture"]

    def sort_key(self) -> tuple[str, Version]:
        return (self.name, Version(self.version))

    @classmethod
    def from_package(cls, package: PackageFile) -> "IndexEntry":
        control = {k: v for k, v in package.control.items() if k not in FILE_FIELDS}
        return cls(
            control=control,
            filename=package.pool_path,
            size=package.size,
            md5=package.md5,
            sha1=package.sha1,
            sha256=package.sha256,
        )

    @classmethod
    def from_stanza(cls, stanza: dict[str, str]) -> "IndexEntry":
        return cls(
            control={k: v for k, v in stanza.items() if k not in FILE_FIELDS},
            filename=stanza["Filename"],
            size=int(stanza["Size"]),
            md5=stanza["MD5sum"],
            sha1=stanza["SHA1"],
            sha256=stanza["SHA256"],
        )

    def file_fields(self) -> dict[str, str]:
        return dict(zip(FILE_FIELDS, (self.filename, str(self.size), self.md5, self.sha1, self.sha256)))


GroupKey = tuple[str, str]


class RepositorySnapshot(BaseModel):
    """A compiled, signed, servable state of one distribution."""

    distribution_name: str
    index: dict[GroupKey, list[IndexEntry]] = Field(default_factory=dict, repr=False)
    release: str = Field(repr=False)
    metadata_signature: str = Field(repr=False)
    digest: str
    date: datetime | None = None
    path: Path

    @property
    def package_count(self) -> int:
        return len({entry.sha256 for entries in self.index.values() for entry in entries})


class QuarantineRecord(BaseModel):
    path: Path
    reason: str


class CompileReport(BaseModel):
    """What one compile tick did for one distribution."""

    distribution: str
    accepted: list[Path] = Field(default_factory=list)
    duplicates: list[Path] = Field(default_factory=list)
    quarantined: list[QuarantineRecord] = Field(default_factory=list)
    pending: list[Path] = Field(default_factory=list)
    changed: bool = False
    snapshot: RepositorySnapshot | None = Field(default=None, exclude=True)
