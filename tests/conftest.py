import gzip
import hashlib
import hmac
import io
import shutil
import tarfile
from pathlib import Path

import pytest

from aptfleet.catalog import ResourceCatalog
from aptfleet.compiler import RepositoryCompiler
from aptfleet.config import DistributionConfig, NodeConfig, RepositoryConfig
from aptfleet.errors import KeyUnavailable

KEY_ID = "0123456789ABCDEF"


class FakeSigner:
    """HMAC stand-in for GnuPG implementing the Signer protocol."""

    def __init__(self, secret: bytes = b"fleet-test-key", available: bool = True):
        self.secret = secret
        self.available = available
        self.calls = 0

    def _mac(self, payload: bytes, key_id: str) -> str:
        return hmac.new(self.secret, key_id.encode() + b"\0" + payload, hashlib.sha256).hexdigest()

    def sign(self, payload: bytes, key_id: str) -> str:
        if not self.available:
            raise KeyUnavailable(f"Secret key {key_id} is not in the keyring")
        self.calls += 1
        return f"-----BEGIN FAKE SIGNATURE-----\n{key_id}:{self._mac(payload, key_id)}\n-----END FAKE SIGNATURE-----\n"

    def clearsign(self, payload: bytes, key_id: str) -> str:
        return "-----BEGIN FAKE SIGNED MESSAGE-----\n" + payload.decode() + self.sign(payload, key_id)

    def verify(self, payload: bytes, signature: str) -> bool:
        lines = signature.splitlines()
        if len(lines) < 2 or ":" not in lines[1]:
            return False
        key_id, mac = lines[1].split(":", 1)
        return hmac.compare_digest(mac, self._mac(payload, key_id))

    def public_key(self, key_id: str) -> str:
        return f"-----BEGIN PGP PUBLIC KEY BLOCK-----\n\nfake {key_id}\n-----END PGP PUBLIC KEY BLOCK-----\n"


def _ar_member(name: str, data: bytes) -> bytes:
    header = f"{name:<16}{0:<12}{0:<6}{0:<6}{100644:<8}{len(data):<10}`\n".encode()
    return header + data + (b"\n" if len(data) % 2 else b"")


def _tar_gz(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return gzip.compress(buf.getvalue(), mtime=0)


def build_deb(
    directory: Path,
    package: str,
    version: str,
    architecture: str = "amd64",
    section: str = "misc",
    filename: str | None = None,
    payload: bytes = b"",
) -> Path:
    """Write a real (if tiny) binary package; the same arguments always give the same bytes."""
    control = (
        f"Package: {package}\n"
        f"Version: {version}\n"
        f"Architecture: {architecture}\n"
        "Maintainer: Fleet Ops <ops@example.com>\n"
        f"Section: {section}\n"
        "Priority: optional\n"
        f"Description: {package} test package\n"
        " Built by the test suite.\n"
    )
    readme = f"{package} {version}\n".encode() + payload
    data = (
        b"!<arch>\n"
        + _ar_member("debian-binary", b"2.0\n")
        + _ar_member("control.tar.gz", _tar_gz({"./control": control.encode()}))
        + _ar_member("data.tar.gz", _tar_gz({f"./usr/share/doc/{package}/README": readme}))
    )
    upstream = version.split(":", 1)[-1]
    path = directory / (filename or f"{package}_{upstream}_{architecture}.deb")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def write_changes(
    directory: Path,
    name: str,
    distribution: str,
    files: list[Path],
    sections: dict[str, str] | None = None,
    missing: list[tuple[str, int]] = (),
) -> Path:
    """Write a .changes manifest listing files (and names that were never uploaded)."""
    sections = sections or {}
    entries = []
    for path in files:
        data = path.read_bytes()
        entries.append(
            (path.name, len(data), hashlib.md5(data).hexdigest(), hashlib.sha256(data).hexdigest())
        )
    for missing_name, size in missing:
        entries.append((missing_name, size, "0" * 32, "0" * 64))

    checksums = "".join(f" {sha} {size} {n}\n" for n, size, _, sha in entries)
    listing = "".join(f" {md5} {size} {sections.get(n, 'misc')} optional {n}\n" for n, size, md5, _ in entries)
    text = (
        "Format: 1.8\n"
        "Date: Sun, 18 Oct 2026 09:00:00 +0000\n"
        f"Source: {name}\n"
        "Architecture: amd64\n"
        "Version: 1.0\n"
        f"Distribution: {distribution}\n"
        "Maintainer: Fleet Ops <ops@example.com>\n"
        "Changes:\n"
        f" {name} (1.0) {distribution}; urgency=medium\n"
        f"Checksums-Sha256:\n{checksums}"
        f"Files:\n{listing}"
    )
    path = directory / f"{name}_1.0_amd64.changes"
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def repo_config(tmp_path) -> RepositoryConfig:
    return RepositoryConfig(
        name="fleet",
        basedir=tmp_path / "repo",
        domain="apt.example.com",
        key_id=KEY_ID,
        distributions=[
            DistributionConfig(
                name="stable",
                architectures=frozenset({"amd64", "arm64"}),
                components=frozenset({"main", "contrib"}),
                description="Fleet packages",
            )
        ],
    )


@pytest.fixture
def compiler(repo_config, signer) -> RepositoryCompiler:
    return RepositoryCompiler(repo_config, signer)


@pytest.fixture
def intake(compiler) -> Path:
    path = compiler.store.intake_dir("stable")
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def make_deb(tmp_path):
    """Build a package once in a scratch directory and copy it wherever it is needed."""
    cache = tmp_path / "built"

    def _make(target: Path, package: str, version: str, **kwargs) -> Path:
        built = build_deb(cache, package, version, **kwargs)
        target.mkdir(parents=True, exist_ok=True)
        return Path(shutil.copy(built, target / built.name))

    return _make


@pytest.fixture
def catalog(tmp_path) -> ResourceCatalog:
    return ResourceCatalog.from_url(f"sqlite:///{tmp_path / 'catalog.db'}")


@pytest.fixture
def node_config(tmp_path, catalog) -> NodeConfig:
    return NodeConfig(
        node_id="fleet-a",
        tags=frozenset({"web"}),
        catalog_url=str(catalog.engine.url),
        sources_dir=tmp_path / "node" / "sources.list.d",
        keyrings_dir=tmp_path / "node" / "keyrings",
        hosts_file=tmp_path / "node" / "hosts",
    )
