import gzip
from datetime import UTC, datetime

from aptfleet.config import DistributionConfig
from aptfleet.metadata import (
    index_digest,
    read_packages,
    release_fields,
    render_indices,
    render_packages,
    render_release,
)
from aptfleet.models import IndexEntry

DATE = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def entry(name: str, version: str, arch: str = "amd64") -> IndexEntry:
    return IndexEntry(
        control={
            "Package": name,
            "Version": version,
            "Architecture": arch,
            "Description": f"{name} package\n With a long description.",
        },
        filename=f"pool/main/{name[0]}/{name}/{name}_{version}_{arch}.deb",
        size=1234,
        md5="a" * 32,
        sha1="b" * 40,
        sha256="c" * 64,
    )


def dist(**kwargs) -> DistributionConfig:
    fields = {"name": "stable", "origin": "fleet", "label": "fleet", "suite": "stable", "signing_key_id": "KEY"}
    return DistributionConfig(**(fields | kwargs))


def test_packages_round_trip(tmp_path):
    entries = [entry("hello", "1.0-1"), entry("tools", "2.0", "all")]
    data = render_packages(entries)
    path = tmp_path / "Packages"
    path.write_bytes(data)

    parsed = list(read_packages(path))

    assert parsed == entries
    assert render_packages(parsed) == data
    assert b"\n\nPackage: tools\n" in data
    assert b"Filename: pool/main/h/hello/hello_1.0-1_amd64.deb\nSize: 1234\n" in data


def test_indices_are_reproducible():
    index = {("main", "amd64"): [entry("hello", "1.0-1")], ("main", "arm64"): []}

    first = render_indices(index)
    second = render_indices(index)

    assert first == second
    assert set(first) == {
        "main/binary-amd64/Packages",
        "main/binary-amd64/Packages.gz",
        "main/binary-arm64/Packages",
        "main/binary-arm64/Packages.gz",
    }
    assert gzip.decompress(first["main/binary-amd64/Packages.gz"]) == first["main/binary-amd64/Packages"]
    assert first["main/binary-arm64/Packages"] == b""


def test_release_layout():
    files = render_indices({("main", "amd64"): [entry("hello", "1.0-1")]})

    release = render_release(dist(description="Fleet packages"), files, DATE).decode()
    lines = release.splitlines()

    assert lines[:5] == [
        "Origin: fleet",
        "Label: fleet",
        "Suite: stable",
        "Codename: stable",
        "Date: Sun, 18 Oct 2026 09:00:00 GMT",
    ]
    assert "Architectures: amd64" in lines
    assert "Components: main" in lines
    assert "Description: Fleet packages" in lines
    sha256 = lines.index("SHA256:")
    assert lines[sha256 + 1].endswith(" main/binary-amd64/Packages")
    # sizes are right-aligned into one column
    assert len({len(line) - len(line.split()[-1]) for line in lines[sha256 + 1 : sha256 + 3]}) == 1


def test_release_automatic_flags():
    assert "NotAutomatic" not in release_fields(dist())
    assert release_fields(dist(not_automatic=True))["NotAutomatic"] == "yes"
    assert "ButAutomaticUpgrades" not in release_fields(dist(not_automatic=True))
    assert release_fields(dist(not_automatic=True, auto_promote=True))["ButAutomaticUpgrades"] == "yes"


def test_digest_tracks_content_and_signing_key():
    files = render_indices({("main", "amd64"): [entry("hello", "1.0-1")]})
    other = render_indices({("main", "amd64"): [entry("hello", "1.0-2")]})

    assert index_digest(dist(), files) == index_digest(dist(), files)
    assert index_digest(dist(), files) != index_digest(dist(), other)
    assert index_digest(dist(), files) != index_digest(dist(signing_key_id="OTHER"), files)
