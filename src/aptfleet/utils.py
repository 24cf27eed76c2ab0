import datetime
import hashlib
import logging
import os
import shutil
import tempfile
from collections.abc import Iterable
from pathlib import Path

from dateutil.parser import parse as parse_date

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def try_parse_date(date_str: str | None) -> datetime.datetime | None:
    """Try to parse a date string into a timestamp.

    Args:
        date_str: The date string to parse (e.g., the Date field of a Release file)

    Returns:
        The parsed timestamp, or None if parsing failed or date_str is None
    """

    try:
        return parse_date(date_str) if date_str else None
    except Exception as e:
        logger.debug(f"Failed to parse date '{date_str}': {e}")
        return None


def file_digests(path: Path) -> dict[str, str]:
    """Return md5, sha1 and sha256 hex digests of a file, read in one pass."""
    hashes = {name: hashlib.new(name) for name in ("md5", "sha1", "sha256")}
    with path.open("rb") as handle:
        while chunk := handle.read(CHUNK_SIZE):
            for h in hashes.values():
                h.update(chunk)
    return {name: h.hexdigest() for name, h in hashes.items()}


def sha256_file(path: Path) -> str:
    return file_digests(path)["sha256"]


def atomic_write(path: Path, data: bytes | str, mode: int = 0o644) -> None:
    """Write a file so readers see either the old or the new content, never a mix."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def atomic_copy(source: Path, target: Path) -> None:
    """Copy a file into place via a temporary sibling and a rename."""
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_name(f".{target.name}.tmp")
    try:
        shutil.copyfile(source, tmp)
        os.replace(tmp, target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def preferred_order(names: Iterable[str], preferred: list[str]) -> list[str]:
    """Sort names by a preferred ordering, unknown names alphabetically after the known ones."""
    names = set(names)
    not_in_ordered = sorted(n for n in names if n not in preferred)
    n_ordered = len(preferred)

    def sort_fn(c):
        if c in preferred:
            return preferred.index(c)
        return n_ordered + not_in_ordered.index(c)

    return sorted(names, key=sort_fn)
