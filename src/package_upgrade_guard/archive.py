from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import urlparse
import logging
import tempfile
import zipfile

import requests

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 60
DOWNLOAD_CHUNK_SIZE = 64 * 1024


class ArchiveError(RuntimeError):
    """Raised when an archive reference cannot be fetched or read."""


def is_remote_reference(reference: str) -> bool:
    return urlparse(reference).scheme in {"http", "https"}


def download_archive(
    url: str,
    destination: Path,
    *,
    timeout_seconds: int = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
) -> Path:
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        with requests.get(url, timeout=timeout_seconds, stream=True) as response:
            response.raise_for_status()
            with destination.open("wb") as file_handle:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        file_handle.write(chunk)
    except requests.RequestException as error:
        destination.unlink(missing_ok=True)
        raise ArchiveError(f"download of {url} failed: {_error_message(error)}") from error

    logger.info("downloaded %s to %s", url, destination)
    return destination


@contextmanager
def local_archive(
    reference: str,
    *,
    timeout_seconds: int = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
) -> Iterator[Path]:
    """Yield a local path for ``reference``, downloading remote archives to a temporary file."""
    if not is_remote_reference(reference):
        path = Path(reference).expanduser()
        if not path.is_file():
            raise ArchiveError(f"archive not found at {path}")
        yield path
        return

    with tempfile.TemporaryDirectory(prefix="pug-archive-") as temp_dir:
        name = Path(urlparse(reference).path).name or "package.zip"
        yield download_archive(reference, Path(temp_dir) / name, timeout_seconds=timeout_seconds)


def list_top_level_directories(archive_path: Path) -> list[str]:
    try:
        with zipfile.ZipFile(archive_path) as archive:
            names = archive.namelist()
    except (OSError, zipfile.BadZipFile) as error:
        raise ArchiveError(f"unable to read archive {archive_path}: {_error_message(error)}") from error

    directories: list[str] = []
    for name in names:
        head, separator, _ = name.lstrip("/").partition("/")
        if separator and head and head not in directories:
            directories.append(head)
    return directories


def get_archive_directories(
    reference: str,
    *,
    timeout_seconds: int = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
) -> list[str]:
    with local_archive(reference, timeout_seconds=timeout_seconds) as archive_path:
        return list_top_level_directories(archive_path)


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
