from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock
import zipfile

import pytest
import requests

from package_upgrade_guard.archive import (
    ArchiveError,
    download_archive,
    get_archive_directories,
    is_remote_reference,
    list_top_level_directories,
    local_archive,
)


def _zip(path: Path, names: list[str]) -> Path:
    with zipfile.ZipFile(path, "w") as archive:
        for name in names:
            archive.writestr(name, "payload")
    return path


def test_list_top_level_directories_keeps_listing_order_without_duplicates(tmp_path: Path) -> None:
    archive_path = _zip(
        tmp_path / "bundle.zip",
        ["zeta/zeta.pkg", "zeta/lib/a.py", "alpha/alpha.pkg", "README.txt", "zeta/lib/b.py"],
    )

    assert list_top_level_directories(archive_path) == ["zeta", "alpha"]


def test_list_top_level_directories_with_corrupt_zip_raises_archive_error(tmp_path: Path) -> None:
    archive_path = tmp_path / "broken.zip"
    archive_path.write_bytes(b"not a zip file")

    with pytest.raises(ArchiveError, match="unable to read archive"):
        list_top_level_directories(archive_path)


def test_local_archive_with_missing_file_raises_archive_error(tmp_path: Path) -> None:
    with pytest.raises(ArchiveError, match="archive not found"):
        with local_archive(str(tmp_path / "missing.zip")):
            pass


def test_is_remote_reference_only_accepts_http_schemes() -> None:
    assert is_remote_reference("https://downloads.example.test/alpha.zip")
    assert is_remote_reference("http://downloads.example.test/alpha.zip")
    assert not is_remote_reference("/srv/packages/alpha.zip")
    assert not is_remote_reference("ftp://downloads.example.test/alpha.zip")


def test_get_archive_directories_downloads_remote_archives(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    payload = _zip(tmp_path / "source.zip", ["alpha/alpha.pkg"]).read_bytes()
    response = MagicMock()
    response.__enter__.return_value = response
    response.iter_content.return_value = [payload]
    get = MagicMock(return_value=response)
    monkeypatch.setattr("package_upgrade_guard.archive.requests.get", get)

    directories = get_archive_directories("https://downloads.example.test/alpha.zip", timeout_seconds=7)

    assert directories == ["alpha"]
    get.assert_called_once_with("https://downloads.example.test/alpha.zip", timeout=7, stream=True)


def test_download_archive_with_http_error_raises_and_removes_partial_file(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    response = MagicMock()
    response.__enter__.return_value = response
    response.raise_for_status.side_effect = requests.HTTPError("404 Client Error: Not Found")
    monkeypatch.setattr("package_upgrade_guard.archive.requests.get", MagicMock(return_value=response))
    destination = tmp_path / "downloads" / "alpha.zip"

    with pytest.raises(ArchiveError, match="404 Client Error"):
        download_archive("https://downloads.example.test/alpha.zip", destination)

    assert not destination.exists()
