from __future__ import annotations

from typing import Callable
import logging

from .archive import get_archive_directories
from .host import Host

logger = logging.getLogger(__name__)


class PackageLocator:
    def __init__(
        self,
        *,
        host: Host,
        kind: str,
        list_directories: Callable[[str], list[str]] = get_archive_directories,
    ) -> None:
        self.host = host
        self.kind = kind
        self.list_directories = list_directories

    def resolve(self, archive: str) -> str | None:
        candidates = self.list_directories(archive)
        installed = self.host.installed_packages(self.kind)
        for candidate in candidates:
            match = match_installed(candidate, installed)
            if match is not None:
                logger.info("archive %s matches installed %s %s", archive, self.kind, match)
                return match

        logger.info("archive %s matches no installed %s; treating as new installation", archive, self.kind)
        return None


def match_installed(candidate: str, installed: list[str]) -> str | None:
    for package_id in installed:
        if package_id == candidate or candidate in package_id.split("/"):
            return package_id
    return None
