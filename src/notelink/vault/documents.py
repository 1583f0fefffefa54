"""Filesystem-backed document store for a markdown vault."""

import fnmatch
from pathlib import Path
from typing import Any

from ..errors import ContentError
from ..fsutil import atomic_write_text


class VaultDocumentStore:
    """Reads and writes markdown documents addressed by vault-relative POSIX paths."""

    def __init__(
        self,
        vault_path: str | Path,
        excluded_folders: list[str] | None = None,
        excluded_patterns: list[str] | None = None,
    ):
        self.vault_path = Path(vault_path)
        self.excluded_folders = [f.strip("/") for f in (excluded_folders or []) if f.strip("/")]
        self.excluded_patterns = list(excluded_patterns or [])

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> "VaultDocumentStore":
        return cls(
            config["vault_path"],
            excluded_folders=config.get("excluded_folders", []),
            excluded_patterns=config.get("excluded_patterns", []),
        )

    def _is_excluded(self, location: str) -> bool:
        for folder in self.excluded_folders:
            if location == folder or location.startswith(folder + "/"):
                return True
        parts = location.split("/")
        if any(part.startswith(".") for part in parts):
            return True
        name = parts[-1]
        return any(
            fnmatch.fnmatch(location, pat) or fnmatch.fnmatch(name, pat)
            for pat in self.excluded_patterns
        )

    def list_documents(self, scope: str = "/") -> list[str]:
        """All markdown documents under scope, minus exclusions, sorted."""
        if not self.vault_path.exists():
            return []
        scope = scope.strip("/")
        root = self.vault_path / scope if scope else self.vault_path
        if not root.exists():
            return []
        locations = []
        for md_file in root.rglob("*.md"):
            if not md_file.is_file():
                continue
            location = md_file.relative_to(self.vault_path).as_posix()
            if not self._is_excluded(location):
                locations.append(location)
        return sorted(locations)

    def path(self, location: str) -> Path:
        return self.vault_path / location

    def location_of(self, path: str | Path) -> str | None:
        """Vault-relative location for an absolute path, or None if outside the vault."""
        try:
            return Path(path).resolve().relative_to(self.vault_path.resolve()).as_posix()
        except ValueError:
            return None

    def is_tracked(self, location: str) -> bool:
        return location.endswith(".md") and not self._is_excluded(location)

    def exists(self, location: str) -> bool:
        return self.path(location).is_file()

    def read(self, location: str) -> str:
        """Raises ContentError if the document is not valid UTF-8."""
        try:
            return self.path(location).read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ContentError(f"{location} is not valid UTF-8: {e}", item_id=location) from e

    def write(self, location: str, text: str) -> None:
        atomic_write_text(self.path(location), text)
