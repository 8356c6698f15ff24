"""Filesystem document store rooted at a vault directory."""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional

from ..sync.services import DocumentStore, DocumentStoreError


logger = logging.getLogger(__name__)


class VaultDocumentStore(DocumentStore):
    """Markdown documents under a root directory.

    Paths handed in and out are relative and ``/``-separated. Folders listed
    in ``excluded_folders`` (for example the sync's own System folder) are
    never listed.
    """

    def __init__(self, root: Path, excluded_folders: Optional[Iterable[str]] = None):
        self.root = Path(root).expanduser()
        self.excluded_folders = {folder.strip("/") for folder in (excluded_folders or [])}
        self.logger = logging.getLogger(__name__)

    def _resolve(self, path: str) -> Path:
        full = (self.root / path).resolve()
        root = self.root.resolve()
        if full != root and root not in full.parents:
            raise DocumentStoreError(f"Path escapes the vault: {path}")
        return full

    def _is_excluded(self, relative: str) -> bool:
        first = relative.split("/", 1)[0]
        return first in self.excluded_folders or first.startswith(".")

    async def read(self, path: str) -> str:
        try:
            return self._resolve(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise DocumentStoreError(f"Failed to read {path}: {e}") from e

    async def write(self, path: str, text: str) -> None:
        target = self._resolve(path)
        try:
            self._write_atomic(target, text)
        except OSError as e:
            raise DocumentStoreError(f"Failed to write {path}: {e}") from e
        self.logger.debug(f"Wrote {path}")

    @staticmethod
    def _write_atomic(target: Path, text: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp_path, target)

    async def list(self) -> List[str]:
        if not self.root.exists():
            return []
        paths = []
        for file_path in sorted(self.root.rglob("*.md")):
            relative = file_path.relative_to(self.root).as_posix()
            if not self._is_excluded(relative):
                paths.append(relative)
        return paths

    async def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    async def create_dir(self, path: str) -> None:
        try:
            self._resolve(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DocumentStoreError(f"Failed to create {path}: {e}") from e
