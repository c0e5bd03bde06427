from __future__ import annotations
import os
import secrets
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import aiofiles.os

from .errors import ProtocolError
from .validation import is_valid_path

@dataclass
class FileEntry:
    path: str
    size: int
    modified: int

    def to_wire(self) -> Dict[str, Any]:
        return asdict(self)

def format_size(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    if n < 1024 * 1024 * 1024:
        return f"{n / (1024 * 1024):.1f} MB"
    return f"{n / (1024 * 1024 * 1024):.1f} GB"

class LocalFolder:
    """Filesystem access rooted at one shared directory."""

    def __init__(self, root, logger):
        self.root = Path(root).resolve()
        self.logger = logger

    def resolve(self, rel_path: str) -> Path:
        if not is_valid_path(rel_path):
            raise ProtocolError(f"invalid path: {rel_path!r}")
        target = (self.root / rel_path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ProtocolError(f"path escapes shared folder: {rel_path!r}")
        return target

    def list_entries(self) -> List[FileEntry]:
        entries: List[FileEntry] = []

        def on_error(err: OSError):
            self.logger.warning("list_dir_failed", path=str(err.filename), error=str(err))

        for dirpath, dirnames, filenames in os.walk(self.root, onerror=on_error):
            dirnames.sort()
            for name in sorted(filenames):
                full = Path(dirpath) / name
                rel = full.relative_to(self.root).as_posix()
                try:
                    st = full.stat()
                except OSError as e:
                    self.logger.warning("stat_failed", path=rel, error=str(e))
                    continue
                entries.append(FileEntry(path=rel, size=st.st_size, modified=int(st.st_mtime * 1000)))
        return entries

    async def size_of(self, rel_path: str) -> int:
        st = await aiofiles.os.stat(self.resolve(rel_path))
        return st.st_size

    def open_for_read(self, rel_path: str):
        """Async context manager yielding a readable handle."""
        return aiofiles.open(self.resolve(rel_path), "rb")

    async def read_range(self, handle, start: int, end: int) -> bytes:
        await handle.seek(start)
        return await handle.read(end - start)

    async def write_atomic(self, rel_path: str, data: bytes):
        target = self.resolve(rel_path)
        await aiofiles.os.makedirs(target.parent, exist_ok=True)
        tmp = target.with_name(f".{target.name}.{secrets.token_hex(4)}.part")
        try:
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp, target)
        except BaseException:
            try:
                await aiofiles.os.remove(tmp)
            except OSError:
                pass
            raise
        self.logger.info("file_written", path=rel_path, size=len(data))
