"""
File Access Helper
==================
Thin async wrappers around the filesystem used by the content resolver.

Every operation returns a FileResult instead of raising, so callers can tell
"legitimately empty" (status OK with an empty value) apart from "missing" and
"failed". Blocking calls run in a worker thread.
"""

import os
import asyncio
import logging
import tempfile
import contextlib
from enum import Enum
from dataclasses import dataclass
from typing import Any, List, Optional, Union

logger = logging.getLogger(__name__)


# Image extension -> MIME type
IMAGE_MIME_TYPES = {
    '.jpg': 'image/jpeg',
    '.jpeg': 'image/jpeg',
    '.png': 'image/png',
    '.gif': 'image/gif',
    '.webp': 'image/webp',
}

DEFAULT_MIME_TYPE = 'image/jpeg'


class FileStatus(str, Enum):
    """Outcome of a file operation."""
    OK = "ok"
    MISSING = "missing"
    FAILED = "failed"


@dataclass
class FileResult:
    """Result of a file operation."""
    status: FileStatus
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is FileStatus.OK

    @classmethod
    def success(cls, value: Any) -> 'FileResult':
        return cls(status=FileStatus.OK, value=value)

    @classmethod
    def missing(cls, error: str) -> 'FileResult':
        return cls(status=FileStatus.MISSING, error=error)

    @classmethod
    def failed(cls, error: str) -> 'FileResult':
        return cls(status=FileStatus.FAILED, error=error)


def _extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


def is_image_file(filename: str) -> bool:
    """Check whether the file name has a supported image extension."""
    return _extension(filename) in IMAGE_MIME_TYPES


def get_mime_type(filename: str) -> str:
    """MIME type for a file name, falling back to JPEG."""
    return IMAGE_MIME_TYPES.get(_extension(filename), DEFAULT_MIME_TYPE)


class FileAccess:
    """Filesystem helper bound to a logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.logger = log or logger

    is_image_file = staticmethod(is_image_file)
    get_mime_type = staticmethod(get_mime_type)

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    async def ensure_directory(self, path: str) -> FileResult:
        """Create the directory (and parents) if it does not exist."""
        try:
            await asyncio.to_thread(os.makedirs, path, exist_ok=True)
            return FileResult.success(True)
        except OSError as e:
            self.logger.error(f"创建目录失败: {e}")
            return FileResult.failed(str(e))

    async def read_directory(self, path: str) -> FileResult:
        """List entry names in a directory."""
        if not os.path.isdir(path):
            self.logger.warning(f"目录不存在: {path}")
            return FileResult.missing(f"目录不存在: {path}")
        try:
            entries: List[str] = await asyncio.to_thread(os.listdir, path)
            return FileResult.success(entries)
        except OSError as e:
            self.logger.error(f"读取目录失败: {e}")
            return FileResult.failed(str(e))

    async def read_bytes(self, path: str) -> FileResult:
        """Read a whole file as bytes."""
        if not os.path.isfile(path):
            self.logger.warning(f"文件不存在: {path}")
            return FileResult.missing(f"文件不存在: {path}")
        try:
            data = await asyncio.to_thread(_read, path)
            return FileResult.success(data)
        except OSError as e:
            self.logger.error(f"读取文件失败: {e}")
            return FileResult.failed(str(e))

    async def read_text(self, path: str) -> FileResult:
        """Read a file and decode it as UTF-8."""
        result = await self.read_bytes(path)
        if not result.ok:
            return result
        try:
            return FileResult.success(result.value.decode('utf-8'))
        except UnicodeDecodeError as e:
            self.logger.error(f"读取文件失败: {e}")
            return FileResult.failed(str(e))

    async def write(self, path: str, data: Union[str, bytes]) -> FileResult:
        """Write text (UTF-8) or bytes, replacing any existing content."""
        if isinstance(data, str):
            data = data.encode('utf-8')
        try:
            await asyncio.to_thread(_write, path, data)
            return FileResult.success(True)
        except OSError as e:
            self.logger.error(f"写入文件失败: {e}")
            return FileResult.failed(str(e))

    async def write_new(self, path: str, data: Union[str, bytes]) -> FileResult:
        """
        Create a file only if it does not exist yet.

        The data goes to a temp file in the same directory which is then
        hard-linked into place, so readers never see a partial file and an
        existing file is never replaced. Value is True if the file was
        created, False if it already existed.
        """
        if isinstance(data, str):
            data = data.encode('utf-8')
        try:
            created = await asyncio.to_thread(_write_new, path, data)
            return FileResult.success(created)
        except OSError as e:
            self.logger.error(f"写入文件失败: {e}")
            return FileResult.failed(str(e))


def _read(path: str) -> bytes:
    with open(path, 'rb') as f:
        return f.read()


def _write(path: str, data: bytes):
    with open(path, 'wb') as f:
        f.write(data)


def _write_new(path: str, data: bytes) -> bool:
    directory = os.path.dirname(path) or "."
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp")
    os.close(fd)
    try:
        _write(tmp, data)
        try:
            os.link(tmp, path)
        except FileExistsError:
            return False
        return True
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(tmp)
