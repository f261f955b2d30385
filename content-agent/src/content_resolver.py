"""
Content Resolver
================
Turns a (type, source) pair into one random, ready-to-send content unit.

Strategies:
- hitokoto / p6oy: call the quote API and format a citation
- image + local directory: pick a supported image file from the directory
- text + local file: pick a string from a JSON array file
- image/text + URL: download the JSON array once, cache it under
  <base_dir>/data/content/<command>.json and pick from the cache

Images are returned as markup carrying a base64 payload:
    <image src="base64://..." type="image/png"/>
"""

import os
import re
import json
import base64
import random
import asyncio
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import httpx

from config import Config, ContentType
from file_access import FileAccess, get_mime_type, is_image_file
from logging_utils import log_event

logger = logging.getLogger(__name__)


HITOKOTO_URL = "https://v1.hitokoto.cn/"
P6OY_URL = "https://api.p6oy.top/api/yy"

# Named hitokoto categories -> query string
HITOKOTO_CATEGORIES = {
    "all": "",
    "anime": "c=a",
    "comic": "c=b",
    "game": "c=c",
    "novel": "c=d",
    "original": "c=e",
    "internet": "c=f",
    "other": "c=g",
    "movie": "c=h",
    "poetry": "c=i",
    "netease": "c=j",
    "philosophy": "c=k",
    "clever": "c=l",
}

# p6oy source name -> API type code
P6OY_TYPES = {
    "poetry": "sc",
    "chicken": "djt",
    "dog": "tgrj",
}
P6OY_DEFAULT_TYPE = "sc"

PIXIV_IMAGE_PREFIX = "https://i.pximg.net/"
PIXIV_REFERER = "https://www.pixiv.net/"

CITATION_MAX_WIDTH = 36
WIDE_CHAR_RE = re.compile(r"[\u4e00-\u9fa5\u3000-\u30ff\u3130-\u318f\uac00-\ud7af]")

IMAGE_MARKUP_RE = re.compile(r'<image src="base64://(?P<data>[A-Za-z0-9+/=]*)" type="(?P<mime>[^"]+)"/>')


# =============================================================================
# Errors and results
# =============================================================================

class ContentError(Exception):
    """Base class for failures converted into a failed ContentResult."""


class ConfigurationError(ContentError):
    """Unknown content or API type."""


class ApiError(ContentError):
    """Remote API or download failure (bad status, bad payload, network, timeout)."""


class EmptyContentError(ContentError):
    """The candidate list is empty."""


class FileMissingError(ContentError):
    """A selected local file could not be read."""


class DownloadError(ContentError):
    """A remote image returned a non-success status."""


class ParseError(ContentError):
    """Invalid JSON in a local or cached file."""


@dataclass
class ContentResult:
    """Outcome of a content resolution."""
    success: bool
    data: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: str) -> 'ContentResult':
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> 'ContentResult':
        return cls(success=False, error=error)


@dataclass
class ResolverContext:
    """Everything the resolver needs, built once at startup."""
    base_dir: Path
    files: FileAccess = field(default_factory=FileAccess)
    transport: Optional[httpx.AsyncBaseTransport] = None
    api_timeout: float = 3.0
    json_timeout: float = 60.0
    image_timeout: float = 30.0

    @classmethod
    def from_config(cls, config: Config, files: Optional[FileAccess] = None,
                    transport: Optional[httpx.AsyncBaseTransport] = None) -> 'ResolverContext':
        return cls(
            base_dir=Path(config.base_dir),
            files=files or FileAccess(),
            transport=transport,
            api_timeout=config.api_timeout,
            json_timeout=config.json_timeout,
            image_timeout=config.image_timeout,
        )

    @property
    def cache_dir(self) -> Path:
        return self.base_dir / "data" / "content"


# =============================================================================
# Helpers
# =============================================================================

def is_remote(source: str) -> bool:
    return source.startswith("http")


def text_width(text: str) -> int:
    """Display width with CJK and Hangul characters counted as 2."""
    return sum(2 if WIDE_CHAR_RE.match(ch) else 1 for ch in text)


def format_citation(content: str, citation: str) -> str:
    """Put the citation on its own line, right-aligned under the content."""
    spaces = max(0, min(text_width(content), CITATION_MAX_WIDTH) - text_width(citation))
    return f"{content}\n{' ' * spaces}{citation}"


def build_image_markup(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode('ascii')
    return f'<image src="base64://{encoded}" type="{mime_type}"/>'


def parse_image_markup(markup: str) -> Optional[Tuple[str, str]]:
    """Extract (mime_type, base64 payload) from image markup."""
    match = IMAGE_MARKUP_RE.fullmatch(markup.strip())
    if not match:
        return None
    return match.group('mime'), match.group('data')


def _describe(error: Exception) -> str:
    return str(error) or type(error).__name__


# =============================================================================
# Resolver
# =============================================================================

class ContentResolver:
    """Resolves content for configured commands."""

    def __init__(self, context: ResolverContext):
        self.context = context
        self.files = context.files
        # cache path -> in-flight download
        self._downloads: Dict[str, asyncio.Task] = {}

    async def fetch(self, url: str, timeout: float, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
        """GET with both a client timeout and an overall deadline."""
        async def _get():
            async with httpx.AsyncClient(
                timeout=timeout,
                transport=self.context.transport,
                follow_redirects=True
            ) as client:
                return await client.get(url, headers=headers)

        log_event(logger, logging.DEBUG, f"GET {url}", event="api_request", url=url, timeout=timeout)
        return await asyncio.wait_for(_get(), timeout)

    def cache_path(self, command_name: str) -> Path:
        return self.context.cache_dir / f"{command_name or 'default'}.json"

    # -------------------------------------------------------------------------
    # Citation APIs
    # -------------------------------------------------------------------------

    def api_url(self, content_type: ContentType, param: str) -> str:
        if content_type is ContentType.HITOKOTO:
            query = HITOKOTO_CATEGORIES.get(param, param)
            return f"{HITOKOTO_URL}?{query}" if query else HITOKOTO_URL
        if content_type is ContentType.P6OY:
            return f"{P6OY_URL}?type={P6OY_TYPES.get(param, P6OY_DEFAULT_TYPE)}"
        raise ConfigurationError("无效的 API 类型")

    async def get_api_content(self, content_type: ContentType, param: str) -> str:
        """Fetch one quote and format it with its citation."""
        url = self.api_url(content_type, param)

        try:
            response = await self.fetch(url, self.context.api_timeout)
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            raise ApiError(f"获取{content_type.value}内容出错: {_describe(e)}") from e

        if not response.is_success:
            raise ApiError(f"请求失败: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ApiError(f"获取{content_type.value}内容出错: {_describe(e)}") from e

        if not isinstance(data, dict) or not data.get("hitokoto"):
            raise ApiError(f"获取{content_type.value}内容失败")

        quote = data["hitokoto"]
        if content_type is ContentType.HITOKOTO and data.get("from"):
            source = data["from"]
            author = data.get("from_who")
            show_author = author and author != source
            citation = f"——{f' {author}' if show_author else ''}《{source}》"
            return format_citation(quote, citation)
        if content_type is ContentType.P6OY and data.get("hitokoto_from"):
            return format_citation(quote, f"——《{data['hitokoto_from']}》")
        return quote

    # -------------------------------------------------------------------------
    # Candidate lists
    # -------------------------------------------------------------------------

    async def get_local_images(self, dir_path: str) -> List[str]:
        """Absolute paths of the supported images in a directory."""
        result = await self.files.read_directory(dir_path)
        if not result.ok:
            return []
        return [
            os.path.abspath(os.path.join(dir_path, name))
            for name in sorted(result.value)
            if is_image_file(name)
        ]

    def parse_candidates(self, text: str, origin: str) -> List[str]:
        """Candidates from a JSON array: its non-empty string elements."""
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ParseError(f"解析 JSON 失败: {origin}: {e}") from e
        if not isinstance(parsed, list):
            raise ParseError(f"JSON 内容不是数组: {origin}")
        return [item for item in parsed if isinstance(item, str) and item]

    async def get_json_content(self, source: str, command_name: str) -> List[str]:
        """Candidates from a local JSON file or a cached remote JSON list."""
        if is_remote(source):
            path = self.cache_path(command_name)
            await self._download_once(source, path, command_name)
        else:
            path = Path(source)

        result = await self.files.read_text(str(path))
        if not result.ok:
            return []

        try:
            return self.parse_candidates(result.value, str(path))
        except ParseError as e:
            logger.error(str(e))
            return []

    async def _download_once(self, url: str, path: Path, command_name: str = ""):
        """
        Make sure the cache file exists, sharing one download per cache path.

        An in-flight download is awaited before the file is looked at.
        """
        key = str(path)
        task = self._downloads.get(key)
        if task is None:
            if self.files.exists(path):
                log_event(logger, logging.DEBUG, f"Using cached content list: {path}",
                         event="cache_hit", command=command_name)
                return
            task = asyncio.ensure_future(self._download(url, path))
            self._downloads[key] = task
            task.add_done_callback(lambda _: self._downloads.pop(key, None))
        await asyncio.shield(task)

    async def _download(self, url: str, path: Path):
        ensured = await self.files.ensure_directory(str(path.parent))
        if not ensured.ok:
            raise ContentError(f"创建缓存目录失败: {ensured.error}")

        try:
            response = await self.fetch(url, self.context.json_timeout)
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            raise ApiError(f"下载失败: {_describe(e)}") from e

        if not response.is_success:
            raise ApiError(f"下载失败: {response.status_code}")

        # Cache files are never overwritten
        written = await self.files.write_new(str(path), response.content)
        if not written.ok:
            raise ContentError(f"写入缓存失败: {written.error}")
        if written.value:
            log_event(logger, logging.INFO, f"Cached content list: {path}",
                     event="cache_stored", url=url, path=str(path), size=len(response.content))

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    async def load_image(self, item: str) -> str:
        """Load a local or remote image and wrap it as base64 markup."""
        if not is_remote(item):
            result = await self.files.read_bytes(item)
            if not result.ok:
                raise FileMissingError(f"图片文件不存在: {item}")
            return build_image_markup(result.value, get_mime_type(item))

        headers = {}
        if item.startswith(PIXIV_IMAGE_PREFIX):
            headers["Referer"] = PIXIV_REFERER

        try:
            response = await self.fetch(item, self.context.image_timeout, headers=headers or None)
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            raise ApiError(f"获取网络图片出错: {_describe(e)}") from e

        if not response.is_success:
            raise DownloadError(f"获取网络图片失败: {response.status_code}")

        return build_image_markup(response.content, get_mime_type(urlparse(item).path))

    # -------------------------------------------------------------------------
    # Public entry point
    # -------------------------------------------------------------------------

    async def resolve(self, content_type, source: str, command_name: str = "") -> ContentResult:
        """
        Resolve one random content unit.

        Never raises: every failure becomes ContentResult(success=False).
        """
        try:
            try:
                content_type = ContentType(content_type)
            except ValueError:
                raise ConfigurationError(f"无效的内容类型: {content_type}") from None

            if content_type.is_citation_api:
                data = await self.get_api_content(content_type, source)
            else:
                is_image = content_type is ContentType.IMAGE
                if not is_remote(source):
                    candidates = (await self.get_local_images(source) if is_image
                                  else await self.get_json_content(source, command_name))
                else:
                    cache_name = command_name or ("images" if is_image else "texts")
                    candidates = await self.get_json_content(source, cache_name)

                if not candidates:
                    raise EmptyContentError(f"无可用{'图片' if is_image else '文本'}")

                item = random.choice(candidates)
                data = await self.load_image(item) if is_image else item

            log_event(logger, logging.INFO, f"Resolved {content_type.value} content",
                     event="content_resolved", command=command_name, type=content_type.value)
            return ContentResult.ok(data)

        except ContentError as e:
            log_event(logger, logging.WARNING, f"Content unavailable: {e}",
                     event="content_failed", command=command_name, error=str(e))
            return ContentResult.fail(str(e))
        except Exception as e:
            logger.error(f"内容处理失败: {e}", exc_info=True)
            return ContentResult.fail(f"处理错误: {_describe(e)}")

    get_content = resolve
