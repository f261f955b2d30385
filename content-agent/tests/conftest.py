import asyncio
from typing import Callable, List

import httpx
import pytest

from content_resolver import ContentResolver, ContentResult, ResolverContext


class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request it served."""

    def __init__(self, handler: Callable):
        self.requests: List[httpx.Request] = []

        async def _handle(request: httpx.Request):
            self.requests.append(request)
            response = handler(request)
            if asyncio.iscoroutine(response):
                response = await response
            return response

        super().__init__(_handle)

    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


class FakeResolver:
    """Stands in for ContentResolver in command and API tests."""

    def __init__(self, result: ContentResult = None, exc: Exception = None):
        self.result = result or ContentResult.ok("hello")
        self.exc = exc
        self.calls = []

    async def resolve(self, content_type, source, command_name=""):
        self.calls.append((content_type, source, command_name))
        if self.exc:
            raise self.exc
        return self.result


@pytest.fixture
def make_resolver(tmp_path):
    """Build a resolver rooted at tmp_path with a fake network."""
    def _make(handler=None, **timeouts):
        if handler is None:
            handler = lambda request: httpx.Response(404)
        transport = RecordingTransport(handler)
        context = ResolverContext(base_dir=tmp_path, transport=transport, **timeouts)
        return ContentResolver(context), transport
    return _make


@pytest.fixture
def fake_resolver():
    return FakeResolver()
