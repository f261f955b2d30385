import json
import time
import base64
import asyncio

import httpx
import pytest

import file_access
from config import ContentType
from content_resolver import (
    P6OY_URL,
    ParseError,
    build_image_markup,
    format_citation,
    parse_image_markup,
    text_width,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"
LIST_URL = "https://example.com/list.json"


def run(coro):
    return asyncio.run(coro)


# =============================================================================
# Citation formatting
# =============================================================================

def test_text_width_counts_cjk_as_two():
    assert text_width("你好") == 4
    assert text_width("ab") == 2
    assert text_width("《》") == 4
    assert text_width("한글") == 4
    assert text_width("——") == 2


def test_format_citation_short_content():
    # content width 4, citation width 1 + 1 + 4 = 6: no padding
    assert format_citation("你好", "——作者") == "你好\n——作者"


def test_format_citation_pads_to_content_width():
    result = format_citation("a" * 20, "——x")
    content, citation_line = result.split("\n")
    assert content == "a" * 20
    assert citation_line == " " * 17 + "——x"


def test_format_citation_caps_width_at_36():
    result = format_citation("字" * 40, "——x")
    citation_line = result.split("\n")[1]
    assert citation_line == " " * 33 + "——x"
    assert text_width(citation_line) == 36


# =============================================================================
# Citation APIs
# =============================================================================

def test_hitokoto_with_author_and_source(make_resolver):
    def handler(request):
        return httpx.Response(200, json={"hitokoto": "春眠不觉晓", "from": "春晓", "from_who": "孟浩然"})

    resolver, transport = make_resolver(handler)
    result = run(resolver.resolve("hitokoto", "", "hitokoto"))

    assert result.success
    assert result.data == "春眠不觉晓\n—— 孟浩然《春晓》"
    assert transport.urls() == ["https://v1.hitokoto.cn/"]


def test_hitokoto_hides_author_equal_to_source(make_resolver):
    def handler(request):
        return httpx.Response(200, json={"hitokoto": "hello", "from": "book", "from_who": "book"})

    resolver, _ = make_resolver(handler)
    result = run(resolver.resolve("hitokoto", "", "hitokoto"))

    assert result.data == "hello\n——《book》"


def test_hitokoto_without_source_returns_bare_quote(make_resolver):
    resolver, _ = make_resolver(lambda request: httpx.Response(200, json={"hitokoto": "plain"}))
    assert run(resolver.resolve("hitokoto", "", "")).data == "plain"


@pytest.mark.parametrize("param, query", [("anime", "c=a"), ("clever", "c=l"), ("c=d", "c=d")])
def test_hitokoto_category_query(make_resolver, param, query):
    resolver, transport = make_resolver(lambda request: httpx.Response(200, json={"hitokoto": "q"}))
    run(resolver.resolve("hitokoto", param, "hitokoto"))
    assert transport.urls() == [f"https://v1.hitokoto.cn/?{query}"]


@pytest.mark.parametrize("param, code", [("poetry", "sc"), ("chicken", "djt"), ("dog", "tgrj"), ("unknown", "sc")])
def test_p6oy_type_codes(make_resolver, param, code):
    resolver, transport = make_resolver(lambda request: httpx.Response(200, json={"hitokoto": "q"}))
    run(resolver.resolve(ContentType.P6OY, param, "x"))
    assert transport.urls() == [f"{P6OY_URL}?type={code}"]


def test_p6oy_citation(make_resolver):
    resolver, _ = make_resolver(
        lambda request: httpx.Response(200, json={"hitokoto": "床前明月光", "hitokoto_from": "静夜思"})
    )
    result = run(resolver.resolve("p6oy", "poetry", "sjsc"))
    assert result.data == "床前明月光\n——《静夜思》"


def test_api_error_status(make_resolver):
    resolver, _ = make_resolver(lambda request: httpx.Response(500))
    result = run(resolver.resolve("hitokoto", "", "hitokoto"))
    assert not result.success
    assert result.error == "请求失败: 500"


def test_api_missing_field(make_resolver):
    resolver, _ = make_resolver(lambda request: httpx.Response(200, json={"text": "nope"}))
    result = run(resolver.resolve("hitokoto", "", "hitokoto"))
    assert not result.success
    assert result.error == "获取hitokoto内容失败"


def test_api_invalid_json(make_resolver):
    resolver, _ = make_resolver(lambda request: httpx.Response(200, text="<html>"))
    result = run(resolver.resolve("p6oy", "dog", "tgrj"))
    assert not result.success
    assert result.error.startswith("获取p6oy内容出错")


def test_api_network_error(make_resolver):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    resolver, _ = make_resolver(handler)
    result = run(resolver.resolve("hitokoto", "", "hitokoto"))
    assert not result.success
    assert "connection refused" in result.error


def test_request_timeout_resolves_to_failure(make_resolver):
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"hitokoto": "late"})

    resolver, _ = make_resolver(handler, api_timeout=0.1)

    started = time.monotonic()
    result = run(resolver.resolve("hitokoto", "", "hitokoto"))
    elapsed = time.monotonic() - started

    assert not result.success
    assert elapsed < 2


def test_unknown_type_is_a_configuration_failure(make_resolver):
    resolver, transport = make_resolver()
    result = run(resolver.resolve("video", "", "x"))
    assert not result.success
    assert "无效的内容类型" in result.error
    assert transport.requests == []


# =============================================================================
# Local content
# =============================================================================

def test_get_local_images_filters_and_keeps_case(make_resolver, tmp_path):
    images = tmp_path / "images"
    images.mkdir()
    for name in ("a.png", "b.txt", "c.JPG"):
        (images / name).write_bytes(b"x")

    resolver, _ = make_resolver()
    result = run(resolver.get_local_images(str(images)))

    assert result == [str(images / "a.png"), str(images / "c.JPG")]


def test_local_image_is_base64_markup(make_resolver, tmp_path):
    images = tmp_path / "images"
    images.mkdir()
    (images / "only.png").write_bytes(PNG_BYTES)

    resolver, transport = make_resolver()
    result = run(resolver.resolve("image", str(images), "pics"))

    assert result.success
    encoded = base64.b64encode(PNG_BYTES).decode()
    assert result.data == f'<image src="base64://{encoded}" type="image/png"/>'
    assert transport.requests == []


def test_empty_directory_fails_without_raising(make_resolver, tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()

    resolver, _ = make_resolver()
    result = run(resolver.resolve("image", str(empty), "pics"))

    assert not result.success
    assert result.error == "无可用图片"


def test_missing_directory_fails_without_raising(make_resolver, tmp_path):
    resolver, _ = make_resolver()
    result = run(resolver.resolve("image", str(tmp_path / "missing"), "pics"))
    assert result.error == "无可用图片"


def test_local_text_uses_string_elements_of_top_level_array(make_resolver, tmp_path):
    # Nested arrays and non-strings are dropped; strings are the candidates.
    source = tmp_path / "quotes.json"
    source.write_text(json.dumps(["only one", ["nested"], 3, None, ""]), encoding="utf-8")

    resolver, _ = make_resolver()
    result = run(resolver.resolve("text", str(source), "quotes"))

    assert result.success
    assert result.data == "only one"


def test_local_text_invalid_json_is_content_unavailable(make_resolver, tmp_path):
    source = tmp_path / "quotes.json"
    source.write_text("{not json", encoding="utf-8")

    resolver, _ = make_resolver()
    result = run(resolver.resolve("text", str(source), "quotes"))

    assert not result.success
    assert result.error == "无可用文本"


def test_parse_candidates_rejects_non_array(make_resolver):
    resolver, _ = make_resolver()
    with pytest.raises(ParseError):
        resolver.parse_candidates('{"a": 1}', "inline")


# =============================================================================
# Remote lists and cache
# =============================================================================

def test_remote_list_is_cached_and_not_refetched(make_resolver, tmp_path):
    resolver, transport = make_resolver(lambda request: httpx.Response(200, json=["first"]))

    first = run(resolver.resolve("text", LIST_URL, "quotes"))
    cache_file = tmp_path / "data" / "content" / "quotes.json"

    assert first.data == "first"
    assert cache_file.exists()
    assert json.loads(cache_file.read_text(encoding="utf-8")) == ["first"]
    assert transport.urls() == [LIST_URL]

    second = run(resolver.resolve("text", LIST_URL, "quotes"))
    assert second.data == "first"
    assert transport.urls() == [LIST_URL]


def test_existing_cache_is_authoritative(make_resolver, tmp_path):
    cache_dir = tmp_path / "data" / "content"
    cache_dir.mkdir(parents=True)
    (cache_dir / "quotes.json").write_text('["from cache"]', encoding="utf-8")

    resolver, transport = make_resolver(lambda request: httpx.Response(200, json=["from network"]))
    result = run(resolver.resolve("text", LIST_URL, "quotes"))

    assert result.data == "from cache"
    assert transport.requests == []


def test_cache_name_defaults_by_type(make_resolver, tmp_path):
    resolver, _ = make_resolver(lambda request: httpx.Response(200, json=["t"]))
    run(resolver.resolve("text", LIST_URL, ""))
    assert (tmp_path / "data" / "content" / "texts.json").exists()


def test_cache_path_default_name(make_resolver, tmp_path):
    resolver, _ = make_resolver()
    assert resolver.cache_path("") == tmp_path / "data" / "content" / "default.json"


def test_failed_list_download_is_not_cached(make_resolver, tmp_path):
    resolver, _ = make_resolver(lambda request: httpx.Response(503))
    result = run(resolver.resolve("text", LIST_URL, "quotes"))

    assert not result.success
    assert result.error == "下载失败: 503"
    assert not (tmp_path / "data" / "content" / "quotes.json").exists()


def test_empty_remote_list(make_resolver):
    resolver, _ = make_resolver(lambda request: httpx.Response(200, json=[]))
    result = run(resolver.resolve("text", LIST_URL, "quotes"))
    assert not result.success
    assert result.error == "无可用文本"


def test_concurrent_first_fetches_share_one_download(make_resolver):
    async def handler(request):
        await asyncio.sleep(0.05)
        return httpx.Response(200, json=["shared"])

    resolver, transport = make_resolver(handler)

    async def both():
        return await asyncio.gather(
            resolver.resolve("text", LIST_URL, "quotes"),
            resolver.resolve("text", LIST_URL, "quotes"),
        )

    results = run(both())
    assert [r.data for r in results] == ["shared", "shared"]
    assert transport.urls() == [LIST_URL]


def test_reader_during_slow_cache_write_waits_for_whole_file(make_resolver, monkeypatch):
    def slow_write(path, data):
        with open(path, "wb") as f:
            f.write(data[:2])
            f.flush()
            time.sleep(0.3)
            f.write(data[2:])

    monkeypatch.setattr(file_access, "_write", slow_write)
    resolver, transport = make_resolver(lambda request: httpx.Response(200, json=["ok"]))

    async def first_then_second():
        async def late():
            await asyncio.sleep(0.1)
            return await resolver.resolve("text", LIST_URL, "quotes")

        return await asyncio.gather(resolver.resolve("text", LIST_URL, "quotes"), late())

    results = run(first_then_second())

    assert [r.data for r in results] == ["ok", "ok"]
    assert transport.urls() == [LIST_URL]


def test_failed_cache_write_leaves_no_file_and_is_retried(make_resolver, monkeypatch, tmp_path):
    def broken_write(path, data):
        with open(path, "wb") as f:
            f.write(data[:3])
        raise OSError("No space left on device")

    monkeypatch.setattr(file_access, "_write", broken_write)
    resolver, transport = make_resolver(lambda request: httpx.Response(200, json=["recovered"]))

    failed = run(resolver.resolve("text", LIST_URL, "quotes"))
    cache_dir = tmp_path / "data" / "content"

    assert not failed.success
    assert failed.error.startswith("写入缓存失败")
    assert list(cache_dir.iterdir()) == []

    monkeypatch.undo()
    retried = run(resolver.resolve("text", LIST_URL, "quotes"))

    assert retried.data == "recovered"
    assert transport.urls() == [LIST_URL, LIST_URL]
    assert [p.name for p in cache_dir.iterdir()] == ["quotes.json"]


def test_list_download_timeout(make_resolver, tmp_path):
    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json=["late"])

    resolver, _ = make_resolver(handler, json_timeout=0.1)

    started = time.monotonic()
    result = run(resolver.resolve("text", LIST_URL, "quotes"))

    assert not result.success
    assert result.error.startswith("下载失败")
    assert time.monotonic() - started < 2
    assert not (tmp_path / "data" / "content" / "quotes.json").exists()


# =============================================================================
# Remote images
# =============================================================================

def _image_resolver(make_resolver, tmp_path, image_url, status=200):
    cache_dir = tmp_path / "data" / "content"
    cache_dir.mkdir(parents=True)
    (cache_dir / "pixiv.json").write_text(json.dumps([image_url]), encoding="utf-8")
    return make_resolver(lambda request: httpx.Response(status, content=PNG_BYTES))


def test_pixiv_image_gets_referer(make_resolver, tmp_path):
    url = "https://i.pximg.net/img-original/img/1.png"
    resolver, transport = _image_resolver(make_resolver, tmp_path, url)

    result = run(resolver.resolve("image", LIST_URL, "pixiv"))

    assert result.success
    assert parse_image_markup(result.data) == ("image/png", base64.b64encode(PNG_BYTES).decode())
    assert transport.requests[0].headers["Referer"] == "https://www.pixiv.net/"


def test_other_image_hosts_get_no_referer(make_resolver, tmp_path):
    url = "https://example.com/pic.webp?size=large"
    resolver, transport = _image_resolver(make_resolver, tmp_path, url)

    result = run(resolver.resolve("image", LIST_URL, "pixiv"))

    assert result.success
    assert 'type="image/webp"' in result.data
    assert "referer" not in transport.requests[0].headers


def test_unknown_image_extension_defaults_to_jpeg(make_resolver, tmp_path):
    resolver, _ = _image_resolver(make_resolver, tmp_path, "https://example.com/image")
    result = run(resolver.resolve("image", LIST_URL, "pixiv"))
    assert 'type="image/jpeg"' in result.data


def test_image_download_error(make_resolver, tmp_path):
    resolver, _ = _image_resolver(make_resolver, tmp_path, "https://example.com/pic.png", status=403)
    result = run(resolver.resolve("image", LIST_URL, "pixiv"))
    assert not result.success
    assert result.error == "获取网络图片失败: 403"


def test_missing_local_image_from_list(make_resolver, tmp_path):
    missing = str(tmp_path / "gone.png")
    resolver, _ = _image_resolver(make_resolver, tmp_path, missing)
    result = run(resolver.resolve("image", LIST_URL, "pixiv"))
    assert result.error == f"图片文件不存在: {missing}"


def test_image_markup_round_trip():
    markup = build_image_markup(b"abc", "image/gif")
    assert parse_image_markup(markup) == ("image/gif", "YWJj")
    assert parse_image_markup("plain text") is None


def test_image_download_timeout(make_resolver, tmp_path):
    cache_dir = tmp_path / "data" / "content"
    cache_dir.mkdir(parents=True)
    (cache_dir / "pixiv.json").write_text(json.dumps(["https://example.com/slow.png"]), encoding="utf-8")

    async def handler(request):
        await asyncio.sleep(5)
        return httpx.Response(200, content=PNG_BYTES)

    resolver, _ = make_resolver(handler, image_timeout=0.1)

    started = time.monotonic()
    result = run(resolver.resolve("image", LIST_URL, "pixiv"))

    assert not result.success
    assert result.error.startswith("获取网络图片出错")
    assert time.monotonic() - started < 2
