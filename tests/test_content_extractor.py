"""
Тесты для загрузки содержимого страниц.
HTTP-запросы обслуживаются httpx.MockTransport.
"""
import httpx
import pytest

from markhub_pipeline.config import Config
from markhub_pipeline.content_extractor import PageContent, PageContentExtractor, html_to_markdown
from markhub_pipeline.errors import ContentExtractionError, ValidationError

SAMPLE_HTML = """
<html>
<head>
    <title>  Python   Guide </title>
    <meta name="description" content="Руководство по Python">
    <meta property="og:title" content="Python Guide (OG)">
</head>
<body>
    <nav><a href="/">Меню</a></nav>
    <main>
        <h1>Введение</h1>
        <p>Python это язык программирования.</p>
        <ul><li><p>Простой синтаксис</p></li></ul>
        <blockquote>Цитата</blockquote>
        <script>var x = 1;</script>
    </main>
    <footer>Подвал</footer>
</body>
</html>
"""

FALLBACK_URL = "https://extract.test/api/"


def use_transport(extractor: PageContentExtractor, handler) -> None:
    extractor.session = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True)


class TestHtmlToMarkdown:
    """Тесты для извлечения основного текста."""

    def test_metadata_and_blocks(self):
        content = html_to_markdown(SAMPLE_HTML)

        assert content.title == "Python Guide"
        assert content.meta_description == "Руководство по Python"
        assert content.og_title == "Python Guide (OG)"
        assert "# Введение" in content.markdown
        assert "- Простой синтаксис" in content.markdown
        assert "> Цитата" in content.markdown
        assert "Меню" not in content.markdown
        assert "Подвал" not in content.markdown
        assert "var x" not in content.markdown

    def test_plain_text_without_blocks(self):
        content = html_to_markdown("<html><body><div>Только текст</div></body></html>")
        assert content.markdown == "Только текст"

    def test_prompt_context(self):
        page = PageContent(url="https://a.com", markdown="Текст", title="T", meta_description="D",
                           og_title="T", og_description="OG")
        context = page.as_prompt_context()

        assert context.startswith("Page title: T\nMeta description: D\nOG description: OG")
        assert "OG title" not in context
        assert context.endswith("Текст")


class TestPageContentExtractor:
    """Тесты для PageContentExtractor."""

    def setup_method(self):
        self.config = Config(fallback_extract_api_url=FALLBACK_URL)

    @pytest.mark.parametrize("url,valid", [
        ("https://example.com/page", True),
        ("http://example.com", True),
        ("ftp://example.com", False),
        ("chrome://settings", False),
        ("not a url", False),
        ("", False),
    ])
    def test_validate_url(self, url, valid):
        assert PageContentExtractor.validate_url(url) is valid

    @pytest.mark.asyncio
    async def test_primary_extraction(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == "example.com"
            return httpx.Response(200, text=SAMPLE_HTML)

        async with PageContentExtractor(self.config) as extractor:
            use_transport(extractor, handler)
            page = await extractor.extract("https://example.com/guide")

        assert page.source == "primary"
        assert page.url == "https://example.com/guide"
        assert "Python это язык программирования." in page.markdown

    @pytest.mark.asyncio
    async def test_fallback_after_http_error(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.host == "example.com":
                return httpx.Response(403, text="forbidden")
            return httpx.Response(200, json={"code": 200, "msg": "ok", "data": "# Заголовок\n\nТекст"})

        async with PageContentExtractor(self.config) as extractor:
            use_transport(extractor, handler)
            page = await extractor.extract("https://example.com/guide")

        assert page.source == "fallback"
        assert page.markdown == "# Заголовок\n\nТекст"
        assert requests[1].url.params["url"] == "https://example.com/guide"
        assert requests[1].url.params["type"] == "json"

    @pytest.mark.asyncio
    async def test_fallback_after_empty_page(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "example.com":
                return httpx.Response(200, text="<html><body><script>app()</script></body></html>")
            return httpx.Response(200, json={"code": 200, "data": "Текст из API"})

        async with PageContentExtractor(self.config) as extractor:
            use_transport(extractor, handler)
            page = await extractor.extract("https://example.com/spa")

        assert page.markdown == "Текст из API"

    @pytest.mark.asyncio
    async def test_both_paths_failed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "example.com":
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"code": 500, "msg": "quota exceeded"})

        async with PageContentExtractor(self.config) as extractor:
            use_transport(extractor, handler)
            with pytest.raises(ContentExtractionError) as exc_info:
                await extractor.extract("https://example.com/guide")

        assert "quota exceeded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invalid_url_rejected(self):
        async with PageContentExtractor(self.config) as extractor:
            with pytest.raises(ValidationError):
                await extractor.extract("javascript:alert(1)")

    @pytest.mark.asyncio
    async def test_requires_context_manager(self):
        with pytest.raises(RuntimeError):
            await PageContentExtractor(self.config).extract("https://example.com")
