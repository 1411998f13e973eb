"""
Модуль content_extractor.py
Получает содержимое веб-страницы для AI-классификации.

Основной путь: загрузка страницы и извлечение основного текста в Markdown
с помощью BeautifulSoup. Если он завершился ошибкой или дал пустой текст,
используется сторонний API извлечения с более длинным таймаутом. Если
не сработали оба пути, возбуждается ContentExtractionError.
"""
import re
import time
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from .config import Config
from .errors import ContentExtractionError, TransportError, ValidationError
from .logger import get_logger, log_error_with_context, log_function_call, log_performance

logger = get_logger(__name__)

USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) '
    'Chrome/124.0.0.0 Safari/537.36 MarkHubBookmarkProcessor/1.0'
)

REMOVED_TAGS = ["script", "style", "noscript", "nav", "footer", "header", "aside", "form", "iframe"]
BLOCK_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "pre", "blockquote"]


@dataclass
class PageContent:
    """
    Извлеченное содержимое страницы.

    Атрибуты:
        url: URL страницы
        markdown: Основной текст в формате Markdown
        title: Заголовок страницы
        meta_description: Содержимое meta description
        og_title: Содержимое og:title
        og_description: Содержимое og:description
        source: primary или fallback
    """
    url: str
    markdown: str
    title: Optional[str] = None
    meta_description: Optional[str] = None
    og_title: Optional[str] = None
    og_description: Optional[str] = None
    source: str = "primary"

    def as_prompt_context(self) -> str:
        """Собирает метаданные и текст в один блок для промпта."""
        lines = []
        if self.title:
            lines.append(f"Page title: {self.title}")
        if self.meta_description:
            lines.append(f"Meta description: {self.meta_description}")
        if self.og_title and self.og_title != self.title:
            lines.append(f"OG title: {self.og_title}")
        if self.og_description and self.og_description != self.meta_description:
            lines.append(f"OG description: {self.og_description}")
        if self.markdown:
            lines.append("")
            lines.append(self.markdown)
        return "\n".join(lines)


def _meta(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip()
    return None


def _clean_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def html_to_markdown(html: str) -> PageContent:
    """
    Извлекает метаданные и основной текст страницы в Markdown.

    Аргументы:
        html: HTML-контент страницы

    Возвращает:
        PageContent: Содержимое страницы (url не заполняется)
    """
    soup = BeautifulSoup(html or "", 'html.parser')

    title = _clean_whitespace(soup.title.get_text()) if soup.title else None
    content = PageContent(
        url="",
        markdown="",
        title=title or None,
        meta_description=_meta(soup, name="description"),
        og_title=_meta(soup, property="og:title"),
        og_description=_meta(soup, property="og:description"),
    )

    for tag in REMOVED_TAGS:
        for element in soup.find_all(tag):
            element.decompose()

    main_content = (
        soup.find('main')
        or soup.find('article')
        or soup.find('div', class_=re.compile(r'main|content|article'))
        or soup.body
        or soup
    )

    lines: List[str] = []
    for element in main_content.find_all(BLOCK_TAGS):
        # Вложенные блоки (p внутри li и т.п.) учитываются один раз
        if element.find_parent(BLOCK_TAGS):
            continue
        text = _clean_whitespace(element.get_text(" "))
        if not text:
            continue
        name = element.name
        if name.startswith("h"):
            lines.append(f"{'#' * int(name[1])} {text}")
        elif name == "li":
            lines.append(f"- {text}")
        elif name == "blockquote":
            lines.append(f"> {text}")
        elif name == "pre":
            lines.append(f"```\n{element.get_text().strip()}\n```")
        else:
            lines.append(text)

    if not lines:
        text = _clean_whitespace(main_content.get_text(" "))
        if text:
            lines.append(text)

    content.markdown = "\n\n".join(lines)
    return content


class PageContentExtractor:
    """
    Загрузчик содержимого страниц с резервным API извлечения.
    Используется как асинхронный контекстный менеджер.

    Аргументы:
        config: Конфигурация приложения
    """

    def __init__(self, config: Config):
        self.config = config
        self.session: Optional[httpx.AsyncClient] = None
        logger.debug(
            f"PageContentExtractor инициализирован: timeout={config.fetch_timeout}s, "
            f"fallback_timeout={config.fallback_fetch_timeout}s"
        )

    async def __aenter__(self) -> 'PageContentExtractor':
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=100)
        self.session = httpx.AsyncClient(
            limits=limits,
            follow_redirects=True,
            headers={'User-Agent': USER_AGENT},
        )
        logger.debug("HTTP сессия создана для PageContentExtractor")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.aclose()
            self.session = None
            logger.debug("HTTP сессия закрыта для PageContentExtractor")

    @staticmethod
    def validate_url(url: str) -> bool:
        result = urlparse(url or "")
        return result.scheme in ('http', 'https') and bool(result.netloc)

    async def _fetch_primary(self, url: str) -> PageContent:
        response = await self.session.get(url, timeout=self.config.fetch_timeout)
        if response.status_code >= 400:
            raise TransportError(
                f"Страница вернула HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )

        content = html_to_markdown(response.text)
        if not content.markdown.strip():
            raise ContentExtractionError("Основное извлечение дало пустой текст")
        content.url = url
        return content

    async def _fetch_fallback(self, url: str) -> PageContent:
        response = await self.session.get(
            self.config.fallback_extract_api_url,
            params={"url": url, "type": "json"},
            timeout=self.config.fallback_fetch_timeout,
        )
        if response.status_code != 200:
            raise TransportError(
                f"Резервный API извлечения вернул HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ContentExtractionError("Резервный API извлечения вернул некорректный JSON") from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(payload, dict) or payload.get("code") != 200 or not data:
            code = payload.get("code") if isinstance(payload, dict) else None
            msg = payload.get("msg") if isinstance(payload, dict) else None
            raise ContentExtractionError(f"Резервный API извлечения вернул код {code}: {msg}")

        return PageContent(url=url, markdown=str(data), source="fallback")

    async def extract(self, url: str) -> PageContent:
        """
        Получает содержимое страницы основным способом, при неудаче резервным.

        Аргументы:
            url: URL страницы

        Возвращает:
            PageContent: Извлеченное содержимое

        Raises:
            ValidationError: Некорректный URL
            ContentExtractionError: Не сработал ни один способ
        """
        start_time = time.time()
        log_function_call("extract", (url,))

        if not self.validate_url(url):
            raise ValidationError(f"Некорректный URL: {url}")
        if self.session is None:
            raise RuntimeError("Используйте async with PageContentExtractor(config) as extractor:")

        try:
            content = await self._fetch_primary(url)
            log_performance("extract", time.time() - start_time, f"url={url}, source=primary")
            return content
        except (TransportError, httpx.HTTPError) as e:
            primary_error = e
            logger.warning(f"Основное извлечение не удалось для {url}: {e}; используется резервный API")

        try:
            content = await self._fetch_fallback(url)
        except (TransportError, httpx.HTTPError) as e:
            log_error_with_context(e, {"url": url, "operation": "extract", "primary_error": str(primary_error)})
            raise ContentExtractionError(
                f"Не удалось получить содержимое страницы {url}: основной способ: {primary_error}; "
                f"резервный API: {e}"
            ) from e

        log_performance("extract", time.time() - start_time, f"url={url}, source=fallback")
        return content
