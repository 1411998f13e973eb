"""
Модуль task_runner.py
Фоновая обработка задач прокси: извлечение содержимого страницы и вызов AI.
"""
import dataclasses
import time
from typing import Callable, Optional, Sequence

from .ai_client import AIServiceClient
from .config import Config
from .content_extractor import PageContentExtractor
from .errors import ParseError
from .logger import get_logger, log_error_with_context, log_performance
from .task_repository import TaskRepository

logger = get_logger(__name__)

ExtractorFactory = Callable[[Config], PageContentExtractor]
AIClientFactory = Callable[[Config], AIServiceClient]


class TaskRunner:
    """
    Исполнитель задач прокси.

    Задача проходит pending -> processing -> completed | failed. Любая ошибка
    переводит задачу в failed с описанием; исполнитель не возбуждает исключений.

    Аргументы:
        repository: Хранилище задач
        config: Базовая конфигурация (таймауты, лимиты, AI по умолчанию)
        extractor_factory: Создает загрузчик содержимого
        ai_client_factory: Создает клиент AI
    """

    def __init__(
        self,
        repository: TaskRepository,
        config: Config,
        extractor_factory: ExtractorFactory = PageContentExtractor,
        ai_client_factory: AIClientFactory = AIServiceClient,
    ):
        self.repository = repository
        self.config = config
        self.extractor_factory = extractor_factory
        self.ai_client_factory = ai_client_factory

    def ai_config(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model_name: Optional[str] = None,
        base: Optional[Config] = None,
    ) -> Config:
        """Конфигурация с учетными данными AI пользователя поверх базовой (по умолчанию своей)."""
        overrides = {}
        if api_key:
            overrides["api_key"] = api_key
        if base_url:
            overrides["api_base_url"] = base_url
        if model_name:
            overrides["model_name"] = model_name
        return dataclasses.replace(base or self.config, **overrides)

    async def _start(self, task_id: str) -> bool:
        task = await self.repository.transition(task_id, "processing")
        return task is not None and task.status == "processing"

    async def _fail(self, task_id: str, error: Exception, raw_ai_content: Optional[str] = None) -> None:
        log_error_with_context(error, {"task_id": task_id, "operation": "proxy_task"})
        await self.repository.transition(
            task_id, "failed", error=str(error) or type(error).__name__, raw_ai_content=raw_ai_content
        )

    async def run_tags_task(
        self,
        task_id: str,
        url: str,
        filter_tags: Sequence[str] = (),
        ai_config: Optional[Config] = None,
    ) -> None:
        """Генерирует теги для страницы по URL."""
        if not await self._start(task_id):
            return
        start_time = time.time()
        config = ai_config or self.config

        try:
            async with self.extractor_factory(config) as extractor:
                page = await extractor.extract(url)
            tags = await self.ai_client_factory(config).generate_tags(
                page.title or url, url, list(filter_tags), page.as_prompt_context()
            )
        except ParseError as e:
            await self._fail(task_id, e, e.raw_content)
            return
        except Exception as e:
            await self._fail(task_id, e)
            return

        await self.repository.transition(task_id, "completed", tags=tags)
        log_performance("run_tags_task", time.time() - start_time, f"task_id={task_id}, tags={len(tags)}")

    async def run_folder_task(
        self,
        task_id: str,
        url: str,
        folders: Sequence[str],
        ai_config: Optional[Config] = None,
    ) -> None:
        """Выбирает папку для страницы из списка кандидатов."""
        if not await self._start(task_id):
            return
        start_time = time.time()
        config = ai_config or self.config

        try:
            async with self.extractor_factory(config) as extractor:
                page = await extractor.extract(url)
            folder, raw = await self.ai_client_factory(config).suggest_folder_name(
                url, page.title or url, list(folders), page.as_prompt_context()
            )
        except ParseError as e:
            await self._fail(task_id, e, e.raw_content)
            return
        except Exception as e:
            await self._fail(task_id, e)
            return

        if folder is None:
            await self._fail(task_id, ParseError("Не удалось выбрать папку", raw_content=raw), raw)
            return
        await self.repository.transition(task_id, "completed", suggested_folder=folder)
        log_performance("run_folder_task", time.time() - start_time, f"task_id={task_id}, folder={folder}")
