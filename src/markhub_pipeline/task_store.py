"""
Модуль task_store.py
Очередь задач AI-классификации захваченных закладок.

Постановка в очередь синхронная и не ждет AI-вызовов: обработка задачи
планируется в текущем цикле событий сразу после добавления. Для каждой
задачи независимо работают обработчик тегов и обработчик папки; общее
число одновременных AI-вызовов ограничено семафором. Когда обе подзадачи
завершены, результат передается в хранилище закладок.
"""
import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set

from .ai_client import AIServiceClient, normalize_tags
from .config import ConfigManager
from .errors import ReconciliationError, categorize_status
from .logger import get_logger, log_error_with_context, log_function_call
from .markhub_api import BookmarkRepository
from .models import BookmarkSnapshot, ClassificationTask, OverallStatus, SyncResult

logger = get_logger(__name__)

NamesProvider = Callable[[], Awaitable[Sequence[str]]]
StoreListener = Callable[['ClassificationTaskStore'], None]


def generate_task_id() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class ClassificationTaskStore:
    """
    Хранилище задач классификации в памяти.

    Аргументы:
        config_manager: Сервис конфигурации (лимит параллелизма, параметры AI)
        folder_provider: Возвращает названия папок-кандидатов
        repository: Хранилище закладок для сохранения результатов (необязательно)
        ai_client: Клиент AI-сервиса; по умолчанию создается из текущей конфигурации
        tag_provider: Возвращает существующие теги пользователя (необязательно)
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        folder_provider: NamesProvider,
        repository: Optional[BookmarkRepository] = None,
        ai_client: Optional[AIServiceClient] = None,
        tag_provider: Optional[NamesProvider] = None,
    ):
        self.config_manager = config_manager
        self.folder_provider = folder_provider
        self.repository = repository
        self.tag_provider = tag_provider
        self._ai_client = ai_client

        limit = config_manager.get_config_sync().tag_concurrency_limit
        self.concurrency_limit = limit if limit > 0 else 5
        self._semaphore = asyncio.Semaphore(self.concurrency_limit)

        self._tasks: Dict[str, ClassificationTask] = {}
        self._seen_keys: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._url_locks: Dict[str, asyncio.Lock] = {}
        self._listeners: List[StoreListener] = []

        logger.info(f"ClassificationTaskStore инициализирован: concurrency_limit={self.concurrency_limit}")

    # --- Постановка в очередь ---

    def add_task(self, bookmark: BookmarkSnapshot) -> Optional[ClassificationTask]:
        """
        Добавляет задачу и планирует ее обработку.
        Должен вызываться из работающего цикла событий.

        Аргументы:
            bookmark: Снимок захваченной закладки

        Возвращает:
            ClassificationTask или None, если такая закладка (URL + время) уже в работе
        """
        key = bookmark.dedup_key
        if key in self._seen_keys:
            logger.info(f"Повторный захват пропущен: {bookmark.url}")
            return None

        task = ClassificationTask(id=generate_task_id(), bookmark=bookmark)
        self._seen_keys.add(key)
        self._tasks[task.id] = task
        logger.info(f"Задача {task.id} добавлена в очередь: {bookmark.url}")

        self._spawn(self._process_task(task.id))
        self._notify()
        return task

    def add_tasks(self, bookmarks: Iterable[BookmarkSnapshot]) -> List[ClassificationTask]:
        """Добавляет пакет задач; повторные захваты пропускаются."""
        added = []
        for bookmark in bookmarks:
            task = self.add_task(bookmark)
            if task is not None:
                added.append(task)
        logger.info(f"Пакет поставлен в очередь: добавлено {len(added)} задач")
        return added

    def _spawn(self, coro: Awaitable[Any]) -> None:
        background = asyncio.get_running_loop().create_task(coro)
        self._background.add(background)
        background.add_done_callback(self._background.discard)

    # --- Обработчики ---

    async def _get_ai_client(self) -> AIServiceClient:
        if self._ai_client is not None:
            return self._ai_client
        return AIServiceClient(await self.config_manager.get_config())

    async def _process_task(self, task_id: str) -> None:
        await asyncio.gather(self._run_tag_worker(task_id), self._run_folder_worker(task_id))
        await self._persist_task(task_id)

    async def _run_tag_worker(self, task_id: str) -> None:
        async with self._semaphore:
            task = self._tasks.get(task_id)
            if task is None:
                logger.debug(f"Задача {task_id} удалена до генерации тегов")
                return

            task.start_tags()
            self._notify()

            tags: Optional[List[str]] = None
            error: Optional[str] = None
            try:
                existing = list(task.bookmark.tags)
                if self.tag_provider is not None:
                    existing.extend(await self.tag_provider())
                ai_client = await self._get_ai_client()
                tags = await ai_client.generate_tags(task.bookmark.title, task.bookmark.url, normalize_tags(existing))
            except Exception as e:
                error = str(e) or type(e).__name__
                log_error_with_context(e, {"task_id": task_id, "url": task.bookmark.url, "operation": "generate_tags"})

        if self._tasks.get(task_id) is not task:
            logger.debug(f"Результат тегов отброшен: задача {task_id} удалена")
            return
        if error is None:
            task.finish_tags(tags)
            logger.info(f"Задача {task_id}: сгенерировано тегов: {len(tags)}")
        else:
            task.fail_tags(error)
        self._notify()

    async def _run_folder_worker(self, task_id: str) -> None:
        async with self._semaphore:
            task = self._tasks.get(task_id)
            if task is None:
                logger.debug(f"Задача {task_id} удалена до рекомендации папки")
                return

            task.start_folder()
            self._notify()

            folder: Optional[str] = None
            error: Optional[str] = None
            try:
                folders = list(await self.folder_provider())
                ai_client = await self._get_ai_client()
                folder, _raw = await ai_client.suggest_folder_name(
                    task.bookmark.url, task.bookmark.title, folders
                )
            except Exception as e:
                error = str(e) or type(e).__name__
                log_error_with_context(e, {"task_id": task_id, "url": task.bookmark.url, "operation": "suggest_folder"})

        if self._tasks.get(task_id) is not task:
            logger.debug(f"Рекомендация папки отброшена: задача {task_id} удалена")
            return
        if error is None:
            task.finish_folder(folder)
            logger.info(f"Задача {task_id}: рекомендована папка '{folder}'")
        else:
            task.fail_folder(error)
        self._notify()

    # --- Сохранение результатов ---

    async def _persist_task(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is None or self.repository is None or not task.is_terminal or task.persisted:
            return

        bookmark = task.bookmark
        try:
            remote_id = await self.upsert_bookmark(
                url=bookmark.url,
                title=bookmark.title,
                tags=list(bookmark.tags) + list(task.generated_tags or ()),
                folder_name=task.suggested_folder,
                description=bookmark.description,
                created_at=bookmark.added_at,
            )
        except Exception as e:
            error = ReconciliationError(
                f"Не удалось сохранить результат классификации: {e}",
                category=categorize_status(getattr(e, "status_code", None)),
            )
            task.persist_error = str(error)
            log_error_with_context(error, {"task_id": task_id, "url": bookmark.url, "category": error.category})
        else:
            task.persisted = True
            task.remote_bookmark_id = remote_id
            logger.info(f"Задача {task_id}: результат сохранен в закладку {remote_id}")
        self._notify()

    async def upsert_bookmark(
        self,
        url: str,
        title: str,
        tags: Sequence[str] = (),
        folder_name: Optional[str] = None,
        description: Optional[str] = None,
        created_at: Optional[str] = None,
        chrome_bookmark_id: Optional[str] = None,
    ) -> str:
        """
        Создает закладку или обновляет существующую с тем же URL.

        Операции с одним URL выполняются последовательно, поэтому повторные
        захваты одной страницы дают одну запись.

        Возвращает:
            str: Идентификатор закладки в хранилище
        """
        if self.repository is None:
            raise RuntimeError("Хранилище закладок не настроено")

        lock = self._url_locks.setdefault(url, asyncio.Lock())
        async with lock:
            folder_id = None
            if folder_name:
                folder = await self.repository.find_folder_by_name(folder_name)
                if folder:
                    folder_id = folder["id"]
                else:
                    logger.warning(f"Папка '{folder_name}' не найдена, закладка сохраняется без папки")

            existing = await self.repository.find_bookmark_by_url(url)
            data: Dict[str, Any] = {"title": title, "url": url}
            if folder_id is not None:
                data["folderId"] = folder_id
            if description:
                data["description"] = description
            if chrome_bookmark_id:
                data["chromeBookmarkId"] = chrome_bookmark_id

            if existing:
                data["tags"] = normalize_tags(list(existing.get("tags") or []) + list(tags))
                await self.repository.update_bookmark(existing["id"], data)
                logger.info(f"Закладка обновлена: {url}")
                return existing["id"]

            data["tags"] = normalize_tags(tags)
            if created_at:
                data["createdAt"] = created_at
            created = await self.repository.create_bookmark(data)
            logger.info(f"Закладка создана: {url}")
            return created["id"]

    async def persist_classified_bookmark(self, payload: Dict[str, Any]) -> SyncResult:
        """
        Сохраняет закладку, классифицированную в расширении и подтвержденную пользователем.

        Аргументы:
            payload: {url, title, chromeBookmarkId, chromeParentId, folderName, createdAt}

        Возвращает:
            SyncResult: Результат сохранения
        """
        log_function_call("persist_classified_bookmark", (payload.get("url"),))
        try:
            remote_id = await self.upsert_bookmark(
                url=payload["url"],
                title=payload.get("title") or payload["url"],
                folder_name=payload.get("folderName"),
                created_at=payload.get("createdAt"),
                chrome_bookmark_id=payload.get("chromeBookmarkId"),
            )
        except Exception as e:
            log_error_with_context(e, {"url": payload.get("url"), "operation": "persist_classified_bookmark"})
            return SyncResult(success=False, error=str(e))
        return SyncResult(success=True, remote_id=remote_id)

    # --- Очистка и чтение ---

    def clear_completed_tasks(self) -> int:
        """Удаляет завершенные и частично завершенные задачи; возвращает их число."""
        finished = (OverallStatus.COMPLETED, OverallStatus.PARTIALLY_FAILED)
        removed = [task_id for task_id, task in self._tasks.items() if task.overall_status in finished]
        for task_id in removed:
            del self._tasks[task_id]
        logger.info(f"Удалено завершенных задач: {len(removed)}")
        self._notify()
        return len(removed)

    def clear_all_tasks(self) -> None:
        """Удаляет все задачи; AI-вызовы в работе не отменяются, их результат отбрасывается."""
        count = len(self._tasks)
        self._tasks.clear()
        self._seen_keys.clear()
        logger.info(f"Очередь очищена: удалено {count} задач")
        self._notify()

    def get_task(self, task_id: str) -> Optional[ClassificationTask]:
        return self._tasks.get(task_id)

    @property
    def tasks(self) -> List[ClassificationTask]:
        return list(self._tasks.values())

    def _count(self, *statuses: OverallStatus) -> int:
        return sum(1 for task in self._tasks.values() if task.overall_status in statuses)

    @property
    def has_active_tasks(self) -> bool:
        return self._count(OverallStatus.PENDING, OverallStatus.PROCESSING) > 0

    @property
    def pending_count(self) -> int:
        return self._count(OverallStatus.PENDING)

    @property
    def processing_count(self) -> int:
        return self._count(OverallStatus.PROCESSING)

    @property
    def completed_count(self) -> int:
        return self._count(OverallStatus.COMPLETED, OverallStatus.PARTIALLY_FAILED)

    @property
    def failed_count(self) -> int:
        return self._count(OverallStatus.FAILED)

    async def wait_until_idle(self) -> None:
        """Ожидает завершения всей запланированной фоновой работы."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def add_listener(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                log_error_with_context(e, {"operation": "task_store_listener"})
