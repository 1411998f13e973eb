"""
Модуль sync_manager.py
Согласование закладок браузера с хранилищем MarkHub.

Создание, обновление и удаление отдельных закладок, пакетная и начальная
синхронизация дерева. Пути папок создаются по порядку от корня; системные
корневые папки браузера в путь не входят. Каждая новая закладка запускает
серверную AI-рекомендацию тегов, ошибка которой не влияет на синхронизацию.
"""
import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import ConfigManager
from .errors import ReconciliationError, TransportError, categorize_status
from .logger import get_logger, log_error_with_context, log_function_call
from .markhub_api import MarkhubAPIClient
from .models import BatchSyncResult, BrowserBookmarkNode, InitialSyncResult, SyncResult
from .parser import ROOT_ID, BookmarkTree

logger = get_logger(__name__)

SYSTEM_FOLDER_TITLES = frozenset({"Bookmarks bar", "书签栏", "Other bookmarks", "其他书签"})


def is_system_folder(node: BrowserBookmarkNode) -> bool:
    return node.id == ROOT_ID or not node.title or node.title in SYSTEM_FOLDER_TITLES


class FolderPathResolver:
    """
    Создает недостающие папки пути в хранилище MarkHub.

    Список папок загружается один раз на операцию; создание одного и того же
    префикса пути сериализуется блокировкой, поэтому параллельные вызовы не
    создают дубликатов.

    Аргументы:
        api_client: Клиент API MarkHub
    """

    def __init__(self, api_client: MarkhubAPIClient):
        self.api_client = api_client
        self.folders_created = 0
        self._folders: Optional[List[Dict[str, Any]]] = None
        self._load_lock = asyncio.Lock()
        self._prefix_locks: Dict[Tuple[str, ...], asyncio.Lock] = {}

    async def _get_folders(self) -> List[Dict[str, Any]]:
        async with self._load_lock:
            if self._folders is None:
                self._folders = list(await self.api_client.get_folders())
                logger.debug(f"Загружено папок MarkHub: {len(self._folders)}")
        return self._folders

    def _find(self, name: str, parent_id: Optional[str]) -> Optional[Dict[str, Any]]:
        for folder in self._folders or []:
            if folder.get("name") == name and (folder.get("parentId") or None) == parent_id:
                return folder
        return None

    async def ensure_path(self, path: Sequence[str]) -> Optional[str]:
        """
        Обеспечивает путь папок.

        Аргументы:
            path: Названия папок от корня к листу

        Возвращает:
            Optional[str]: Идентификатор конечной папки или None для корня
        """
        if not path:
            return None

        await self._get_folders()
        parent_id: Optional[str] = None
        for depth, name in enumerate(path):
            existing = self._find(name, parent_id)
            if existing is None:
                prefix = tuple(path[:depth + 1])
                lock = self._prefix_locks.setdefault(prefix, asyncio.Lock())
                async with lock:
                    existing = self._find(name, parent_id)
                    if existing is None:
                        existing = await self.api_client.create_folder(name, parent_id)
                        self._folders.append(existing)
                        self.folders_created += 1
                        logger.info(f"Создана папка MarkHub: {' / '.join(prefix)}")
            parent_id = existing["id"]
        return parent_id


async def chrome_folder_path(tree: BookmarkTree, node_id: str) -> List[str]:
    """
    Вычисляет путь папок закладки без системных корневых папок.

    Аргументы:
        tree: Дерево закладок браузера
        node_id: Идентификатор закладки

    Возвращает:
        List[str]: Названия папок от корня к родителю закладки
    """
    path: List[str] = []
    node = await tree.get(node_id)
    parent_id = node.parent_id if node else None
    while parent_id:
        parent = await tree.get(parent_id)
        if parent is None:
            break
        if not is_system_folder(parent):
            path.append(parent.title)
        parent_id = parent.parent_id
    path.reverse()
    return path


class SyncManager:
    """
    Синхронизация закладок браузера с MarkHub.

    Аргументы:
        config_manager: Сервис конфигурации
        api_client: Клиент API MarkHub
        tree: Дерево закладок браузера
    """

    def __init__(self, config_manager: ConfigManager, api_client: MarkhubAPIClient, tree: BookmarkTree):
        self.config_manager = config_manager
        self.api_client = api_client
        self.tree = tree

    async def _precondition_error(self) -> Optional[str]:
        config = await self.config_manager.get_config()
        if not config.sync_enabled:
            logger.info("Синхронизация отключена, операция пропущена")
            return "Синхронизация отключена"
        if not config.auth_token:
            logger.info("Пользователь не авторизован в MarkHub, операция пропущена")
            return "Пользователь не авторизован"
        return None

    def is_sync_available(self) -> bool:
        config = self.config_manager.get_config_sync()
        return config.sync_enabled and bool(config.auth_token)

    async def _ensure_bookmark_folder(self, node_id: str) -> Optional[str]:
        path = await chrome_folder_path(self.tree, node_id)
        try:
            return await self.api_client.ensure_folder_path_via_api(path)
        except TransportError as e:
            logger.warning(f"Серверное обеспечение пути недоступно ({e}), папки создаются по одной")
            return await FolderPathResolver(self.api_client).ensure_path(path)

    async def _trigger_ai_tags(self, bookmark_id: str) -> None:
        try:
            response = await self.api_client.trigger_ai_tag_suggestion(bookmark_id)
        except TransportError as e:
            error = ReconciliationError(
                f"AI-рекомендация тегов не выполнена для закладки {bookmark_id}: {e}",
                category=categorize_status(e.status_code),
            )
            log_error_with_context(error, {"bookmark_id": bookmark_id, "category": error.category})
            return

        if response.get("success"):
            tags = (response.get("bookmark") or {}).get("tags")
            logger.info(f"AI-теги установлены для закладки {bookmark_id}: {tags} (aiUsed={response.get('aiUsed')})")
        else:
            logger.warning(f"AI-рекомендация тегов вернула неуспешный ответ: {response.get('message')}")

    async def sync_new_bookmark(self, chrome_bookmark: BrowserBookmarkNode) -> SyncResult:
        """
        Создает закладку в MarkHub.

        Аргументы:
            chrome_bookmark: Закладка браузера

        Возвращает:
            SyncResult: Результат с идентификатором в MarkHub или ошибкой
        """
        log_function_call("sync_new_bookmark", (chrome_bookmark.id, chrome_bookmark.url))
        error = await self._precondition_error()
        if error:
            return SyncResult(success=False, error=error)

        try:
            folder_id = await self._ensure_bookmark_folder(chrome_bookmark.id)
            created = await self.api_client.create_bookmark({
                "title": chrome_bookmark.title,
                "url": chrome_bookmark.url,
                "folderId": folder_id,
                "chromeBookmarkId": chrome_bookmark.id,
            })
        except TransportError as e:
            log_error_with_context(e, {"chrome_bookmark_id": chrome_bookmark.id, "operation": "sync_new_bookmark"})
            return SyncResult(success=False, error=str(e))

        logger.info(f"Закладка синхронизирована: {chrome_bookmark.url} -> {created['id']}")
        await self._trigger_ai_tags(created["id"])
        return SyncResult(success=True, remote_id=created["id"])

    async def sync_bookmark_update(self, chrome_bookmark: BrowserBookmarkNode) -> SyncResult:
        """Обновляет закладку в MarkHub; неизвестная закладка создается."""
        log_function_call("sync_bookmark_update", (chrome_bookmark.id,))
        error = await self._precondition_error()
        if error:
            return SyncResult(success=False, error=error)

        try:
            existing = await self.api_client.find_bookmark_by_chrome_id(chrome_bookmark.id)
            if existing is None:
                logger.info(f"Закладка {chrome_bookmark.id} не найдена в MarkHub, создается новая")
                return await self.sync_new_bookmark(chrome_bookmark)

            folder_id = await self._ensure_bookmark_folder(chrome_bookmark.id)
            updated = await self.api_client.update_bookmark(existing["id"], {
                "title": chrome_bookmark.title,
                "url": chrome_bookmark.url,
                "folderId": folder_id,
            })
        except TransportError as e:
            log_error_with_context(e, {"chrome_bookmark_id": chrome_bookmark.id, "operation": "sync_bookmark_update"})
            return SyncResult(success=False, error=str(e))

        return SyncResult(success=True, remote_id=updated.get("id", existing["id"]))

    async def sync_bookmark_deletion(self, chrome_bookmark_id: str) -> SyncResult:
        """Удаляет закладку из MarkHub; отсутствие закладки считается успехом."""
        log_function_call("sync_bookmark_deletion", (chrome_bookmark_id,))
        error = await self._precondition_error()
        if error:
            return SyncResult(success=False, error=error)

        try:
            existing = await self.api_client.find_bookmark_by_chrome_id(chrome_bookmark_id)
            if existing is None:
                logger.info(f"Закладка {chrome_bookmark_id} не найдена в MarkHub, удалять нечего")
                return SyncResult(success=True)
            await self.api_client.delete_bookmark(existing["id"])
        except TransportError as e:
            log_error_with_context(e, {"chrome_bookmark_id": chrome_bookmark_id, "operation": "sync_bookmark_deletion"})
            return SyncResult(success=False, error=str(e))

        logger.info(f"Закладка удалена из MarkHub: {existing['id']}")
        return SyncResult(success=True, remote_id=existing["id"])

    async def batch_sync_bookmarks(self, bookmarks: Sequence[BrowserBookmarkNode]) -> BatchSyncResult:
        """
        Создает закладки по одной с паузой между вызовами.
        Ошибки собираются в виде «заголовок: ошибка», обработка продолжается.
        """
        config = await self.config_manager.get_config()
        result = BatchSyncResult()
        logger.info(f"Пакетная синхронизация: {len(bookmarks)} закладок")

        for bookmark in bookmarks:
            outcome = await self.sync_new_bookmark(bookmark)
            if outcome.success:
                result.successful += 1
            else:
                result.failed += 1
                if outcome.error:
                    result.errors.append(f"{bookmark.title}: {outcome.error}")
            await asyncio.sleep(config.sync_delay)

        logger.info(f"Пакетная синхронизация завершена: успешно {result.successful}, ошибок {result.failed}")
        return result

    @staticmethod
    def _collect(
        nodes: Sequence[BrowserBookmarkNode],
        parent_path: List[str],
        folders: List[Tuple[BrowserBookmarkNode, List[str]]],
        bookmarks: List[Tuple[BrowserBookmarkNode, List[str]]],
    ) -> None:
        for node in nodes:
            if not node.is_folder:
                bookmarks.append((node, parent_path))
            elif is_system_folder(node):
                SyncManager._collect(node.children, parent_path, folders, bookmarks)
            else:
                path = parent_path + [node.title]
                folders.append((node, path))
                SyncManager._collect(node.children, path, folders, bookmarks)

    async def perform_initial_sync(self) -> InitialSyncResult:
        """
        Переносит все дерево закладок браузера в MarkHub.

        Папки создаются по глубине (родители раньше детей). Существующая
        закладка с тем же URL перезаписывается данными браузера, иначе
        создается новая.

        Возвращает:
            InitialSyncResult: Число созданных папок и закладок и ошибки по элементам
        """
        result = InitialSyncResult(success=False)
        error = await self._precondition_error()
        if error:
            result.errors.append(error)
            return result

        config = await self.config_manager.get_config()
        try:
            root = await self.tree.get_tree()
            folders: List[Tuple[BrowserBookmarkNode, List[str]]] = []
            bookmarks: List[Tuple[BrowserBookmarkNode, List[str]]] = []
            self._collect([root], [], folders, bookmarks)
            logger.info(f"Начальная синхронизация: {len(folders)} папок, {len(bookmarks)} закладок")

            resolver = FolderPathResolver(self.api_client)
            for folder, path in sorted(folders, key=lambda item: len(item[1])):
                try:
                    if await resolver.ensure_path(path):
                        result.folders_created += 1
                except TransportError as e:
                    message = f"Не удалось создать папку {folder.title}: {e}"
                    logger.error(message)
                    result.errors.append(message)
                await asyncio.sleep(config.folder_sync_delay)

            existing_by_url = {item.get("url"): item for item in await self.api_client.get_bookmarks()}
            logger.info(f"В MarkHub уже есть закладок: {len(existing_by_url)}")

            for bookmark, path in bookmarks:
                try:
                    folder_id = await resolver.ensure_path(path)
                    existing = existing_by_url.get(bookmark.url)
                    if existing:
                        await self.api_client.update_bookmark(existing["id"], {
                            "title": bookmark.title,
                            "folderId": folder_id,
                            "chromeBookmarkId": bookmark.id,
                        })
                        logger.debug(f"Существующая закладка перезаписана: {bookmark.url}")
                    else:
                        created = await self.api_client.create_bookmark({
                            "title": bookmark.title,
                            "url": bookmark.url,
                            "folderId": folder_id,
                            "chromeBookmarkId": bookmark.id,
                        })
                        await self._trigger_ai_tags(created["id"])
                    result.bookmarks_created += 1
                except TransportError as e:
                    message = f"Не удалось синхронизировать закладку {bookmark.title}: {e}"
                    logger.error(message)
                    result.errors.append(message)
                await asyncio.sleep(config.sync_delay)

            result.success = True
        except TransportError as e:
            log_error_with_context(e, {"operation": "perform_initial_sync"})
            result.errors.append(f"Начальная синхронизация не выполнена: {e}")

        logger.info(
            f"Начальная синхронизация завершена: папок {result.folders_created}, "
            f"закладок {result.bookmarks_created}, ошибок {len(result.errors)}"
        )
        return result
