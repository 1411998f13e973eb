"""
Модуль background.py
Фоновый процесс расширения: от создания закладки до решения пользователя.

Новая закладка -> содержимое страницы -> подсказка «загрузка» ->
рекомендация папки -> подсказка с предложением или ошибкой. Подтверждение
переносит закладку в рекомендованную папку, отказ оставляет ее на месте;
в обоих случаях закладка отправляется в веб-приложение или откладывается.
Отложенные закладки отправляются при запуске, периодически и при загрузке
вкладки приложения.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from .ai_client import AIServiceClient
from .config import Config, ConfigManager
from .errors import MarkhubError, TransportError
from .logger import get_logger, log_error_with_context, log_function_call
from .messages import (
    PingMessage,
    PongMessage,
    SuggestionPayload,
    ToastReadyMessage,
    UserActionCancelMessage,
    UserActionConfirmMessage,
    UserActionPayload,
    UserActionRejectMessage,
    parse_runtime_message,
)
from .messenger import AppBridge, BrowserTabs, ToastMessenger, request_page_content
from .models import BookmarkSnapshot, BrowserBookmarkNode, FolderRecommendation, PendingBookmarkRecord
from .parser import BookmarkTree, collect_candidate_folders

logger = get_logger(__name__)

INTERNAL_URL_PREFIXES = ("chrome://", "chrome-extension://", "chrome-search://", "chrome-devtools://")

AIClientFactory = Callable[[Config], AIServiceClient]


def is_internal_url(url: Optional[str]) -> bool:
    return bool(url) and url.startswith(INTERNAL_URL_PREFIXES)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class BackgroundCoordinator:
    """
    Координатор событий фонового процесса расширения.

    Аргументы:
        config_manager: Сервис конфигурации
        tree: Дерево закладок браузера
        tabs: Доступ к вкладкам
        app_bridge: Доставка закладок в веб-приложение
        ai_client_factory: Создает клиент AI по текущей конфигурации
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        tree: BookmarkTree,
        tabs: BrowserTabs,
        app_bridge: AppBridge,
        ai_client_factory: AIClientFactory = AIServiceClient,
    ):
        self.config_manager = config_manager
        self.tree = tree
        self.tabs = tabs
        self.app_bridge = app_bridge
        self.ai_client_factory = ai_client_factory
        self.toast = ToastMessenger(tabs)
        self._pending_loop: Optional[asyncio.Task] = None

    # --- Создание закладки ---

    async def on_bookmark_created(self, bookmark: BrowserBookmarkNode) -> Optional[FolderRecommendation]:
        """
        Обрабатывает создание закладки в браузере.

        Возвращает:
            FolderRecommendation или None, если закладка пропущена или рекомендации нет
        """
        log_function_call("on_bookmark_created", (bookmark.id, bookmark.url))
        config = await self.config_manager.get_config()

        if not config.sync_enabled:
            logger.info("Синхронизация отключена, закладка не обрабатывается")
            return None
        if not config.api_key:
            logger.error("API-ключ AI-сервиса не задан, рекомендация папки невозможна")
            return None
        if bookmark.is_folder:
            logger.debug(f"Создана папка {bookmark.title}, рекомендация не требуется")
            return None
        if is_internal_url(bookmark.url):
            logger.info(f"Внутренний URL браузера пропущен: {bookmark.url}")
            return None

        candidates = collect_candidate_folders(await self.tree.get_tree())
        logger.info(f"Папок-кандидатов: {len(candidates)}")

        active_tab = await self.tabs.get_active_tab()
        tab_id = active_tab.get("id") if active_tab else None
        page_context = None
        if tab_id is not None:
            page = await request_page_content(
                self.tabs, tab_id, config.content_request_timeout, config.content_retry_delay
            )
            if page is not None:
                page_context = page.as_prompt_context()
        else:
            logger.warning("Активная вкладка не найдена, рекомендация только по URL и заголовку")

        if config.show_notifications:
            if self.toast.active_tab_id != tab_id:
                self.toast.attach(tab_id)
            await self.toast.show_loading(bookmark.title)

        snapshot = BookmarkSnapshot(url=bookmark.url, title=bookmark.title or bookmark.url)
        try:
            recommendation = await self.ai_client_factory(config).get_folder_recommendation(
                snapshot, candidates, page_context
            )
        except MarkhubError as e:
            log_error_with_context(e, {"bookmark_id": bookmark.id, "operation": "folder_recommendation"})
            if config.show_notifications:
                await self.toast.show_error(f"Ошибка AI-рекомендации: {e}")
            return None

        if recommendation is None:
            logger.info(f"Рекомендация папки не получена: {bookmark.url}")
            if config.show_notifications:
                await self.toast.show_error(f'Не удалось получить рекомендацию папки для "{bookmark.title}"')
            return None

        logger.info(
            f"Рекомендована папка '{recommendation.folder_name}' для {bookmark.url} "
            f"(уверенность {recommendation.confidence:.2f}, резервная={recommendation.is_fallback})"
        )
        if config.show_notifications:
            await self.toast.show_suggestion(SuggestionPayload(
                bookmark_id=bookmark.id,
                bookmark_title=bookmark.title,
                suggested_folder=recommendation.folder_name,
                suggested_folder_id=recommendation.folder_id,
                confidence=recommendation.confidence,
                reason=recommendation.reason or None,
                original_parent_id=bookmark.parent_id,
            ))
        elif config.auto_move_to_recommended_folder:
            await self.handle_user_confirm(
                UserActionPayload(bookmark_id=bookmark.id, suggested_folder_id=recommendation.folder_id)
            )
        return recommendation

    # --- Сообщения content script ---

    async def handle_runtime_message(self, message: Any, tab_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Обрабатывает сообщение content script.

        Аргументы:
            message: Сообщение в формате канала
            tab_id: Вкладка-отправитель

        Возвращает:
            Dict[str, Any]: Ответ отправителю
        """
        try:
            parsed = parse_runtime_message(message)
        except PydanticValidationError:
            logger.warning(f"Неизвестное сообщение: {message.get('type') if isinstance(message, dict) else message}")
            return {"status": "unknown_message_type"}

        if isinstance(parsed, ToastReadyMessage):
            await self.toast.mark_ready(tab_id)
            return {"status": "toast_ready_acknowledged"}
        if isinstance(parsed, UserActionConfirmMessage):
            result = await self.handle_user_confirm(parsed.payload)
            return {"status": "processing", "result": result}
        if isinstance(parsed, UserActionRejectMessage):
            result = await self.handle_user_reject(parsed.payload)
            return {"status": "processing_with_original", "result": result}
        if isinstance(parsed, UserActionCancelMessage):
            logger.info("Пользователь отменил рекомендацию")
            self.toast.reset()
            return {"status": "cancelled"}
        if isinstance(parsed, PingMessage):
            return PongMessage(timestamp=int(time.time() * 1000)).to_wire()

        logger.warning(f"Сообщение не обрабатывается фоновым процессом: {parsed.type}")
        return {"status": "unknown_message_type"}

    async def _send_bookmark(self, bookmark_id: str, folder_id: Optional[str]) -> Dict[str, str]:
        bookmark = await self.tree.get(bookmark_id)
        if bookmark is None:
            raise KeyError(f"Закладка {bookmark_id} не найдена")
        folder = await self.tree.get(folder_id) if folder_id else None

        record = PendingBookmarkRecord(
            url=bookmark.url,
            title=bookmark.title,
            created_at=_now_iso(),
            chrome_bookmark_id=bookmark.id,
            chrome_parent_id=bookmark.parent_id,
            folder_name=folder.title if folder else None,
        )
        result = await self.app_bridge.send_to_app(record)
        logger.info(f"Статус отправки закладки в приложение: {result['status']}")
        return result

    async def handle_user_confirm(self, payload: UserActionPayload) -> Optional[Dict[str, str]]:
        """Переносит закладку в рекомендованную папку и отправляет ее в приложение."""
        if not payload.suggested_folder_id:
            logger.error("В подтверждении нет идентификатора рекомендованной папки")
            return None

        try:
            await self.tree.move(payload.bookmark_id, payload.suggested_folder_id)
            logger.info(f"Закладка {payload.bookmark_id} перенесена в папку {payload.suggested_folder_id}")
            await self.toast.hide()
            self.toast.reset()
            return await self._send_bookmark(payload.bookmark_id, payload.suggested_folder_id)
        except (KeyError, TransportError) as e:
            log_error_with_context(e, {"bookmark_id": payload.bookmark_id, "operation": "user_confirm"})
            return {"status": "error", "reason": str(e)}

    async def handle_user_reject(self, payload: UserActionPayload) -> Optional[Dict[str, str]]:
        """Оставляет закладку в исходной папке и отправляет ее в приложение."""
        await self.toast.hide()
        self.toast.reset()
        try:
            bookmark = await self.tree.get(payload.bookmark_id)
            if bookmark is None:
                raise KeyError(f"Закладка {payload.bookmark_id} не найдена")
            return await self._send_bookmark(bookmark.id, bookmark.parent_id)
        except (KeyError, TransportError) as e:
            log_error_with_context(e, {"bookmark_id": payload.bookmark_id, "operation": "user_reject"})
            return {"status": "error", "reason": str(e)}

    # --- Отложенные закладки ---

    async def on_startup(self) -> Dict[str, int]:
        logger.info("Запуск: отправка отложенных закладок")
        return await self.app_bridge.send_pending()

    async def on_tab_updated(self, url: Optional[str], status: str) -> Optional[Dict[str, int]]:
        """Отправляет отложенные закладки, когда вкладка приложения загрузилась."""
        if status != "complete" or not url:
            return None
        config = await self.config_manager.get_config()
        if not config.markhub_app_url or not url.startswith(config.markhub_app_url):
            return None

        logger.info("Открыта вкладка MarkHub, отправка отложенных закладок")
        await asyncio.sleep(config.app_tab_load_delay)
        return await self.app_bridge.send_pending()

    async def _pending_send_loop(self) -> None:
        while True:
            config = await self.config_manager.get_config()
            await asyncio.sleep(config.pending_send_interval)
            try:
                result = await self.app_bridge.send_pending()
                logger.info(f"Периодическая отправка: отправлено {result['sent']}, осталось {result['remaining']}")
            except Exception as e:
                log_error_with_context(e, {"operation": "pending_send_loop"})

    def start_periodic_pending_send(self) -> asyncio.Task:
        if self._pending_loop is None or self._pending_loop.done():
            self._pending_loop = asyncio.get_running_loop().create_task(self._pending_send_loop())
        return self._pending_loop

    async def stop(self) -> None:
        if self._pending_loop is not None and not self._pending_loop.done():
            self._pending_loop.cancel()
            try:
                await self._pending_loop
            except asyncio.CancelledError:
                pass
        self._pending_loop = None
