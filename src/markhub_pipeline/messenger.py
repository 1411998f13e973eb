"""
Модуль messenger.py
Передача сообщений между изолированными контекстами.

ToastMessenger буферизует сообщения для всплывающей подсказки, пока content
script не сообщил о готовности, и при готовности отправляет очередь по
правилу приоритета (plan_flush). request_page_content запрашивает текст
страницы у content script с одной повторной попыткой при ошибке
«нет получателя». AppBridge доставляет классифицированные закладки в
веб-приложение, а при недоступности приложения откладывает их в
долговременное хранилище. ExtensionMessageListener принимает сообщения
расширения на стороне веб-приложения.
"""
import asyncio
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .config import ConfigManager
from .errors import NoReceiverError, TransportError
from .logger import get_logger, log_error_with_context, log_function_call
from .messages import (
    EXTENSION_SOURCE,
    TERMINAL_TOAST_TYPES,
    TOAST_SHOW_LOADING,
    UI_STATE_TOAST_TYPES,
    ClassifiedBookmarkPayload,
    ExtensionLoadedMessage,
    FolderClassifiedBookmarkMessage,
    GetPageContentMessage,
    NewBookmarkBatchMessage,
    NewBookmarkMessage,
    PageContentResponse,
    RequestPendingBookmarksMessage,
    SuggestionPayload,
    ToastHideMessage,
    ToastShowErrorMessage,
    ToastShowLoadingMessage,
    ToastShowSuggestionMessage,
    parse_window_message,
)
from .models import BookmarkSnapshot, PendingBookmarkRecord
from .pending_store import PendingBookmarkStore

logger = get_logger(__name__)

WireMessage = Dict[str, Any]


class BrowserTabs(Protocol):
    """Вкладки браузера и доставка сообщений в них."""

    async def send_message(self, tab_id: int, message: WireMessage) -> Any:
        """Доставляет сообщение; NoReceiverError, если в вкладке нет получателя."""
        ...

    async def query_tabs(self, url_pattern: str) -> List[int]:
        ...

    async def get_active_tab(self) -> Optional[Dict[str, Any]]:
        ...


def _to_wire(message: Union[BaseModel, WireMessage]) -> WireMessage:
    if isinstance(message, BaseModel):
        return message.model_dump(by_alias=True, exclude_none=True)
    return message


def plan_flush(pending: List[WireMessage]) -> List[WireMessage]:
    """
    Определяет порядок отправки отложенных сообщений подсказки.

    Сначала все сообщения, не меняющие состояние подсказки; затем последнее
    сообщение загрузки, если в очереди нет конечных сообщений; затем только
    последнее конечное сообщение (предложение или ошибка).

    Аргументы:
        pending: Очередь в порядке постановки

    Возвращает:
        List[WireMessage]: Сообщения в порядке отправки
    """
    other = [msg for msg in pending if msg.get("type") not in UI_STATE_TOAST_TYPES]
    loading = [msg for msg in pending if msg.get("type") == TOAST_SHOW_LOADING]
    terminal = [msg for msg in pending if msg.get("type") in TERMINAL_TOAST_TYPES]

    plan = list(other)
    if terminal:
        plan.append(terminal[-1])
    elif loading:
        plan.append(loading[-1])
    return plan


class ToastMessenger:
    """
    Отправка сообщений всплывающей подсказке в активной вкладке.

    Аргументы:
        tabs: Доступ к вкладкам браузера
    """

    def __init__(self, tabs: BrowserTabs):
        self.tabs = tabs
        self.active_tab_id: Optional[int] = None
        self.is_ready = False
        self.pending: List[WireMessage] = []

    def attach(self, tab_id: Optional[int]) -> None:
        """Привязывает подсказку к вкладке; до TOAST_READY сообщения буферизуются."""
        self.active_tab_id = tab_id
        self.is_ready = False

    def reset(self) -> None:
        self.active_tab_id = None
        self.is_ready = False
        self.pending = []

    async def send(self, message: Union[BaseModel, WireMessage]) -> bool:
        """
        Отправляет сообщение или ставит его в очередь, если подсказка не готова.

        Возвращает:
            bool: False, если нет активной вкладки или доставка не удалась
        """
        wire = _to_wire(message)
        if self.active_tab_id is None:
            logger.warning(f"Нет активной вкладки, сообщение не отправлено: {wire.get('type')}")
            return False

        if not self.is_ready:
            logger.debug(f"Подсказка не готова, сообщение поставлено в очередь: {wire.get('type')}")
            self.pending.append(wire)
            return True

        try:
            await self.tabs.send_message(self.active_tab_id, wire)
        except TransportError as e:
            logger.warning(f"Не удалось отправить сообщение подсказке ({wire.get('type')}): {e}")
            return False
        return True

    async def mark_ready(self, tab_id: Optional[int]) -> List[WireMessage]:
        """
        Обрабатывает TOAST_READY: запоминает вкладку и отправляет очередь.

        Возвращает:
            List[WireMessage]: Отправленные сообщения в порядке отправки
        """
        self.active_tab_id = tab_id
        self.is_ready = True

        plan = plan_flush(self.pending)
        dropped = len(self.pending) - len(plan)
        self.pending = []
        if plan:
            logger.info(f"Отправка {len(plan)} отложенных сообщений подсказке (вытеснено: {dropped})")

        for message in plan:
            await self.send(message)
        return plan

    async def show_loading(self, bookmark_title: str) -> bool:
        return await self.send(ToastShowLoadingMessage(payload={"bookmarkTitle": bookmark_title}))

    async def show_suggestion(self, suggestion: SuggestionPayload) -> bool:
        return await self.send(ToastShowSuggestionMessage(payload=suggestion))

    async def show_error(self, error_message: str) -> bool:
        return await self.send(ToastShowErrorMessage(payload={"message": error_message}))

    async def hide(self) -> bool:
        return await self.send(ToastHideMessage())


async def request_page_content(
    tabs: BrowserTabs,
    tab_id: int,
    timeout: float = 3.0,
    retry_delay: float = 0.5,
) -> Optional[PageContentResponse]:
    """
    Запрашивает содержимое страницы у content script.

    Повторяет запрос один раз после retry_delay, только если content script
    еще не подключился (NoReceiverError). Другие ошибки и таймаут дают None.

    Аргументы:
        tabs: Доступ к вкладкам
        tab_id: Вкладка страницы
        timeout: Таймаут одной попытки в секундах
        retry_delay: Пауза перед повторной попыткой

    Возвращает:
        PageContentResponse или None
    """
    log_function_call("request_page_content", (tab_id,))
    message = GetPageContentMessage().to_wire()

    for attempt in range(2):
        try:
            response = await asyncio.wait_for(tabs.send_message(tab_id, message), timeout)
        except NoReceiverError as e:
            if attempt == 0:
                logger.info(f"Content script вкладки {tab_id} еще не подключен, повтор через {retry_delay}с")
                await asyncio.sleep(retry_delay)
                continue
            logger.warning(f"Content script вкладки {tab_id} недоступен: {e}")
            return None
        except asyncio.TimeoutError:
            logger.warning(f"Таймаут получения содержимого страницы ({timeout}с), вкладка {tab_id}")
            return None
        except TransportError as e:
            logger.warning(f"Ошибка получения содержимого страницы, вкладка {tab_id}: {e}")
            return None

        if not response:
            logger.warning(f"Content script вкладки {tab_id} вернул пустой ответ")
            return None
        try:
            return PageContentResponse.model_validate(response)
        except PydanticValidationError as e:
            logger.warning(f"Некорректный ответ content script: {e.error_count()} ошибок")
            return None
    return None


class AppBridge:
    """
    Доставка классифицированных закладок в открытую вкладку веб-приложения.

    Аргументы:
        config_manager: Сервис конфигурации (адрес приложения, таймаут)
        tabs: Доступ к вкладкам
        pending_store: Хранилище неотправленных закладок
    """

    def __init__(self, config_manager: ConfigManager, tabs: BrowserTabs, pending_store: PendingBookmarkStore):
        self.config_manager = config_manager
        self.tabs = tabs
        self.pending_store = pending_store

    async def _deliver(self, record: PendingBookmarkRecord) -> Tuple[bool, str]:
        config = await self.config_manager.get_config()
        app_url = config.markhub_app_url
        if not app_url:
            return False, "MarkhubAppUrlNotConfigured"

        tab_ids = await self.tabs.query_tabs(f"{app_url.rstrip('/')}/*")
        if not tab_ids:
            return False, "NoMarkHubTabFound"

        message = FolderClassifiedBookmarkMessage(
            payload=ClassifiedBookmarkPayload.model_validate(record.to_dict())
        ).to_wire()
        try:
            response = await asyncio.wait_for(
                self.tabs.send_message(tab_ids[0], message), config.app_message_timeout
            )
        except asyncio.TimeoutError:
            return False, "Timeout"
        except TransportError as e:
            logger.warning(f"Не удалось отправить закладку в приложение: {e}")
            return False, "SendMessageFailed"

        if isinstance(response, dict) and response.get("success"):
            return True, "Sent"
        return False, "SendMessageFailed"

    async def send_to_app(self, record: PendingBookmarkRecord, add_to_pending_if_fail: bool = True) -> Dict[str, str]:
        """
        Отправляет закладку в веб-приложение.

        Аргументы:
            record: Классифицированная закладка
            add_to_pending_if_fail: Отложить закладку при неудаче

        Возвращает:
            Dict[str, str]: {"status": "sent"} или {"status": "pending", "reason": ...}
        """
        log_function_call("send_to_app", (record.url,))
        delivered, reason = await self._deliver(record)
        if delivered:
            logger.info(f"Закладка отправлена в приложение: {record.url}")
            return {"status": "sent"}

        logger.info(f"Приложение недоступно ({reason}), закладка отложена: {record.url}")
        if add_to_pending_if_fail:
            await self.pending_store.append(record)
        return {"status": "pending", "reason": reason}

    async def send_pending(self) -> Dict[str, int]:
        """Отправляет отложенные закладки; возвращает {"sent": n, "remaining": m}."""
        async def deliver(record: PendingBookmarkRecord) -> bool:
            delivered, _reason = await self._deliver(record)
            return delivered

        return await self.pending_store.drain(deliver)


class ExtensionMessageListener:
    """
    Обработчик сообщений расширения на стороне веб-приложения.

    Принимает только сообщения с source == "markhub-extension". Захваченные
    закладки ставятся в очередь классификации, подтвержденные пользователем
    сохраняются в хранилище закладок.

    Аргументы:
        task_store: Очередь задач классификации
    """

    def __init__(self, task_store):
        self.task_store = task_store
        self.extension_loaded = False

    @staticmethod
    def request_pending_message() -> WireMessage:
        return RequestPendingBookmarksMessage().to_wire()

    async def handle(self, data: Any) -> Dict[str, Any]:
        """
        Обрабатывает одно сообщение окна.

        Возвращает:
            Dict[str, Any]: Ответ отправителю ({"success": ...})
        """
        if not isinstance(data, dict) or data.get("source") != EXTENSION_SOURCE:
            return {"success": False, "ignored": True}

        try:
            message = parse_window_message(data)
        except PydanticValidationError as e:
            logger.warning(f"Некорректное сообщение расширения ({data.get('type')}): {e.error_count()} ошибок")
            return {"success": False, "error": "invalid_message"}

        if isinstance(message, ExtensionLoadedMessage):
            self.extension_loaded = True
            logger.info("Расширение MarkHub подключено к приложению")
            return {"success": True}

        if isinstance(message, NewBookmarkMessage):
            task = self.task_store.add_task(BookmarkSnapshot.from_payload(message.payload.to_wire()))
            return {"success": True, "task_ids": [task.id] if task else []}

        if isinstance(message, NewBookmarkBatchMessage):
            tasks = self.task_store.add_tasks(
                BookmarkSnapshot.from_payload(item.to_wire()) for item in message.payload
            )
            return {"success": True, "task_ids": [task.id for task in tasks]}

        if isinstance(message, FolderClassifiedBookmarkMessage):
            result = await self.task_store.persist_classified_bookmark(message.payload.to_wire())
            if not result.success:
                log_error_with_context(
                    RuntimeError(result.error), {"url": message.payload.url, "operation": "folder_classified"}
                )
            return {"success": result.success, "bookmark_id": result.remote_id, "error": result.error}

        logger.debug(f"Сообщение не обрабатывается приложением: {message.type}")
        return {"success": False, "ignored": True}
