"""
Модуль messages.py
Схемы сообщений между контекстами: расширение (фоновый процесс и content
script) и веб-приложение MarkHub. Каждый канал описан размеченным
объединением pydantic-моделей с дискриминатором по полю type.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

EXTENSION_SOURCE = "markhub-extension"
APP_SOURCE = "markhub-app"

TOAST_SHOW_LOADING = "TOAST_SHOW_LOADING"
TOAST_SHOW_SUGGESTION = "TOAST_SHOW_SUGGESTION"
TOAST_SHOW_ERROR = "TOAST_SHOW_ERROR"
TERMINAL_TOAST_TYPES = frozenset({TOAST_SHOW_SUGGESTION, TOAST_SHOW_ERROR})
UI_STATE_TOAST_TYPES = TERMINAL_TOAST_TYPES | {TOAST_SHOW_LOADING}


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# --- Окно веб-приложения: расширение <-> приложение ---

class BookmarkPayload(_Message):
    url: str
    title: str = ""
    added_at: Optional[str] = Field(default=None, alias="addedAt")
    tags: Optional[List[str]] = None
    description: Optional[str] = None

    @field_validator("added_at", mode="before")
    @classmethod
    def _added_at_to_str(cls, value: Any) -> Any:
        # content script присылает время в миллисекундах числом
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ClassifiedBookmarkPayload(_Message):
    url: str
    title: str = ""
    chrome_bookmark_id: Optional[str] = Field(default=None, alias="chromeBookmarkId")
    chrome_parent_id: Optional[str] = Field(default=None, alias="chromeParentId")
    folder_name: Optional[str] = Field(default=None, alias="folderName")
    created_at: Optional[str] = Field(default=None, alias="createdAt")


class ExtensionLoadedMessage(_Message):
    source: Literal["markhub-extension"] = EXTENSION_SOURCE
    type: Literal["EXTENSION_LOADED", "MARKHUB_EXTENSION_LOADED"] = "EXTENSION_LOADED"
    payload: Optional[Dict[str, Any]] = None


class NewBookmarkMessage(_Message):
    source: Literal["markhub-extension"] = EXTENSION_SOURCE
    type: Literal["NEW_BOOKMARK_FOR_AI_CLASSIFICATION"] = "NEW_BOOKMARK_FOR_AI_CLASSIFICATION"
    payload: BookmarkPayload


class NewBookmarkBatchMessage(_Message):
    source: Literal["markhub-extension"] = EXTENSION_SOURCE
    type: Literal["NEW_BOOKMARK_FOR_AI_CLASSIFICATION_BATCH"] = "NEW_BOOKMARK_FOR_AI_CLASSIFICATION_BATCH"
    payload: List[BookmarkPayload]


class FolderClassifiedBookmarkMessage(_Message):
    source: Literal["markhub-extension"] = EXTENSION_SOURCE
    type: Literal[
        "MARKHUB_CHROME_SYNC_FOLDER_CLASSIFIED_BOOKMARK", "FOLDER_CLASSIFIED_BOOKMARK"
    ] = "MARKHUB_CHROME_SYNC_FOLDER_CLASSIFIED_BOOKMARK"
    payload: ClassifiedBookmarkPayload


class RequestPendingBookmarksMessage(_Message):
    source: Literal["markhub-app"] = APP_SOURCE
    type: Literal["REQUEST_PENDING_BOOKMARKS_FROM_EXTENSION"] = "REQUEST_PENDING_BOOKMARKS_FROM_EXTENSION"


WindowMessage = Annotated[
    Union[
        ExtensionLoadedMessage,
        NewBookmarkMessage,
        NewBookmarkBatchMessage,
        FolderClassifiedBookmarkMessage,
        RequestPendingBookmarksMessage,
    ],
    Field(discriminator="type"),
]
window_message_adapter: TypeAdapter = TypeAdapter(WindowMessage)


# --- Расширение: фоновый процесс <-> content script ---

class SuggestionPayload(_Message):
    bookmark_id: str = Field(alias="bookmarkId")
    bookmark_title: str = Field(default="", alias="bookmarkTitle")
    suggested_folder: str = Field(alias="suggestedFolder")
    suggested_folder_id: Optional[str] = Field(default=None, alias="suggestedFolderId")
    confidence: Optional[float] = None
    reason: Optional[str] = None
    original_parent_id: Optional[str] = Field(default=None, alias="originalParentId")


class UserActionPayload(_Message):
    bookmark_id: str = Field(alias="bookmarkId")
    suggested_folder_id: Optional[str] = Field(default=None, alias="suggestedFolderId")


class ToastReadyMessage(_Message):
    type: Literal["TOAST_READY"] = "TOAST_READY"


class ToastShowLoadingMessage(_Message):
    type: Literal["TOAST_SHOW_LOADING"] = TOAST_SHOW_LOADING
    payload: Dict[str, Any] = Field(default_factory=dict)


class ToastShowSuggestionMessage(_Message):
    type: Literal["TOAST_SHOW_SUGGESTION"] = TOAST_SHOW_SUGGESTION
    payload: SuggestionPayload


class ToastShowErrorMessage(_Message):
    type: Literal["TOAST_SHOW_ERROR"] = TOAST_SHOW_ERROR
    payload: Dict[str, Any] = Field(default_factory=dict)


class ToastHideMessage(_Message):
    type: Literal["TOAST_HIDE"] = "TOAST_HIDE"


class UserActionConfirmMessage(_Message):
    type: Literal["USER_ACTION_CONFIRM"] = "USER_ACTION_CONFIRM"
    payload: UserActionPayload


class UserActionRejectMessage(_Message):
    type: Literal["USER_ACTION_REJECT"] = "USER_ACTION_REJECT"
    payload: UserActionPayload


class UserActionCancelMessage(_Message):
    type: Literal["USER_ACTION_CANCEL"] = "USER_ACTION_CANCEL"
    payload: Optional[Dict[str, Any]] = None


class GetPageContentMessage(_Message):
    type: Literal["GET_PAGE_CONTENT"] = "GET_PAGE_CONTENT"


class PingMessage(_Message):
    type: Literal["ping"] = "ping"
    timestamp: float
    source: str = "content-script"


class PongMessage(_Message):
    type: Literal["pong"] = "pong"
    timestamp: Optional[float] = None


RuntimeMessage = Annotated[
    Union[
        ToastReadyMessage,
        ToastShowLoadingMessage,
        ToastShowSuggestionMessage,
        ToastShowErrorMessage,
        ToastHideMessage,
        UserActionConfirmMessage,
        UserActionRejectMessage,
        UserActionCancelMessage,
        GetPageContentMessage,
        PingMessage,
        PongMessage,
    ],
    Field(discriminator="type"),
]
runtime_message_adapter: TypeAdapter = TypeAdapter(RuntimeMessage)


class PageContentResponse(_Message):
    """Ответ content script на GET_PAGE_CONTENT."""

    page_title: Optional[str] = Field(default=None, alias="pageTitle")
    meta_description: Optional[str] = Field(default=None, alias="metaDescription")
    h1: Optional[str] = None
    body_text: Optional[str] = Field(default=None, alias="bodyText")

    def as_prompt_context(self) -> str:
        parts = []
        if self.page_title:
            parts.append(f"Page title: {self.page_title}")
        if self.meta_description:
            parts.append(f"Meta description: {self.meta_description}")
        if self.h1:
            parts.append(f"H1: {self.h1}")
        if self.body_text:
            parts.append("")
            parts.append(self.body_text)
        return "\n".join(parts)


def parse_window_message(data: Any) -> WindowMessage:
    """Разбирает сообщение окна; pydantic.ValidationError для неизвестных и некорректных."""
    return window_message_adapter.validate_python(data)


def parse_runtime_message(data: Any) -> RuntimeMessage:
    """Разбирает сообщение расширения; pydantic.ValidationError для неизвестных и некорректных."""
    return runtime_message_adapter.validate_python(data)
