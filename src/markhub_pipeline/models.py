"""
Модуль models.py
Модели данных конвейера классификации закладок.
Используются dataclass для внутренних структур и Enum для состояний задач.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TagStatus(str, Enum):
    """Состояние подзадачи генерации тегов."""
    PENDING = "pending"
    GENERATING = "generating_tags"
    GENERATED = "tags_generated"
    FAILED = "tags_failed"


class FolderStatus(str, Enum):
    """Состояние подзадачи рекомендации папки."""
    PENDING = "pending"
    SUGGESTING = "suggesting_folder"
    SUGGESTED = "folder_suggested"
    FAILED = "folder_failed"


class OverallStatus(str, Enum):
    """Итоговое состояние задачи, вычисляемое из двух подсостояний."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class InvalidTransitionError(ValueError):
    """Недопустимый переход подсостояния задачи."""


def derive_overall_status(tag_status: TagStatus, folder_status: FolderStatus) -> OverallStatus:
    """
    Вычисляет итоговое состояние задачи по паре подсостояний.

    Аргументы:
        tag_status: Состояние генерации тегов
        folder_status: Состояние рекомендации папки

    Возвращает:
        OverallStatus: pending, если обе подзадачи ожидают; processing, пока
        хотя бы одна не завершена; completed, partially_failed или failed
        для завершенной пары
    """
    if tag_status == TagStatus.PENDING and folder_status == FolderStatus.PENDING:
        return OverallStatus.PENDING

    tag_done = tag_status in (TagStatus.GENERATED, TagStatus.FAILED)
    folder_done = folder_status in (FolderStatus.SUGGESTED, FolderStatus.FAILED)
    if not (tag_done and folder_done):
        return OverallStatus.PROCESSING

    tag_ok = tag_status == TagStatus.GENERATED
    folder_ok = folder_status == FolderStatus.SUGGESTED
    if tag_ok and folder_ok:
        return OverallStatus.COMPLETED
    if tag_ok or folder_ok:
        return OverallStatus.PARTIALLY_FAILED
    return OverallStatus.FAILED


@dataclass(frozen=True)
class BookmarkSnapshot:
    """
    Неизменяемый снимок закладки в момент захвата.

    Атрибуты:
        url: URL-адрес страницы
        title: Заголовок закладки
        added_at: Время добавления (как пришло от источника захвата)
        tags: Уже существующие теги (только контекст для модели)
        description: Описание закладки
    """
    url: str
    title: str
    added_at: Optional[str] = None
    tags: Tuple[str, ...] = ()
    description: Optional[str] = None

    @property
    def dedup_key(self) -> str:
        return f"{self.url}_{self.added_at}"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'BookmarkSnapshot':
        """Создает снимок из полезной нагрузки сообщения (camelCase-поля)."""
        added_at = payload.get("addedAt", payload.get("added_at"))
        return cls(
            url=payload["url"],
            title=payload.get("title") or payload["url"],
            added_at=str(added_at) if added_at is not None else None,
            tags=tuple(payload.get("tags") or ()),
            description=payload.get("description"),
        )


@dataclass
class ClassificationTask:
    """
    Задача классификации одной захваченной закладки.

    Подсостояния тегов и папки продвигаются независимо; итоговое состояние
    не хранится, а вычисляется свойством overall_status. Поля результата
    и ошибки записываются один раз при переходе в конечное состояние.
    """
    id: str
    bookmark: BookmarkSnapshot
    tag_status: TagStatus = TagStatus.PENDING
    folder_status: FolderStatus = FolderStatus.PENDING
    generated_tags: Optional[Tuple[str, ...]] = None
    suggested_folder: Optional[str] = None
    tag_error: Optional[str] = None
    folder_error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    # Результат передачи в хранилище закладок; не влияет на подсостояния
    persisted: bool = False
    persist_error: Optional[str] = None
    remote_bookmark_id: Optional[str] = None

    @property
    def overall_status(self) -> OverallStatus:
        return derive_overall_status(self.tag_status, self.folder_status)

    @property
    def is_terminal(self) -> bool:
        return self.overall_status in (
            OverallStatus.COMPLETED,
            OverallStatus.PARTIALLY_FAILED,
            OverallStatus.FAILED,
        )

    def start_tags(self) -> None:
        if self.tag_status != TagStatus.PENDING:
            raise InvalidTransitionError(f"Теги задачи {self.id}: {self.tag_status.value} -> generating_tags")
        self.tag_status = TagStatus.GENERATING

    def finish_tags(self, tags: List[str]) -> None:
        if self.tag_status != TagStatus.GENERATING:
            raise InvalidTransitionError(f"Теги задачи {self.id}: {self.tag_status.value} -> tags_generated")
        self.generated_tags = tuple(tags)
        self.tag_status = TagStatus.GENERATED

    def fail_tags(self, error: str) -> None:
        if self.tag_status not in (TagStatus.PENDING, TagStatus.GENERATING):
            raise InvalidTransitionError(f"Теги задачи {self.id}: {self.tag_status.value} -> tags_failed")
        self.tag_error = error
        self.tag_status = TagStatus.FAILED

    def start_folder(self) -> None:
        if self.folder_status != FolderStatus.PENDING:
            raise InvalidTransitionError(
                f"Папка задачи {self.id}: {self.folder_status.value} -> suggesting_folder"
            )
        self.folder_status = FolderStatus.SUGGESTING

    def finish_folder(self, folder_name: str) -> None:
        if self.folder_status != FolderStatus.SUGGESTING:
            raise InvalidTransitionError(
                f"Папка задачи {self.id}: {self.folder_status.value} -> folder_suggested"
            )
        self.suggested_folder = folder_name
        self.folder_status = FolderStatus.SUGGESTED

    def fail_folder(self, error: str) -> None:
        if self.folder_status not in (FolderStatus.PENDING, FolderStatus.SUGGESTING):
            raise InvalidTransitionError(
                f"Папка задачи {self.id}: {self.folder_status.value} -> folder_failed"
            )
        self.folder_error = error
        self.folder_status = FolderStatus.FAILED


@dataclass(frozen=True)
class CandidateFolder:
    """Папка-кандидат для рекомендации."""
    id: str
    name: str
    path: Optional[str] = None


@dataclass
class FolderRecommendation:
    """
    Рекомендация папки.

    Атрибуты:
        folder_id: Идентификатор папки из списка кандидатов
        folder_name: Название папки
        confidence: Уверенность в диапазоне [0, 1]
        reason: Краткое обоснование
        is_fallback: True, если рекомендация получена эвристикой, а не моделью
    """
    folder_id: str
    folder_name: str
    confidence: float
    reason: str = ""
    is_fallback: bool = False


@dataclass
class BrowserBookmarkNode:
    """
    Узел дерева закладок браузера (закладка или папка).

    Атрибуты:
        id: Идентификатор узла в браузере
        title: Заголовок
        url: URL (None для папок)
        parent_id: Идентификатор родительской папки
        date_added: Время добавления в миллисекундах Unix
        children: Дочерние узлы (для папок)
    """
    id: str
    title: str
    url: Optional[str] = None
    parent_id: Optional[str] = None
    date_added: Optional[int] = None
    children: List['BrowserBookmarkNode'] = field(default_factory=list)

    @property
    def is_folder(self) -> bool:
        return self.url is None


@dataclass
class PendingBookmarkRecord:
    """
    Закладка, ожидающая отправки в веб-приложение.
    Хранится в долговременном хранилище расширения в camelCase-формате.
    """
    url: str
    title: str
    created_at: str
    tags: Optional[List[str]] = None
    description: Optional[str] = None
    chrome_bookmark_id: Optional[str] = None
    chrome_parent_id: Optional[str] = None
    folder_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "url": self.url,
            "title": self.title,
            "createdAt": self.created_at,
        }
        optional = {
            "tags": self.tags,
            "description": self.description,
            "chromeBookmarkId": self.chrome_bookmark_id,
            "chromeParentId": self.chrome_parent_id,
            "folderName": self.folder_name,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingBookmarkRecord':
        return cls(
            url=data["url"],
            title=data.get("title") or data["url"],
            created_at=str(data.get("createdAt") or data.get("created_at") or data.get("timestamp") or ""),
            tags=data.get("tags"),
            description=data.get("description"),
            chrome_bookmark_id=data.get("chromeBookmarkId"),
            chrome_parent_id=data.get("chromeParentId"),
            folder_name=data.get("folderName"),
        )


@dataclass
class SyncResult:
    """Результат синхронизации одной закладки."""
    success: bool
    remote_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchSyncResult:
    """Сводка пакетной синхронизации: ошибки перечисляются по элементам."""
    successful: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class InitialSyncResult:
    """Результат начальной синхронизации дерева закладок."""
    success: bool
    folders_created: int = 0
    bookmarks_created: int = 0
    errors: List[str] = field(default_factory=list)
