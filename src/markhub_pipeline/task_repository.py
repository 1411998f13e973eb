"""
Модуль task_repository.py
Временное хранилище задач прокси (отправка + опрос).

Запись задачи живет 24 часа. Состояние меняется только вперед:
pending -> processing -> completed | failed; завершенная запись больше
не перезаписывается.
"""
import time
from typing import Callable, Dict, List, Literal, Optional, Tuple

import redis.asyncio as redis
from pydantic import BaseModel, Field

from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_TASK_TTL = 86400
KEY_PREFIX = "markhub:task:"

TaskState = Literal["pending", "processing", "completed", "failed"]
TERMINAL_STATES = frozenset({"completed", "failed"})

ALLOWED_TRANSITIONS = {
    "pending": {"processing", "failed"},
    "processing": {"completed", "failed"},
}


class RemoteTask(BaseModel):
    """Запись задачи прокси."""

    task_id: str
    kind: Literal["tags", "folder"]
    status: TaskState = "pending"
    url: str
    owner: str
    tags: Optional[List[str]] = None
    suggested_folder: Optional[str] = None
    error: Optional[str] = None
    raw_ai_content: Optional[str] = None
    create_time: float = Field(default_factory=time.time)
    update_time: float = Field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    def public_view(self) -> Dict[str, object]:
        """Ответ на опрос: результат только для completed, ошибка и ответ модели только для failed."""
        view: Dict[str, object] = {"task_id": self.task_id, "status": self.status}
        if self.status == "completed":
            if self.tags is not None:
                view["tags"] = self.tags
            if self.suggested_folder is not None:
                view["suggested_folder"] = self.suggested_folder
        elif self.status == "failed":
            view["error"] = self.error
            if self.raw_ai_content:
                view["raw_ai_content"] = self.raw_ai_content
        return view


class TaskRepository:
    """
    Базовое хранилище задач: проверка переходов поверх чтения и записи JSON.

    Аргументы:
        ttl: Время жизни записи в секундах
    """

    def __init__(self, ttl: int = DEFAULT_TASK_TTL):
        self.ttl = ttl

    async def _load(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def _store(self, key: str, data: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def create(self, task: RemoteTask) -> RemoteTask:
        await self._store(KEY_PREFIX + task.task_id, task.model_dump_json())
        logger.info(f"Задача прокси создана: {task.task_id} ({task.kind}) {task.url}")
        return task

    async def get(self, task_id: str) -> Optional[RemoteTask]:
        data = await self._load(KEY_PREFIX + task_id)
        if data is None:
            return None
        return RemoteTask.model_validate_json(data)

    async def transition(self, task_id: str, status: TaskState, **fields) -> Optional[RemoteTask]:
        """
        Переводит задачу в новое состояние и записывает поля результата.

        Аргументы:
            task_id: Идентификатор задачи
            status: Новое состояние
            **fields: Поля результата (tags, suggested_folder, error, raw_ai_content)

        Возвращает:
            RemoteTask: Запись после изменения; текущая запись, если переход
            недопустим; None, если задача не найдена или истекла
        """
        task = await self.get(task_id)
        if task is None:
            logger.warning(f"Задача прокси {task_id} не найдена или истекла")
            return None

        if status not in ALLOWED_TRANSITIONS.get(task.status, set()):
            logger.warning(f"Переход задачи {task_id} отклонен: {task.status} -> {status}")
            return task

        updated = task.model_copy(update={**fields, "status": status, "update_time": time.time()})
        await self._store(KEY_PREFIX + task_id, updated.model_dump_json())
        logger.info(f"Задача прокси {task_id}: {task.status} -> {status}")
        return updated


class InMemoryTaskRepository(TaskRepository):
    """Хранилище задач в памяти процесса с тем же сроком жизни записей."""

    def __init__(self, ttl: int = DEFAULT_TASK_TTL, clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl)
        self._clock = clock
        self._records: Dict[str, Tuple[str, float]] = {}

    async def _load(self, key: str) -> Optional[str]:
        record = self._records.get(key)
        if record is None:
            return None
        data, expires_at = record
        if self._clock() >= expires_at:
            del self._records[key]
            return None
        return data

    async def _store(self, key: str, data: str) -> None:
        self._records[key] = (data, self._clock() + self.ttl)


class RedisTaskRepository(TaskRepository):
    """
    Хранилище задач в Redis (SET ... EX ttl).

    Аргументы:
        client: Клиент redis.asyncio
        ttl: Время жизни записи в секундах
    """

    def __init__(self, client: redis.Redis, ttl: int = DEFAULT_TASK_TTL):
        super().__init__(ttl)
        self.client = client

    @classmethod
    def from_url(cls, url: str, ttl: int = DEFAULT_TASK_TTL) -> 'RedisTaskRepository':
        logger.info(f"Подключение к Redis для хранения задач: {url}")
        return cls(redis.from_url(url, decode_responses=True), ttl)

    async def _load(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def _store(self, key: str, data: str) -> None:
        await self.client.set(key, data, ex=self.ttl)

    async def close(self) -> None:
        await self.client.aclose()


def build_task_repository(redis_url: Optional[str], ttl: int = DEFAULT_TASK_TTL) -> TaskRepository:
    """Redis, если задан адрес, иначе хранилище в памяти."""
    if redis_url:
        return RedisTaskRepository.from_url(redis_url, ttl)
    logger.info("REDIS_URL не задан, задачи прокси хранятся в памяти процесса")
    return InMemoryTaskRepository(ttl)
