"""
Модуль pending_store.py
Долговременный список закладок, ожидающих отправки в веб-приложение.

Добавление и выгрузка выполняют чтение-изменение-запись одного ключа
хранилища под общей блокировкой. Выгрузка отправляет записи вне
блокировки и удаляет только подтвержденные, поэтому закладки, добавленные
во время отправки, не теряются.
"""
import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List

from .logger import get_logger, log_error_with_context
from .models import PendingBookmarkRecord
from .storage import KeyValueStorage

logger = get_logger(__name__)

PENDING_STORAGE_KEY = "markhub_pending_ai_bookmarks"
LEGACY_PENDING_STORAGE_KEYS = ("pendingBookmarks", "pendingMarkHubBookmarks")

PENDING_ID_FIELD = "_pendingId"
ADDED_AT_FIELD = "_addedToPendingAt"

Deliver = Callable[[PendingBookmarkRecord], Awaitable[bool]]


def _stamp(entry: Dict[str, Any]) -> Dict[str, Any]:
    stamped = dict(entry)
    stamped.setdefault(PENDING_ID_FIELD, uuid.uuid4().hex)
    stamped.setdefault(ADDED_AT_FIELD, int(time.time() * 1000))
    return stamped


class PendingBookmarkStore:
    """
    Очередь неотправленных закладок в долговременном хранилище.

    Аргументы:
        storage: Хранилище ключ-значение
    """

    def __init__(self, storage: KeyValueStorage):
        self.storage = storage
        self._lock = asyncio.Lock()
        self._drain_lock = asyncio.Lock()

    async def _read(self, key: str) -> List[Dict[str, Any]]:
        value = await self.storage.get(key)
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, dict) and entry.get("url")]

    async def append(self, record: PendingBookmarkRecord) -> int:
        """
        Добавляет закладку в очередь.

        Возвращает:
            int: Размер очереди после добавления
        """
        async with self._lock:
            entries = await self._read(PENDING_STORAGE_KEY)
            entries.append(_stamp(record.to_dict()))
            await self.storage.set(PENDING_STORAGE_KEY, entries)
        logger.info(f"Закладка добавлена в очередь отправки: {record.url} (всего {len(entries)})")
        return len(entries)

    async def list_pending(self) -> List[PendingBookmarkRecord]:
        async with self._lock:
            entries = await self._read(PENDING_STORAGE_KEY)
        return [PendingBookmarkRecord.from_dict(entry) for entry in entries]

    async def count(self) -> int:
        async with self._lock:
            return len(await self._read(PENDING_STORAGE_KEY))

    async def _snapshot(self) -> List[Dict[str, Any]]:
        """Читает очередь, переносит записи из устаревших ключей."""
        async with self._lock:
            stored = await self._read(PENDING_STORAGE_KEY)
            legacy: List[Dict[str, Any]] = []
            migrated_keys = []
            for key in LEGACY_PENDING_STORAGE_KEYS:
                items = await self._read(key)
                if items:
                    legacy.extend(items)
                    migrated_keys.append(key)

            entries = [_stamp(entry) for entry in stored + legacy]
            unstamped = any(PENDING_ID_FIELD not in entry for entry in stored)
            if legacy or unstamped:
                await self.storage.set(PENDING_STORAGE_KEY, entries)
            for key in migrated_keys:
                logger.info(f"Закладки перенесены из устаревшего ключа {key}")
                await self.storage.remove(key)
            return list(entries)

    async def drain(self, deliver: Deliver) -> Dict[str, int]:
        """
        Отправляет накопленные закладки.

        Аргументы:
            deliver: Отправляет одну закладку; True, если получение подтверждено

        Возвращает:
            Dict[str, int]: {"sent": число подтвержденных, "remaining": размер очереди}
        """
        async with self._drain_lock:
            snapshot = await self._snapshot()
            if not snapshot:
                logger.debug("Очередь отправки пуста")
                return {"sent": 0, "remaining": 0}

            logger.info(f"Отправка {len(snapshot)} отложенных закладок")
            acknowledged = set()
            for entry in snapshot:
                record = PendingBookmarkRecord.from_dict(entry)
                try:
                    delivered = await deliver(record)
                except Exception as e:
                    log_error_with_context(e, {"url": record.url, "operation": "drain_pending"})
                    delivered = False
                if delivered:
                    acknowledged.add(entry[PENDING_ID_FIELD])

            async with self._lock:
                entries = await self._read(PENDING_STORAGE_KEY)
                remaining = [entry for entry in entries if entry.get(PENDING_ID_FIELD) not in acknowledged]
                if len(remaining) != len(entries):
                    await self.storage.set(PENDING_STORAGE_KEY, remaining)

        logger.info(f"Отложенные закладки: отправлено {len(acknowledged)}, осталось {len(remaining)}")
        return {"sent": len(acknowledged), "remaining": len(remaining)}
