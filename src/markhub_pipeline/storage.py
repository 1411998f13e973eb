"""
Модуль storage.py
Долговременное хранилище ключ-значение (аналог chrome.storage.local).
Используется для пользовательских настроек и списка неотправленных закладок.
"""
import asyncio
import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import aiofiles

from .logger import get_logger, log_error_with_context

logger = get_logger(__name__)


class KeyValueStorage(Protocol):
    """Асинхронное хранилище JSON-совместимых значений по ключу."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


class MemoryStorage:
    """
    Хранилище в памяти процесса.
    Значения копируются при записи и чтении, чтобы вызывающий код
    не мог изменить сохраненное состояние по ссылке.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """
    Хранилище в JSON-файле.

    Весь файл читается и перезаписывается целиком; запись идет через
    временный файл и os.replace, поэтому частично записанное состояние
    на диске не появляется.

    Аргументы:
        file_path: Путь к JSON-файлу хранилища
    """

    def __init__(self, file_path: str):
        self.file_path = Path(file_path)
        self._lock = asyncio.Lock()
        logger.debug(f"JsonFileStorage инициализирован: {self.file_path}")

    async def _read_all(self) -> Dict[str, Any]:
        if not self.file_path.exists():
            return {}

        try:
            async with aiofiles.open(self.file_path, 'r', encoding='utf-8') as f:
                content = await f.read()
        except OSError as e:
            log_error_with_context(e, {"file_path": str(self.file_path), "operation": "_read_all"})
            raise

        if not content.strip():
            return {}

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            log_error_with_context(e, {"file_path": str(self.file_path), "operation": "json_parse"})
            raise

        if not isinstance(data, dict):
            raise ValueError(f"Файл хранилища должен содержать JSON-объект: {self.file_path}")
        return data

    async def _write_all(self, data: Dict[str, Any]) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + '.tmp')

        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, ensure_ascii=False, indent=2))

        os.replace(tmp_path, self.file_path)
        logger.debug(f"Хранилище сохранено: {self.file_path} ({len(data)} ключей)")

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            data = await self._read_all()
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await self._read_all()
            data[key] = value
            await self._write_all(data)

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = await self._read_all()
            if key in data:
                del data[key]
                await self._write_all(data)
