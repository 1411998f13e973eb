"""
Модуль errors.py
Иерархия исключений конвейера классификации закладок.
"""
from typing import Any, Optional


class MarkhubError(Exception):
    """Базовое исключение конвейера."""


class ConfigurationError(MarkhubError):
    """
    Отсутствуют или некорректны учетные данные либо адреса сервисов.
    Возбуждается до любого сетевого запроса, сообщение показывается пользователю как есть.
    """


class TransportError(MarkhubError):
    """
    Сетевая ошибка, таймаут или ответ с кодом вне диапазона 2xx.

    Атрибуты:
        status_code: HTTP-код ответа (None для сетевых ошибок и таймаутов)
        body: Тело ответа с ошибкой (JSON, если удалось разобрать, иначе текст)
        timeout: True, если запрос прерван по таймауту (пользователь может повторить)
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        timeout: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.timeout = timeout

    @property
    def retryable(self) -> bool:
        return self.timeout or self.status_code is None or self.status_code >= 500


class NoReceiverError(TransportError):
    """Получатель сообщения еще не подключен (content script не загружен)."""


class ContentExtractionError(TransportError):
    """Не удалось получить содержимое страницы ни основным, ни резервным способом."""


class ParseError(MarkhubError):
    """
    Ответ модели не является корректным JSON или не содержит обязательных полей.

    Атрибуты:
        raw_content: Исходный текст ответа модели для диагностики
    """

    def __init__(self, message: str, raw_content: Optional[str] = None):
        super().__init__(message)
        self.raw_content = raw_content


class ValidationError(MarkhubError):
    """Некорректные входные данные вызывающей стороны."""


class ReconciliationError(MarkhubError):
    """
    Закладка сохранена, но последующее обогащение (AI-теги) или
    синхронизация результата не удались.

    Атрибуты:
        category: not_found | auth | server_error | other
    """

    def __init__(self, message: str, category: str = "other"):
        super().__init__(message)
        self.category = category


def categorize_status(status_code: Optional[int]) -> str:
    """
    Сопоставляет HTTP-код категории ошибки обогащения.

    Аргументы:
        status_code: HTTP-код ответа или None

    Возвращает:
        str: not_found, auth, server_error или other
    """
    if status_code == 404:
        return "not_found"
    if status_code in (401, 403):
        return "auth"
    if status_code is not None and status_code >= 500:
        return "server_error"
    return "other"
