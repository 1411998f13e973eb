"""
Модуль logger.py
Централизованное логирование конвейера классификации.
Все модули получают логгер через get_logger(__name__), а точка входа
один раз вызывает setup_logging с уровнем и файлом из конфигурации.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


class LoggerManager:
    """
    Менеджер логирования (Singleton).

    Настраивает корневой логгер: вывод в консоль и, при наличии пути,
    в файл с ротацией по размеру.
    """

    _instance: Optional['LoggerManager'] = None
    _initialized: bool = False

    def __new__(cls) -> 'LoggerManager':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if not self._initialized:
            self._loggers: Dict[str, logging.Logger] = {}
            self._root_logger: Optional[logging.Logger] = None
            self.log_level: str = "INFO"
            self.log_file: Optional[str] = None
            LoggerManager._initialized = True

    def setup_logging(self, log_level: str = "INFO", log_file: Optional[str] = None) -> None:
        """
        Настраивает корневой логгер.

        Аргументы:
            log_level: Уровень логирования (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Путь к файлу лога; None отключает запись в файл
        """
        self.log_level = log_level
        self.log_file = log_file

        self._root_logger = logging.getLogger()
        self._root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        self._root_logger.handlers.clear()

        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        self._root_logger.addHandler(console_handler)

        if log_file:
            file_handler = self._create_file_handler(log_file)
            file_handler.setFormatter(formatter)
            self._root_logger.addHandler(file_handler)

        logger = self.get_logger(__name__)
        logger.info(f"Логирование настроено с уровнем: {log_level}")
        logger.debug(f"Файл лога: {log_file}")

    def _create_file_handler(self, log_file: str) -> logging.Handler:
        """
        Создает файловый обработчик с ротацией (10 МБ, 5 резервных копий).

        Аргументы:
            log_file: Путь к файлу лога

        Возвращает:
            logging.Handler: Файловый обработчик
        """
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        return logging.handlers.RotatingFileHandler(
            filename=log_path,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding='utf-8'
        )

    def get_logger(self, name: str) -> logging.Logger:
        if name not in self._loggers:
            self._loggers[name] = logging.getLogger(name)
        return self._loggers[name]

    def set_level(self, level: str) -> None:
        """
        Изменяет уровень логирования корневого логгера.

        Аргументы:
            level: Новый уровень логирования
        """
        if self._root_logger:
            self._root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
            self.log_level = level
            self.get_logger(__name__).info(f"Уровень логирования изменен на: {level}")


_logger_manager: Optional[LoggerManager] = None


def _manager() -> LoggerManager:
    global _logger_manager

    if _logger_manager is None:
        _logger_manager = LoggerManager()
    return _logger_manager


def get_logger(name: str) -> logging.Logger:
    """
    Получает логгер для указанного модуля.

    Аргументы:
        name: Имя модуля (обычно __name__)

    Возвращает:
        logging.Logger: Логгер модуля

    Пример:
        >>> from markhub_pipeline.logger import get_logger
        >>> logger = get_logger(__name__)
        >>> logger.info("Задача добавлена в очередь")
    """
    return _manager().get_logger(name)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Настраивает логирование приложения. Вызывается один раз при запуске.

    Аргументы:
        log_level: Уровень логирования
        log_file: Путь к файлу лога (необязательно)
    """
    _manager().setup_logging(log_level, log_file)


def set_log_level(level: str) -> None:
    """Изменяет уровень логирования для всего приложения."""
    if _logger_manager is not None:
        _logger_manager.set_level(level)


def log_function_call(func_name: str, args: tuple = (), kwargs: Optional[dict] = None) -> None:
    """
    Логирует вызов функции с аргументами на уровне DEBUG.

    Аргументы:
        func_name: Имя функции
        args: Позиционные аргументы
        kwargs: Именованные аргументы
    """
    logger = get_logger(__name__)

    if logger.isEnabledFor(logging.DEBUG):
        parts = [str(arg) for arg in args]
        parts.extend(f"{k}={v}" for k, v in (kwargs or {}).items())
        logger.debug(f"Вызов функции: {func_name}({', '.join(parts)})")


def log_performance(func_name: str, duration: float, details: str = "") -> None:
    """
    Логирует длительность операции.

    Аргументы:
        func_name: Имя операции
        duration: Длительность в секундах
        details: Дополнительные детали
    """
    details_str = f" ({details})" if details else ""
    get_logger(__name__).info(
        f"Производительность: {func_name} выполнена за {duration:.2f}с{details_str}"
    )


def log_error_with_context(error: Exception, context: Dict[str, Any]) -> None:
    """
    Логирует ошибку вместе с контекстом операции.

    Аргументы:
        error: Исключение
        context: Контекст (URL, id задачи, шаг и т.д.)
    """
    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    get_logger(__name__).error(
        f"Ошибка: {type(error).__name__}: {error} | Контекст: {context_str}"
    )
