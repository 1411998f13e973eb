"""
Модуль config.py
Конфигурация конвейера классификации.

Значения по умолчанию загружаются из .env-файла и переменных окружения.
Пользовательские настройки (ключ API, адреса, флаг синхронизации и т.д.)
хранятся в долговременном хранилище под ключом markhub_extension_config
и накладываются поверх значений по умолчанию при первом обращении.
"""
import asyncio
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

from .errors import ValidationError
from .logger import get_logger, log_error_with_context
from .storage import KeyValueStorage

logger = get_logger(__name__)

CONFIG_STORAGE_KEY = "markhub_extension_config"

DEFAULT_FALLBACK_FOLDER_NAMES = ['其他', '未分类', 'Other', 'Uncategorized', '书签栏']

ConfigListener = Callable[['Config'], None]


@dataclass
class Config:
    """
    Конфигурация приложения.
    Незаданные поля всегда принимают документированные значения по умолчанию.
    """

    # AI-сервис (OpenAI-совместимый)
    api_key: str = ""
    api_base_url: str = "https://api.openai.com/v1"
    model_name: str = "gpt-3.5-turbo"
    llm_temperature: float = 0.3
    llm_max_tokens: int = 500
    llm_tags_max_tokens: int = 200
    llm_timeout: Optional[float] = None
    folder_content_limit: int = 10000
    tags_content_limit: int = 15000

    # Резервная рекомендация папки
    fallback_folder_names: List[str] = field(
        default_factory=lambda: list(DEFAULT_FALLBACK_FOLDER_NAMES)
    )
    fallback_confidence_generic: float = 0.3
    fallback_confidence_default: float = 0.2

    # MarkHub
    markhub_api_url: str = "https://db.markhub.app"
    markhub_app_url: str = "https://markhub.app/"
    auth_token: str = ""
    markhub_api_timeout: float = 10.0
    sync_enabled: bool = False
    auto_move_to_recommended_folder: bool = True
    show_notifications: bool = True
    language: str = "auto"

    # Очередь классификации и синхронизация
    tag_concurrency_limit: int = 5
    sync_delay: float = 0.1
    folder_sync_delay: float = 0.05

    # Загрузка содержимого страниц
    fetch_timeout: float = 15.0
    fallback_fetch_timeout: float = 30.0
    fallback_extract_api_url: str = "https://api.pearktrue.cn/api/llmreader/"

    # Обмен сообщениями между контекстами
    keepalive_interval: float = 25.0
    reconnect_delay: float = 2.0
    content_request_timeout: float = 3.0
    content_retry_delay: float = 0.5
    app_message_timeout: float = 5.0
    pending_send_interval: float = 900.0
    app_tab_load_delay: float = 2.0

    # Прокси задач
    redis_url: Optional[str] = None
    task_ttl: int = 86400
    proxy_api_keys: List[str] = field(default_factory=list)
    server_host: str = "127.0.0.1"
    server_port: int = 8000

    # Локальное хранилище
    storage_file: str = "./markhub_storage.json"

    # Логирование
    log_level: str = "INFO"
    log_file: Optional[str] = "./markhub_pipeline.log"


CONFIG_FIELDS = frozenset(f.name for f in fields(Config))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value if value else None


def load_config_from_env() -> Config:
    """
    Собирает Config из переменных окружения.

    Возвращает:
        Config: Конфигурация со значениями по умолчанию для незаданных переменных

    Raises:
        ValueError: Если числовая переменная не преобразуется в число
    """
    defaults = Config()
    llm_timeout = _env_optional("LLM_TIMEOUT")

    return Config(
        api_key=os.getenv("LLM_API_KEY", defaults.api_key),
        api_base_url=os.getenv("LLM_BASE_URL", defaults.api_base_url),
        model_name=os.getenv("LLM_MODEL", defaults.model_name),
        llm_temperature=float(os.getenv("LLM_TEMPERATURE", str(defaults.llm_temperature))),
        llm_max_tokens=int(os.getenv("LLM_MAX_TOKENS", str(defaults.llm_max_tokens))),
        llm_tags_max_tokens=int(os.getenv("LLM_TAGS_MAX_TOKENS", str(defaults.llm_tags_max_tokens))),
        llm_timeout=float(llm_timeout) if llm_timeout else None,
        folder_content_limit=int(os.getenv("FOLDER_CONTENT_LIMIT", str(defaults.folder_content_limit))),
        tags_content_limit=int(os.getenv("TAGS_CONTENT_LIMIT", str(defaults.tags_content_limit))),
        fallback_folder_names=_env_list("FALLBACK_FOLDER_NAMES", DEFAULT_FALLBACK_FOLDER_NAMES),
        fallback_confidence_generic=float(
            os.getenv("FALLBACK_CONFIDENCE_GENERIC", str(defaults.fallback_confidence_generic))
        ),
        fallback_confidence_default=float(
            os.getenv("FALLBACK_CONFIDENCE_DEFAULT", str(defaults.fallback_confidence_default))
        ),
        markhub_api_url=os.getenv("MARKHUB_API_URL", defaults.markhub_api_url),
        markhub_app_url=os.getenv("MARKHUB_APP_URL", defaults.markhub_app_url),
        auth_token=os.getenv("MARKHUB_AUTH_TOKEN", defaults.auth_token),
        markhub_api_timeout=float(os.getenv("MARKHUB_API_TIMEOUT", str(defaults.markhub_api_timeout))),
        sync_enabled=_env_bool("SYNC_ENABLED", defaults.sync_enabled),
        auto_move_to_recommended_folder=_env_bool(
            "AUTO_MOVE_TO_RECOMMENDED_FOLDER", defaults.auto_move_to_recommended_folder
        ),
        show_notifications=_env_bool("SHOW_NOTIFICATIONS", defaults.show_notifications),
        language=os.getenv("LANGUAGE", defaults.language),
        tag_concurrency_limit=int(os.getenv("TAG_CONCURRENCY_LIMIT", str(defaults.tag_concurrency_limit))),
        sync_delay=float(os.getenv("SYNC_DELAY", str(defaults.sync_delay))),
        folder_sync_delay=float(os.getenv("FOLDER_SYNC_DELAY", str(defaults.folder_sync_delay))),
        fetch_timeout=float(os.getenv("FETCH_TIMEOUT", str(defaults.fetch_timeout))),
        fallback_fetch_timeout=float(os.getenv("FALLBACK_FETCH_TIMEOUT", str(defaults.fallback_fetch_timeout))),
        fallback_extract_api_url=os.getenv("FALLBACK_EXTRACT_API_URL", defaults.fallback_extract_api_url),
        keepalive_interval=float(os.getenv("KEEPALIVE_INTERVAL", str(defaults.keepalive_interval))),
        reconnect_delay=float(os.getenv("RECONNECT_DELAY", str(defaults.reconnect_delay))),
        content_request_timeout=float(
            os.getenv("CONTENT_REQUEST_TIMEOUT", str(defaults.content_request_timeout))
        ),
        content_retry_delay=float(os.getenv("CONTENT_RETRY_DELAY", str(defaults.content_retry_delay))),
        app_message_timeout=float(os.getenv("APP_MESSAGE_TIMEOUT", str(defaults.app_message_timeout))),
        pending_send_interval=float(os.getenv("PENDING_SEND_INTERVAL", str(defaults.pending_send_interval))),
        app_tab_load_delay=float(os.getenv("APP_TAB_LOAD_DELAY", str(defaults.app_tab_load_delay))),
        redis_url=_env_optional("REDIS_URL"),
        task_ttl=int(os.getenv("TASK_TTL", str(defaults.task_ttl))),
        proxy_api_keys=_env_list("PROXY_API_KEYS", []),
        server_host=os.getenv("SERVER_HOST", defaults.server_host),
        server_port=int(os.getenv("SERVER_PORT", str(defaults.server_port))),
        storage_file=os.getenv("STORAGE_FILE", defaults.storage_file),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        log_file=_env_optional("LOG_FILE") or defaults.log_file,
    )


def validate_config(config: Config) -> List[str]:
    """
    Проверяет числовые параметры конфигурации.

    Аргументы:
        config: Проверяемая конфигурация

    Возвращает:
        List[str]: Список ошибок (пустой, если конфигурация корректна)
    """
    validation_errors = []

    def check(condition: bool, message: str) -> None:
        if not condition:
            validation_errors.append(message)
            logger.error(message)

    check(config.llm_max_tokens > 0,
          f"LLM_MAX_TOKENS должен быть положительным числом: {config.llm_max_tokens}")
    check(config.llm_tags_max_tokens > 0,
          f"LLM_TAGS_MAX_TOKENS должен быть положительным числом: {config.llm_tags_max_tokens}")
    check(0 <= config.llm_temperature <= 2,
          f"LLM_TEMPERATURE должен быть в диапазоне [0, 2]: {config.llm_temperature}")
    check(config.tag_concurrency_limit > 0,
          f"TAG_CONCURRENCY_LIMIT должен быть положительным числом: {config.tag_concurrency_limit}")
    check(0 <= config.fallback_confidence_generic <= 1,
          f"FALLBACK_CONFIDENCE_GENERIC должен быть в диапазоне [0, 1]: {config.fallback_confidence_generic}")
    check(0 <= config.fallback_confidence_default <= 1,
          f"FALLBACK_CONFIDENCE_DEFAULT должен быть в диапазоне [0, 1]: {config.fallback_confidence_default}")
    check(config.fetch_timeout > 0,
          f"FETCH_TIMEOUT должен быть положительным числом: {config.fetch_timeout}")
    check(config.fallback_fetch_timeout > 0,
          f"FALLBACK_FETCH_TIMEOUT должен быть положительным числом: {config.fallback_fetch_timeout}")
    check(config.task_ttl > 0,
          f"TASK_TTL должен быть положительным числом: {config.task_ttl}")
    check(config.sync_delay >= 0 and config.folder_sync_delay >= 0,
          "SYNC_DELAY и FOLDER_SYNC_DELAY должны быть неотрицательными")
    check(config.keepalive_interval > 0,
          f"KEEPALIVE_INTERVAL должен быть положительным числом: {config.keepalive_interval}")
    check(config.reconnect_delay >= 0,
          f"RECONNECT_DELAY должен быть неотрицательным числом: {config.reconnect_delay}")

    return validation_errors


class ConfigManager:
    """
    Сервис конфигурации, создаваемый один раз при запуске и передаваемый
    всем компонентам.

    get_config() при первом вызове загружает пользовательские настройки из
    хранилища и кэширует результат. get_config_sync() никогда не ждет и
    возвращает последний загруженный снимок (до загрузки это значения по
    умолчанию). update_config() объединяет частичное обновление с текущими
    настройками, сохраняет и публикует результат одной критической секцией.

    Аргументы:
        env_path: Путь к .env-файлу (по умолчанию .env в текущем каталоге)
        storage: Долговременное хранилище пользовательских настроек
    """

    def __init__(self, env_path: Optional[str] = None, storage: Optional[KeyValueStorage] = None):
        logger.debug(f"Инициализация ConfigManager с env_path: {env_path}")

        load_dotenv(env_path or ".env", override=True)
        try:
            self.defaults = load_config_from_env()
        except ValueError as e:
            logger.error(f"Ошибка при загрузке конфигурации: {e}")
            raise

        validation_errors = validate_config(self.defaults)
        if validation_errors:
            logger.error(f"Валидация конфигурации не пройдена: {len(validation_errors)} ошибок")
            raise ValueError(f"Ошибки валидации конфигурации: {'; '.join(validation_errors)}")

        self.storage = storage
        self._config = self.defaults
        self._overrides: Dict[str, Any] = {}
        self._hydrated = False
        self._lock = asyncio.Lock()
        self._listeners: List[ConfigListener] = []

        logger.info("ConfigManager успешно инициализирован")

    @property
    def is_hydrated(self) -> bool:
        return self._hydrated

    async def _hydrate(self) -> None:
        if self.storage is None:
            self._hydrated = True
            return

        try:
            stored = await self.storage.get(CONFIG_STORAGE_KEY)
        except Exception as e:
            # Остаемся на значениях по умолчанию; следующий вызов повторит загрузку
            log_error_with_context(e, {"operation": "hydrate_config", "key": CONFIG_STORAGE_KEY})
            return

        overrides: Dict[str, Any] = {}
        if isinstance(stored, dict):
            for key, value in stored.items():
                if key in CONFIG_FIELDS:
                    overrides[key] = value
                else:
                    logger.warning(f"Неизвестный параметр в сохраненной конфигурации: {key}")
        elif stored is not None:
            logger.warning(f"Сохраненная конфигурация имеет неверный формат: {type(stored).__name__}")

        self._overrides = overrides
        self._config = replace(self.defaults, **overrides)
        self._hydrated = True
        logger.info(f"Пользовательская конфигурация загружена: {sorted(overrides)}")

    async def get_config(self) -> Config:
        """
        Возвращает конфигурацию, загружая пользовательские настройки при первом вызове.

        Возвращает:
            Config: Текущая конфигурация
        """
        if self._hydrated:
            return self._config

        async with self._lock:
            if not self._hydrated:
                await self._hydrate()
        return self._config

    def get_config_sync(self) -> Config:
        """Последний загруженный снимок конфигурации, без ожидания."""
        if not self._hydrated:
            logger.debug("get_config_sync вызван до загрузки, возвращаются значения по умолчанию")
        return self._config

    async def update_config(self, partial: Dict[str, Any]) -> Config:
        """
        Объединяет частичное обновление с текущей конфигурацией и сохраняет его.

        Аргументы:
            partial: Изменяемые поля Config

        Возвращает:
            Config: Новая конфигурация

        Raises:
            ValidationError: Неизвестные поля или недопустимые значения
        """
        unknown = sorted(set(partial) - CONFIG_FIELDS)
        if unknown:
            raise ValidationError(f"Неизвестные параметры конфигурации: {', '.join(unknown)}")

        async with self._lock:
            if not self._hydrated:
                await self._hydrate()

            candidate = replace(self._config, **partial)
            validation_errors = validate_config(candidate)
            if validation_errors:
                raise ValidationError(
                    f"Ошибки валидации конфигурации: {'; '.join(validation_errors)}"
                )

            overrides = {**self._overrides, **partial}
            if self.storage is not None:
                await self.storage.set(CONFIG_STORAGE_KEY, overrides)

            self._overrides = overrides
            self._config = candidate

        logger.info(f"Конфигурация обновлена: {sorted(partial)}")
        self._notify(candidate)
        return candidate

    async def reset_config(self) -> Config:
        """Сбрасывает пользовательские настройки к значениям по умолчанию."""
        async with self._lock:
            if self.storage is not None:
                await self.storage.remove(CONFIG_STORAGE_KEY)
            self._overrides = {}
            self._config = self.defaults
            self._hydrated = True

        logger.info("Конфигурация сброшена к значениям по умолчанию")
        self._notify(self.defaults)
        return self.defaults

    def add_listener(self, listener: ConfigListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConfigListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, config: Config) -> None:
        for listener in list(self._listeners):
            try:
                listener(config)
            except Exception as e:
                log_error_with_context(e, {"operation": "config_listener", "listener": repr(listener)})
