"""
Общие фикстуры для тестов.
Содержит временные каталоги, тестовую конфигурацию и данные закладок Chrome.
"""
import os
import shutil
import tempfile
from pathlib import Path

import pytest

from markhub_pipeline.config import ConfigManager
from markhub_pipeline.storage import MemoryStorage

CONFIG_ENV_VARS = [
    "APP_MESSAGE_TIMEOUT", "APP_TAB_LOAD_DELAY", "AUTO_MOVE_TO_RECOMMENDED_FOLDER",
    "CONTENT_REQUEST_TIMEOUT", "CONTENT_RETRY_DELAY", "FALLBACK_CONFIDENCE_DEFAULT",
    "FALLBACK_CONFIDENCE_GENERIC", "FALLBACK_EXTRACT_API_URL", "FALLBACK_FETCH_TIMEOUT",
    "FALLBACK_FOLDER_NAMES", "FETCH_TIMEOUT", "FOLDER_CONTENT_LIMIT", "FOLDER_SYNC_DELAY",
    "KEEPALIVE_INTERVAL", "LANGUAGE", "LLM_API_KEY", "LLM_BASE_URL", "LLM_MAX_TOKENS",
    "LLM_MODEL", "LLM_TAGS_MAX_TOKENS", "LLM_TEMPERATURE", "LLM_TIMEOUT", "LOG_FILE",
    "LOG_LEVEL", "MARKHUB_API_TIMEOUT", "MARKHUB_API_URL", "MARKHUB_APP_URL",
    "MARKHUB_AUTH_TOKEN", "PENDING_SEND_INTERVAL", "PROXY_API_KEYS", "RECONNECT_DELAY",
    "REDIS_URL", "SERVER_HOST", "SERVER_PORT", "SHOW_NOTIFICATIONS", "STORAGE_FILE",
    "SYNC_DELAY", "SYNC_ENABLED", "TAGS_CONTENT_LIMIT", "TAG_CONCURRENCY_LIMIT", "TASK_TTL",
]


@pytest.fixture(autouse=True)
def isolated_env():
    """Изолирует переменные окружения: load_dotenv записывает значения в os.environ."""
    saved = dict(os.environ)
    for name in CONFIG_ENV_VARS:
        os.environ.pop(name, None)
    yield
    os.environ.clear()
    os.environ.update(saved)


@pytest.fixture
def temp_dir():
    """Создает временную директорию для тестов."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


def write_env(temp_dir: Path, extra: str = "") -> str:
    """Записывает тестовый .env и возвращает путь к нему."""
    config_file = temp_dir / ".env"
    with open(config_file, 'w', encoding='utf-8') as f:
        f.write(f"""
LLM_API_KEY=test_key
LLM_BASE_URL=https://api.test.com/v1
LLM_MODEL=test-model
MARKHUB_API_URL=https://db.test.markhub.app
MARKHUB_APP_URL=https://app.test.markhub.app/
SYNC_DELAY=0
FOLDER_SYNC_DELAY=0
APP_TAB_LOAD_DELAY=0
CONTENT_RETRY_DELAY=0
STORAGE_FILE={temp_dir}/storage.json
LOG_LEVEL=INFO
LOG_FILE={temp_dir}/test.log
{extra}
""")
    return str(config_file)


@pytest.fixture
def sample_env(temp_dir):
    """Путь к тестовому .env."""
    return write_env(temp_dir)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def config_manager(sample_env, storage):
    """Сервис конфигурации с тестовыми параметрами и хранилищем в памяти."""
    return ConfigManager(sample_env, storage=storage)


@pytest.fixture
def sync_config_manager(temp_dir):
    """Сервис конфигурации с включенной синхронизацией и токеном MarkHub."""
    env_path = write_env(temp_dir, "SYNC_ENABLED=true\nMARKHUB_AUTH_TOKEN=test_token")
    return ConfigManager(env_path, storage=MemoryStorage())


@pytest.fixture
def chrome_bookmarks_data():
    """Файл закладок Chrome с вложенными папками."""
    return {
        "checksum": "test_checksum",
        "roots": {
            "bookmark_bar": {
                "id": "1",
                "name": "Bookmarks bar",
                "type": "folder",
                "date_added": "13267383115384687",
                "children": [
                    {
                        "id": "10",
                        "name": "Work",
                        "type": "folder",
                        "children": [
                            {
                                "id": "11",
                                "name": "Python Docs",
                                "type": "url",
                                "url": "https://docs.python.org/3/",
                                "date_added": "13267383115384687",
                            },
                            {
                                "id": "12",
                                "name": "Projects",
                                "type": "folder",
                                "children": [
                                    {
                                        "id": "13",
                                        "name": "Repo",
                                        "type": "url",
                                        "url": "https://github.com/example/repo",
                                    },
                                ],
                            },
                        ],
                    },
                    {
                        "id": "20",
                        "name": "News",
                        "type": "url",
                        "url": "https://news.example.com",
                    },
                ],
            },
            "other": {
                "id": "2",
                "name": "Other bookmarks",
                "type": "folder",
                "children": [
                    {
                        "id": "30",
                        "name": "Reading",
                        "type": "folder",
                        "children": [],
                    },
                ],
            },
            "synced": {
                "id": "3",
                "name": "Mobile bookmarks",
                "type": "folder",
                "children": [],
            },
        },
        "version": 1,
    }
