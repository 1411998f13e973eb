"""
Тесты для точки входа командной строки.
"""
import argparse
import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from markhub_pipeline.main import build_config_manager, load_captured_bookmarks, main, parse_arguments, run_classify
from markhub_pipeline.storage import JsonFileStorage
from conftest import write_env


def make_ai_client():
    ai_client = MagicMock()
    ai_client.generate_tags = AsyncMock(return_value=["python", "docs"])
    ai_client.suggest_folder_name = AsyncMock(return_value=("Work", '{"suggested_folder": "Work"}'))
    return ai_client


@pytest.fixture
def captured_file(temp_dir):
    path = os.path.join(temp_dir, "captured.json")
    with open(path, "w", encoding="utf-8") as file:
        json.dump([
            {"url": "https://docs.python.org/3/", "title": "Python Docs", "addedAt": 1700000000000},
            {"url": "https://news.example.com", "title": "News", "addedAt": 1700000000001},
        ], file)
    return path


@pytest.fixture
def chrome_file(temp_dir, chrome_bookmarks_data):
    path = os.path.join(temp_dir, "Bookmarks")
    with open(path, "w", encoding="utf-8") as file:
        json.dump(chrome_bookmarks_data, file)
    return path


class TestParseArguments:
    """Тесты разбора аргументов."""

    def test_classify(self):
        args = parse_arguments(["--config", "custom.env", "-v", "classify", "captured.json",
                                "--folders", "Work,Reading", "--persist"])

        assert args.command == "classify"
        assert args.config_path == "custom.env"
        assert args.verbose
        assert args.bookmarks_file == "captured.json"
        assert args.folders == "Work,Reading"
        assert args.persist

    def test_serve_defaults(self):
        args = parse_arguments(["serve", "--port", "9000"])

        assert args.port == 9000
        assert args.host is None
        assert not args.verbose

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_arguments([])


class TestLoadCapturedBookmarks:
    """Тесты загрузки закладок для классификации."""

    def test_captured_list(self, captured_file):
        loaded = load_captured_bookmarks(captured_file)

        assert [bookmark.url for bookmark in loaded["bookmarks"]] == [
            "https://docs.python.org/3/", "https://news.example.com",
        ]
        assert loaded["bookmarks"][0].added_at == "1700000000000"
        assert loaded["folders"] == []

    def test_wrapped_list(self, temp_dir):
        path = os.path.join(temp_dir, "wrapped.json")
        with open(path, "w", encoding="utf-8") as file:
            json.dump({"bookmarks": [{"url": "https://a.com"}]}, file)

        loaded = load_captured_bookmarks(path)

        assert loaded["bookmarks"][0].title == "https://a.com"

    def test_chrome_file(self, chrome_file):
        loaded = load_captured_bookmarks(chrome_file)

        urls = {bookmark.url for bookmark in loaded["bookmarks"]}
        assert {"https://docs.python.org/3/", "https://github.com/example/repo", "https://news.example.com"} <= urls
        assert {"Work", "Projects", "Reading"} <= set(loaded["folders"])

    def test_invalid_content(self, temp_dir):
        path = os.path.join(temp_dir, "invalid.json")
        with open(path, "w", encoding="utf-8") as file:
            json.dump({"bookmarks": "nope"}, file)

        with pytest.raises(ValueError):
            load_captured_bookmarks(path)


class TestRunClassify:
    """Тесты подкоманды classify."""

    @pytest.mark.asyncio
    @patch('markhub_pipeline.task_store.AIServiceClient')
    async def test_classify_with_folders(self, mock_ai_class, config_manager, captured_file):
        ai_client = make_ai_client()
        mock_ai_class.return_value = ai_client
        args = argparse.Namespace(bookmarks_file=captured_file, folders="Work, Reading,", persist=False)

        summary = await run_classify(config_manager, args)

        assert [item["url"] for item in summary] == ["https://docs.python.org/3/", "https://news.example.com"]
        assert all(item["status"] == "completed" for item in summary)
        assert summary[0]["tags"] == ["python", "docs"]
        assert summary[0]["folder"] == "Work"
        assert not summary[0]["persisted"]
        assert ai_client.suggest_folder_name.call_args.args[2] == ["Work", "Reading"]

    @pytest.mark.asyncio
    async def test_classify_without_folders(self, config_manager, captured_file):
        args = argparse.Namespace(bookmarks_file=captured_file, folders=None, persist=False)

        with pytest.raises(ValueError, match="Нет папок-кандидатов"):
            await run_classify(config_manager, args)

    @pytest.mark.asyncio
    async def test_persist_requires_token(self, config_manager, captured_file):
        args = argparse.Namespace(bookmarks_file=captured_file, folders="Work", persist=True)

        with pytest.raises(ValueError, match="MARKHUB_AUTH_TOKEN"):
            await run_classify(config_manager, args)


class TestMain:
    """Тесты главной функции."""

    def test_build_config_manager(self, temp_dir):
        env_file = write_env(temp_dir)

        manager = build_config_manager(env_file)

        assert isinstance(manager.storage, JsonFileStorage)
        assert manager.get_config_sync().api_key == "test_key"

    @patch('markhub_pipeline.main.setup_logging')
    def test_missing_bookmarks_file(self, mock_setup_logging, temp_dir):
        env_file = write_env(temp_dir)

        with pytest.raises(SystemExit) as exc_info:
            main(["--config", env_file, "classify", os.path.join(temp_dir, "missing.json")])

        assert exc_info.value.code == 1
        mock_setup_logging.assert_called_once()

    @patch('markhub_pipeline.main.setup_logging')
    @patch('markhub_pipeline.task_store.AIServiceClient')
    def test_classify_prints_json(self, mock_ai_class, mock_setup_logging, temp_dir, captured_file, capsys):
        mock_ai_class.return_value = make_ai_client()
        env_file = write_env(temp_dir)

        main(["--config", env_file, "classify", captured_file, "--folders", "Work"])

        output = json.loads(capsys.readouterr().out)
        assert len(output) == 2
        assert output[1]["folder"] == "Work"

    @patch('markhub_pipeline.main.setup_logging')
    def test_error_exits(self, mock_setup_logging, temp_dir, captured_file):
        env_file = write_env(temp_dir)

        with pytest.raises(SystemExit) as exc_info:
            main(["--config", env_file, "classify", captured_file])

        assert exc_info.value.code == 1

    @patch('markhub_pipeline.main.setup_logging')
    @patch('markhub_pipeline.main.uvicorn.run')
    def test_serve(self, mock_run, mock_setup_logging, temp_dir):
        env_file = write_env(temp_dir)

        main(["--config", env_file, "serve", "--host", "127.0.0.1", "--port", "9000"])

        app = mock_run.call_args.args[0]
        assert app.title == "MarkHub AI Task Proxy"
        assert mock_run.call_args.kwargs == {"host": "127.0.0.1", "port": 9000, "log_level": "info"}
