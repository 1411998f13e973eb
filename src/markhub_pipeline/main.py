"""
Модуль main.py
Точка входа командной строки.

Подкоманды:
    serve     запуск HTTP-прокси задач AI (uvicorn)
    classify  классификация захваченных закладок из JSON-файла через очередь задач
    sync      начальная синхронизация файла закладок Chrome с MarkHub
"""
import argparse
import asyncio
import json
import sys
import time
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import uvicorn

from .api import create_app
from .config import ConfigManager
from .logger import get_logger, log_error_with_context, log_function_call, log_performance, setup_logging
from .markhub_api import MarkhubAPIClient
from .models import BookmarkSnapshot
from .parser import BookmarkParser, FileBookmarkTree, collect_candidate_folders, iter_nodes
from .storage import JsonFileStorage
from .sync_manager import SyncManager
from .task_store import ClassificationTaskStore

logger = get_logger(__name__)


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Парсит аргументы командной строки.

    Аргументы:
        argv: Аргументы (по умолчанию sys.argv[1:])

    Возвращает:
        argparse.Namespace: Разобранные аргументы
    """
    parser = argparse.ArgumentParser(
        description="Конвейер AI-классификации закладок MarkHub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Примеры использования:
  markhub_pipeline serve --port 8000
  markhub_pipeline classify captured.json --folders "Work,Reading,Other"
  markhub_pipeline sync ~/.config/google-chrome/Default/Bookmarks
        """,
    )
    parser.add_argument("--config", dest="config_path", help="Путь к .env файлу (по умолчанию: .env)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Подробное логирование (DEBUG уровень)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Запустить HTTP-прокси задач AI")
    serve.add_argument("--host", help="Адрес (переопределяет SERVER_HOST)")
    serve.add_argument("--port", type=int, help="Порт (переопределяет SERVER_PORT)")

    classify = subparsers.add_parser("classify", help="Классифицировать закладки из JSON-файла")
    classify.add_argument("bookmarks_file", help="Файл закладок Chrome или JSON-список {url, title, addedAt}")
    classify.add_argument("--folders", help="Папки-кандидаты через запятую (по умолчанию папки из файла)")
    classify.add_argument("--persist", action="store_true", help="Сохранить результаты в MarkHub")

    sync = subparsers.add_parser("sync", help="Начальная синхронизация файла закладок Chrome с MarkHub")
    sync.add_argument("bookmarks_file", help="Путь к JSON-файлу закладок Chrome")

    args = parser.parse_args(argv)
    logger.debug(f"Аргументы командной строки разобраны: {vars(args)}")
    return args


def build_config_manager(config_path: Optional[str]) -> ConfigManager:
    """Создает сервис конфигурации с хранилищем пользовательских настроек в файле."""
    manager = ConfigManager(config_path)
    manager.storage = JsonFileStorage(manager.defaults.storage_file)
    return manager


def load_captured_bookmarks(file_path: str) -> Dict[str, Any]:
    """
    Загружает закладки для классификации.

    Поддерживаются файл закладок Chrome (раздел roots) и JSON-список
    захваченных закладок (или объект с ключом bookmarks).

    Возвращает:
        Dict[str, Any]: {"bookmarks": List[BookmarkSnapshot], "folders": List[str]}
    """
    with open(file_path, 'r', encoding='utf-8') as file:
        data = json.load(file)

    if isinstance(data, dict) and "roots" in data:
        root = BookmarkParser().parse_bookmarks(data)
        bookmarks = [
            BookmarkSnapshot(url=node.url, title=node.title or node.url,
                             added_at=str(node.date_added) if node.date_added is not None else None)
            for node in iter_nodes(root) if not node.is_folder
        ]
        folders = [folder.name for folder in collect_candidate_folders(root)]
        return {"bookmarks": bookmarks, "folders": folders}

    items = data.get("bookmarks", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError(f"Файл {file_path} должен содержать список закладок")
    return {"bookmarks": [BookmarkSnapshot.from_payload(item) for item in items], "folders": []}


def _task_summary(task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "url": task.bookmark.url,
        "status": task.overall_status.value,
        "tags": list(task.generated_tags or []),
        "folder": task.suggested_folder,
        "tag_error": task.tag_error,
        "folder_error": task.folder_error,
        "persisted": task.persisted,
        "persist_error": task.persist_error,
    }


async def run_classify(config_manager: ConfigManager, args: argparse.Namespace) -> List[Dict[str, Any]]:
    """Классифицирует закладки из файла и возвращает сводку по задачам."""
    config = await config_manager.get_config()
    loaded = load_captured_bookmarks(args.bookmarks_file)
    folders = [name.strip() for name in args.folders.split(",") if name.strip()] if args.folders else loaded["folders"]

    async with AsyncExitStack() as stack:
        repository = None
        if args.persist:
            if not config.auth_token:
                raise ValueError("Для --persist требуется MARKHUB_AUTH_TOKEN")
            repository = await stack.enter_async_context(MarkhubAPIClient(config_manager))
            if not folders:
                folders = [folder["name"] for folder in await repository.get_folders()]

        if not folders:
            raise ValueError("Нет папок-кандидатов: укажите --folders или используйте файл закладок Chrome")

        async def folder_provider() -> List[str]:
            return folders

        store = ClassificationTaskStore(config_manager, folder_provider, repository=repository)
        tasks = store.add_tasks(loaded["bookmarks"])
        logger.info(f"Поставлено в очередь {len(tasks)} задач, папок-кандидатов: {len(folders)}")
        await store.wait_until_idle()

        logger.info(
            f"Классификация завершена: успешно {store.completed_count}, с ошибками {store.failed_count}"
        )
        return [_task_summary(task) for task in store.tasks]


async def run_sync(config_manager: ConfigManager, bookmarks_file: str) -> Dict[str, Any]:
    tree = FileBookmarkTree.from_file(bookmarks_file)
    async with MarkhubAPIClient(config_manager) as api_client:
        result = await SyncManager(config_manager, api_client, tree).perform_initial_sync()
    return {
        "success": result.success,
        "folders_created": result.folders_created,
        "bookmarks_created": result.bookmarks_created,
        "errors": result.errors,
    }


def run_serve(config_manager: ConfigManager, args: argparse.Namespace) -> None:
    config = config_manager.get_config_sync()
    host = args.host or config.server_host
    port = args.port or config.server_port
    logger.info(f"Запуск прокси задач AI на {host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_level=config.log_level.lower())


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Главная функция приложения."""
    start_time = time.time()
    log_function_call("main", (), {"argv": list(argv) if argv is not None else sys.argv[1:]})

    try:
        args = parse_arguments(argv)
        config_manager = build_config_manager(args.config_path)
        config = config_manager.get_config_sync()
        setup_logging("DEBUG" if args.verbose else config.log_level, config.log_file)

        if args.command == "serve":
            run_serve(config_manager, args)
            return

        if not Path(args.bookmarks_file).exists():
            log_error_with_context(
                FileNotFoundError(f"Файл закладок не найден: {args.bookmarks_file}"),
                {"bookmarks_file": args.bookmarks_file},
            )
            sys.exit(1)

        if args.command == "classify":
            output: Any = asyncio.run(run_classify(config_manager, args))
        else:
            output = asyncio.run(run_sync(config_manager, args.bookmarks_file))

        print(json.dumps(output, ensure_ascii=False, indent=2))
        log_performance("main", time.time() - start_time, f"command={args.command}")

    except KeyboardInterrupt:
        logger.info("Программа прервана пользователем")
        sys.exit(1)
    except Exception as e:
        log_error_with_context(e, {"operation": "main"})
        logger.error(f"Критическая ошибка: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
