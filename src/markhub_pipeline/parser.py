"""
Модуль parser.py
Парсинг JSON-файла закладок браузера Chrome в дерево BrowserBookmarkNode
и дерево закладок на основе файла для начальной синхронизации из командной строки.
"""
import json
from typing import Any, Dict, Iterator, List, Optional, Protocol

from .logger import get_logger, log_error_with_context, log_function_call
from .models import BrowserBookmarkNode, CandidateFolder

logger = get_logger(__name__)

ROOT_ID = "0"
ROOT_SECTIONS = [
    ("bookmark_bar", "1", "Bookmarks bar"),
    ("other", "2", "Other bookmarks"),
    ("synced", "3", "Mobile bookmarks"),
]

# Разница между эпохами Windows (1601) и Unix (1970) в микросекундах
CHROME_EPOCH_OFFSET_US = 11644473600 * 1000000


def chrome_time_to_unix_ms(value: Any) -> Optional[int]:
    """Переводит время Chrome (микросекунды с 1601 года) в миллисекунды Unix."""
    if value in (None, ""):
        return None
    try:
        return (int(value) - CHROME_EPOCH_OFFSET_US) // 1000
    except (TypeError, ValueError):
        logger.warning(f"Невозможно преобразовать дату добавления закладки: {value}")
        return None


class BookmarkTree(Protocol):
    """Дерево закладок браузера."""

    async def get_tree(self) -> BrowserBookmarkNode:
        ...

    async def get(self, node_id: str) -> Optional[BrowserBookmarkNode]:
        ...

    async def move(self, node_id: str, parent_id: str) -> BrowserBookmarkNode:
        ...


def iter_nodes(node: BrowserBookmarkNode) -> Iterator[BrowserBookmarkNode]:
    """Обходит дерево в глубину, начиная с самого узла."""
    yield node
    for child in node.children:
        yield from iter_nodes(child)


def collect_candidate_folders(root: BrowserBookmarkNode) -> List[CandidateFolder]:
    """
    Собирает папки дерева как кандидатов для рекомендации.

    Аргументы:
        root: Корень дерева

    Возвращает:
        List[CandidateFolder]: Папки с путем от корня (корневой узел не включается)
    """
    folders: List[CandidateFolder] = []

    def walk(node: BrowserBookmarkNode, path: List[str]) -> None:
        for child in node.children:
            if not child.is_folder:
                continue
            child_path = path + [child.title]
            folders.append(CandidateFolder(id=child.id, name=child.title, path=" / ".join(child_path)))
            walk(child, child_path)

    walk(root, [])
    return folders


class BookmarkParser:
    """Парсер JSON-файла закладок Chrome."""

    def load_json(self, file_path: str) -> dict:
        """
        Загружает и валидирует JSON-файл закладок.

        Аргументы:
            file_path: Путь к JSON-файлу закладок

        Возвращает:
            dict: Словарь с данными закладок

        Raises:
            FileNotFoundError: Если файл не найден
            json.JSONDecodeError: Если файл содержит некорректный JSON
            ValueError: Если в файле нет раздела roots
        """
        log_function_call("load_json", (file_path,))
        try:
            with open(file_path, 'r', encoding='utf-8') as file:
                data = json.load(file)
        except FileNotFoundError as e:
            log_error_with_context(e, {"file_path": file_path, "operation": "load_json"})
            raise
        except json.JSONDecodeError as e:
            log_error_with_context(e, {"file_path": file_path, "operation": "json_parse", "error_line": e.lineno})
            raise

        if not isinstance(data, dict) or not isinstance(data.get("roots"), dict):
            error = ValueError(f"Некорректная структура файла закладок {file_path}: нет раздела 'roots'")
            log_error_with_context(error, {"file_path": file_path})
            raise error

        logger.info(f"Файл закладок загружен: {file_path}")
        return data

    def parse_bookmarks(self, data: dict) -> BrowserBookmarkNode:
        """
        Строит дерево закладок с корнем id "0".

        Аргументы:
            data: Результат load_json

        Возвращает:
            BrowserBookmarkNode: Корневой узел
        """
        roots = data.get("roots", {})
        root = BrowserBookmarkNode(id=ROOT_ID, title="")

        for key, default_id, default_title in ROOT_SECTIONS:
            section = roots.get(key)
            if not section:
                continue
            node = self._traverse_node(section, ROOT_ID, default_id, default_title)
            if node is not None:
                root.children.append(node)

        total = sum(1 for node in iter_nodes(root) if not node.is_folder)
        logger.info(f"Парсинг завершен: {len(root.children)} корневых разделов, {total} закладок")
        return root

    def _traverse_node(
        self,
        node: Dict[str, Any],
        parent_id: str,
        default_id: Optional[str] = None,
        default_title: str = "Untitled",
    ) -> Optional[BrowserBookmarkNode]:
        node_type = str(node.get("type", "")).lower()
        node_id = str(node.get("id") or default_id or "")
        title = node.get("name") or default_title

        if node_type == "folder":
            folder = BrowserBookmarkNode(
                id=node_id,
                title=title,
                parent_id=parent_id,
                date_added=chrome_time_to_unix_ms(node.get("date_added")),
            )
            for child in node.get("children", []):
                parsed = self._traverse_node(child, node_id)
                if parsed is not None:
                    folder.children.append(parsed)
            return folder

        if node_type == "url":
            url = node.get("url", "")
            if not url:
                logger.warning(f"Найдена закладка без URL: {title}")
                return None
            return BrowserBookmarkNode(
                id=node_id,
                title=title,
                url=url,
                parent_id=parent_id,
                date_added=chrome_time_to_unix_ms(node.get("date_added")),
            )

        logger.warning(f"Неизвестный тип узла закладки: {node_type}, заголовок: {title}")
        return None


class FileBookmarkTree:
    """
    Дерево закладок, загруженное из файла Chrome.
    Перемещения выполняются только в памяти.

    Аргументы:
        root: Корень дерева
    """

    def __init__(self, root: BrowserBookmarkNode):
        self.root = root
        self._index: Dict[str, BrowserBookmarkNode] = {node.id: node for node in iter_nodes(root)}

    @classmethod
    def from_file(cls, file_path: str) -> 'FileBookmarkTree':
        parser = BookmarkParser()
        return cls(parser.parse_bookmarks(parser.load_json(file_path)))

    async def get_tree(self) -> BrowserBookmarkNode:
        return self.root

    async def get(self, node_id: str) -> Optional[BrowserBookmarkNode]:
        return self._index.get(node_id)

    async def move(self, node_id: str, parent_id: str) -> BrowserBookmarkNode:
        node = self._index.get(node_id)
        new_parent = self._index.get(parent_id)
        if node is None or new_parent is None or not new_parent.is_folder:
            raise KeyError(f"Узел {node_id} или папка {parent_id} не найдены")

        old_parent = self._index.get(node.parent_id) if node.parent_id else None
        if old_parent is not None:
            old_parent.children = [child for child in old_parent.children if child.id != node_id]
        new_parent.children.append(node)
        node.parent_id = parent_id
        return node
