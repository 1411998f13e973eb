"""
Модуль markhub_api.py
HTTP-клиент REST API MarkHub (PocketBase): закладки, папки, обеспечение
пути папок и запуск AI-рекомендации тегов на стороне сервера.
"""
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from .config import ConfigManager
from .errors import TransportError
from .logger import get_logger, log_error_with_context, log_function_call, log_performance

logger = get_logger(__name__)

BOOKMARKS_ENDPOINT = "/api/collections/bookmarks/records"
FOLDERS_ENDPOINT = "/api/collections/folders/records"
ENSURE_FOLDER_PATH_ENDPOINT = "/api/custom/ensure-folder-path"
AI_TAGS_ENDPOINT = "/api/custom/bookmarks/{bookmark_id}/ai-suggest-and-set-tags"
AUTH_ENDPOINT = "/api/collections/users/auth-with-password"

PAGE_SIZE = 500


class BookmarkRepository(Protocol):
    """Хранилище закладок, в которое попадают результаты классификации."""

    async def find_bookmark_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        ...

    async def create_bookmark(self, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update_bookmark(self, bookmark_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def find_folder_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        ...


def _filter_literal(value: str) -> str:
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


class MarkhubAPIClient:
    """
    Клиент REST API MarkHub.

    Адрес API и токен берутся из ConfigManager при каждом запросе, поэтому
    изменения настроек применяются без пересоздания клиента. Ответ 401/403
    сбрасывает сохраненный токен.

    Аргументы:
        config_manager: Сервис конфигурации
        transport: Транспорт httpx (для тестов)
    """

    def __init__(self, config_manager: ConfigManager, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config_manager = config_manager
        self._transport = transport
        self.session: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> 'MarkhubAPIClient':
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _ensure_session(self) -> httpx.AsyncClient:
        if self.session is None:
            timeout = self.config_manager.get_config_sync().markhub_api_timeout
            self.session = httpx.AsyncClient(timeout=timeout, transport=self._transport)
            logger.debug("HTTP сессия создана для MarkhubAPIClient")
        return self.session

    async def aclose(self) -> None:
        if self.session is not None:
            await self.session.aclose()
            self.session = None
            logger.debug("HTTP сессия закрыта для MarkhubAPIClient")

    async def _request(
        self,
        method: str,
        endpoint: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        use_auth: bool = True,
    ) -> Any:
        """
        Выполняет запрос к API MarkHub.

        Raises:
            TransportError: Сетевая ошибка, таймаут или ответ вне 2xx
        """
        config = await self.config_manager.get_config()
        url = f"{config.markhub_api_url.rstrip('/')}{endpoint}"
        headers = {"Content-Type": "application/json"}
        if use_auth and config.auth_token:
            headers["Authorization"] = f"Bearer {config.auth_token}"

        session = self._ensure_session()
        try:
            response = await session.request(method, url, json=json, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"Таймаут запроса {method} {endpoint}", timeout=True) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Сетевая ошибка {method} {endpoint}: {e}") from e

        if response.status_code >= 400:
            try:
                body = response.json()
                message = body.get("message") if isinstance(body, dict) else None
            except ValueError:
                body = response.text
                message = None

            if response.status_code in (401, 403) and use_auth and config.auth_token:
                logger.warning("Токен MarkHub отклонен сервером, токен сброшен")
                await self.config_manager.update_config({"auth_token": ""})

            raise TransportError(
                message or f"Запрос к API завершился со статусом {response.status_code}",
                status_code=response.status_code,
                body=body,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def login(self, identity: str, password: str) -> Dict[str, Any]:
        """Авторизуется по логину и паролю и сохраняет токен в конфигурации."""
        log_function_call("login", (identity,))
        result = await self._request(
            "POST", AUTH_ENDPOINT, json={"identity": identity, "password": password}, use_auth=False
        )
        await self.config_manager.update_config({"auth_token": result["token"]})
        logger.info(f"Авторизация в MarkHub выполнена: {identity}")
        return result

    async def logout(self) -> None:
        await self.config_manager.update_config({"auth_token": ""})

    async def is_authenticated(self) -> bool:
        config = await self.config_manager.get_config()
        return bool(config.auth_token)

    async def get_bookmarks(self, filter_expr: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"perPage": PAGE_SIZE}
        if filter_expr:
            params["filter"] = filter_expr
        result = await self._request("GET", BOOKMARKS_ENDPOINT, params=params)
        return (result or {}).get("items", [])

    async def find_bookmark_by_url(self, url: str) -> Optional[Dict[str, Any]]:
        items = await self.get_bookmarks(f"url = {_filter_literal(url)}")
        return items[0] if items else None

    async def find_bookmark_by_chrome_id(self, chrome_bookmark_id: str) -> Optional[Dict[str, Any]]:
        items = await self.get_bookmarks(f"chromeBookmarkId = {_filter_literal(chrome_bookmark_id)}")
        return items[0] if items else None

    async def create_bookmark(self, data: Dict[str, Any]) -> Dict[str, Any]:
        log_function_call("create_bookmark", (), {"url": data.get("url")})
        return await self._request("POST", BOOKMARKS_ENDPOINT, json=data)

    async def update_bookmark(self, bookmark_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        log_function_call("update_bookmark", (bookmark_id,), {"fields": sorted(data)})
        return await self._request("PATCH", f"{BOOKMARKS_ENDPOINT}/{bookmark_id}", json=data)

    async def delete_bookmark(self, bookmark_id: str) -> None:
        log_function_call("delete_bookmark", (bookmark_id,))
        await self._request("DELETE", f"{BOOKMARKS_ENDPOINT}/{bookmark_id}")

    async def get_folders(self) -> List[Dict[str, Any]]:
        result = await self._request("GET", FOLDERS_ENDPOINT, params={"perPage": PAGE_SIZE})
        return (result or {}).get("items", [])

    async def create_folder(self, name: str, parent_id: Optional[str] = None) -> Dict[str, Any]:
        log_function_call("create_folder", (name,), {"parent_id": parent_id})
        return await self._request("POST", FOLDERS_ENDPOINT, json={"name": name, "parentId": parent_id})

    async def find_folder_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Ищет папку по названию без учета регистра."""
        wanted = name.strip().lower()
        for folder in await self.get_folders():
            if str(folder.get("name", "")).strip().lower() == wanted:
                return folder
        return None

    async def ensure_folder_path_via_api(self, folder_path: Sequence[str]) -> Optional[str]:
        """
        Обеспечивает путь папок на стороне сервера.

        Аргументы:
            folder_path: Названия папок от корня к листу

        Возвращает:
            Optional[str]: Идентификатор конечной папки или None для корня
        """
        if not folder_path:
            return None
        result = await self._request(
            "POST", ENSURE_FOLDER_PATH_ENDPOINT, json={"folderPath": list(folder_path)}
        )
        if result and result.get("created"):
            logger.info(f"Сервер создал путь папок: {' / '.join(folder_path)}")
        return (result or {}).get("folderId")

    async def trigger_ai_tag_suggestion(self, bookmark_id: str) -> Dict[str, Any]:
        """
        Запускает серверную AI-рекомендацию тегов для закладки.

        Возвращает:
            Dict[str, Any]: {success, message, bookmark, aiUsed}
        """
        start_time = time.time()
        try:
            result = await self._request("POST", AI_TAGS_ENDPOINT.format(bookmark_id=bookmark_id))
        except TransportError as e:
            log_error_with_context(e, {"bookmark_id": bookmark_id, "status": e.status_code, "operation": "ai_tags"})
            raise
        log_performance("trigger_ai_tag_suggestion", time.time() - start_time, f"bookmark_id={bookmark_id}")
        return result or {}
