"""
Тесты для клиента REST API MarkHub.
"""
import json

import httpx
import pytest

from markhub_pipeline.errors import TransportError
from markhub_pipeline.markhub_api import MarkhubAPIClient


class FakeMarkhubServer:
    """Обработчик httpx.MockTransport, запоминающий запросы."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        route = self.routes.get(key)
        if route is None:
            return httpx.Response(404, json={"message": "Not found"})
        if callable(route):
            return route(request)
        status_code, body = route
        return httpx.Response(status_code, json=body)


def make_client(config_manager, routes):
    server = FakeMarkhubServer(routes)
    return MarkhubAPIClient(config_manager, transport=httpx.MockTransport(server)), server


class TestMarkhubAPIClient:
    """Тесты для MarkhubAPIClient."""

    @pytest.mark.asyncio
    async def test_auth_header_and_base_url(self, sync_config_manager):
        client, server = make_client(sync_config_manager, {
            ("GET", "/api/collections/folders/records"): (200, {"items": [{"id": "f1", "name": "Work"}]}),
        })
        async with client:
            folders = await client.get_folders()

        assert folders == [{"id": "f1", "name": "Work"}]
        request = server.requests[0]
        assert request.url.host == "db.test.markhub.app"
        assert request.headers["Authorization"] == "Bearer test_token"
        assert request.url.params["perPage"] == "500"

    @pytest.mark.asyncio
    async def test_no_auth_header_without_token(self, config_manager):
        client, server = make_client(config_manager, {
            ("GET", "/api/collections/bookmarks/records"): (200, {"items": []}),
        })
        async with client:
            await client.get_bookmarks()

        assert "Authorization" not in server.requests[0].headers

    @pytest.mark.asyncio
    async def test_find_bookmark_by_url_escapes_filter(self, sync_config_manager):
        client, server = make_client(sync_config_manager, {
            ("GET", "/api/collections/bookmarks/records"): (200, {"items": [{"id": "b1"}]}),
        })
        async with client:
            found = await client.find_bookmark_by_url('https://a.com/?q="x"')

        assert found == {"id": "b1"}
        assert server.requests[0].url.params["filter"] == 'url = "https://a.com/?q=\\"x\\""'

    @pytest.mark.asyncio
    async def test_create_update_delete(self, sync_config_manager):
        client, server = make_client(sync_config_manager, {
            ("POST", "/api/collections/bookmarks/records"): (200, {"id": "b1", "url": "https://a.com"}),
            ("PATCH", "/api/collections/bookmarks/records/b1"): (200, {"id": "b1", "title": "New"}),
            ("DELETE", "/api/collections/bookmarks/records/b1"): lambda request: httpx.Response(204),
        })
        async with client:
            created = await client.create_bookmark({"url": "https://a.com", "title": "A"})
            updated = await client.update_bookmark("b1", {"title": "New"})
            deleted = await client.delete_bookmark("b1")

        assert created["id"] == "b1"
        assert updated["title"] == "New"
        assert deleted is None
        assert json.loads(server.requests[0].content) == {"url": "https://a.com", "title": "A"}

    @pytest.mark.asyncio
    async def test_error_response(self, sync_config_manager):
        client, _server = make_client(sync_config_manager, {
            ("POST", "/api/collections/bookmarks/records"): (400, {"message": "Failed to create record."}),
        })
        async with client:
            with pytest.raises(TransportError) as exc_info:
                await client.create_bookmark({"url": "bad"})

        assert exc_info.value.status_code == 400
        assert str(exc_info.value) == "Failed to create record."
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unauthorized_clears_token(self, sync_config_manager):
        client, _server = make_client(sync_config_manager, {
            ("GET", "/api/collections/folders/records"): (401, {"message": "Unauthorized"}),
        })
        async with client:
            with pytest.raises(TransportError):
                await client.get_folders()
            assert not await client.is_authenticated()

    @pytest.mark.asyncio
    async def test_network_error(self, sync_config_manager):
        def fail(request):
            raise httpx.ConnectError("refused", request=request)

        client, _server = make_client(sync_config_manager, {("GET", "/api/collections/folders/records"): fail})
        async with client:
            with pytest.raises(TransportError) as exc_info:
                await client.get_folders()

        assert exc_info.value.status_code is None
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_login_stores_token(self, config_manager):
        client, server = make_client(config_manager, {
            ("POST", "/api/collections/users/auth-with-password"): (200, {"token": "new_token", "record": {}}),
        })
        async with client:
            await client.login("user@test.com", "secret")
            assert await client.is_authenticated()
            await client.logout()
            assert not await client.is_authenticated()

        assert "Authorization" not in server.requests[0].headers

    @pytest.mark.asyncio
    async def test_find_folder_by_name_case_insensitive(self, sync_config_manager):
        client, _server = make_client(sync_config_manager, {
            ("GET", "/api/collections/folders/records"): (200, {"items": [{"id": "f1", "name": "Reading "}]}),
        })
        async with client:
            assert (await client.find_folder_by_name("reading"))["id"] == "f1"
            assert await client.find_folder_by_name("Work") is None

    @pytest.mark.asyncio
    async def test_ensure_folder_path_via_api(self, sync_config_manager):
        client, server = make_client(sync_config_manager, {
            ("POST", "/api/custom/ensure-folder-path"): (200, {"folderId": "f9", "created": True}),
        })
        async with client:
            assert await client.ensure_folder_path_via_api([]) is None
            assert await client.ensure_folder_path_via_api(["Work", "Projects"]) == "f9"

        assert len(server.requests) == 1
        assert json.loads(server.requests[0].content) == {"folderPath": ["Work", "Projects"]}

    @pytest.mark.asyncio
    async def test_trigger_ai_tag_suggestion(self, sync_config_manager):
        client, _server = make_client(sync_config_manager, {
            ("POST", "/api/custom/bookmarks/b1/ai-suggest-and-set-tags"): (
                200, {"success": True, "bookmark": {"tags": ["python"]}, "aiUsed": True},
            ),
        })
        async with client:
            result = await client.trigger_ai_tag_suggestion("b1")
            with pytest.raises(TransportError) as exc_info:
                await client.trigger_ai_tag_suggestion("missing")

        assert result["aiUsed"] is True
        assert exc_info.value.status_code == 404
