"""
Тесты для синхронизации закладок браузера с MarkHub.
Клиент API заменен моком, дерево закладок строится из тестовых данных.
"""
import copy
from unittest.mock import AsyncMock, MagicMock

import pytest

from markhub_pipeline.errors import TransportError
from markhub_pipeline.models import BrowserBookmarkNode
from markhub_pipeline.parser import BookmarkParser, FileBookmarkTree
from markhub_pipeline.sync_manager import FolderPathResolver, SyncManager, chrome_folder_path, is_system_folder


def make_api_client(existing_folders=None, existing_bookmarks=None):
    """Мок MarkhubAPIClient с хранением созданных папок."""
    api_client = MagicMock()
    created_folders = []

    async def create_folder(name, parent_id=None):
        folder = {"id": f"f{len(created_folders) + 1}", "name": name, "parentId": parent_id}
        created_folders.append(folder)
        return folder

    api_client.created_folders = created_folders
    api_client.get_folders = AsyncMock(return_value=list(existing_folders or []))
    api_client.create_folder = AsyncMock(side_effect=create_folder)
    api_client.ensure_folder_path_via_api = AsyncMock(return_value="f-api")
    api_client.create_bookmark = AsyncMock(side_effect=lambda data: {"id": f"b-{data['chromeBookmarkId']}", **data})
    api_client.update_bookmark = AsyncMock(side_effect=lambda bookmark_id, data: {"id": bookmark_id, **data})
    api_client.delete_bookmark = AsyncMock(return_value=None)
    api_client.find_bookmark_by_chrome_id = AsyncMock(return_value=None)
    api_client.get_bookmarks = AsyncMock(return_value=list(existing_bookmarks or []))
    api_client.trigger_ai_tag_suggestion = AsyncMock(
        return_value={"success": True, "bookmark": {"tags": ["python"]}, "aiUsed": True}
    )
    return api_client


@pytest.fixture
def tree(chrome_bookmarks_data):
    data = copy.deepcopy(chrome_bookmarks_data)
    del data["roots"]["synced"]
    return FileBookmarkTree(BookmarkParser().parse_bookmarks(data))


class TestHelpers:

    def test_is_system_folder(self):
        assert is_system_folder(BrowserBookmarkNode(id="0", title=""))
        assert is_system_folder(BrowserBookmarkNode(id="1", title="Bookmarks bar"))
        assert is_system_folder(BrowserBookmarkNode(id="5", title="书签栏"))
        assert not is_system_folder(BrowserBookmarkNode(id="10", title="Work"))

    @pytest.mark.asyncio
    async def test_chrome_folder_path(self, tree):
        assert await chrome_folder_path(tree, "13") == ["Work", "Projects"]
        assert await chrome_folder_path(tree, "20") == []
        assert await chrome_folder_path(tree, "missing") == []


class TestFolderPathResolver:
    """Тесты для FolderPathResolver."""

    @pytest.mark.asyncio
    async def test_creates_missing_segments(self):
        api_client = make_api_client(existing_folders=[{"id": "w", "name": "Work", "parentId": ""}])
        resolver = FolderPathResolver(api_client)

        folder_id = await resolver.ensure_path(["Work", "Projects", "Python"])

        assert folder_id == "f2"
        assert [(f["name"], f["parentId"]) for f in api_client.created_folders] == [
            ("Projects", "w"), ("Python", "f1"),
        ]
        assert resolver.folders_created == 2

    @pytest.mark.asyncio
    async def test_loads_folders_once_and_reuses_created(self):
        api_client = make_api_client()
        resolver = FolderPathResolver(api_client)

        first = await resolver.ensure_path(["Reading"])
        second = await resolver.ensure_path(["Reading"])

        assert first == second
        assert api_client.get_folders.await_count == 1
        assert api_client.create_folder.await_count == 1

    @pytest.mark.asyncio
    async def test_root_path(self):
        assert await FolderPathResolver(make_api_client()).ensure_path([]) is None


class TestSyncManager:
    """Тесты для SyncManager."""

    @pytest.mark.asyncio
    async def test_sync_disabled(self, config_manager, tree):
        api_client = make_api_client()
        manager = SyncManager(config_manager, api_client, tree)

        result = await manager.sync_new_bookmark(await tree.get("11"))

        assert not result.success
        assert result.error == "Синхронизация отключена"
        assert not manager.is_sync_available()
        api_client.create_bookmark.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_authenticated(self, sync_config_manager, tree):
        await sync_config_manager.update_config({"auth_token": ""})
        manager = SyncManager(sync_config_manager, make_api_client(), tree)

        result = await manager.sync_bookmark_deletion("11")

        assert result.error == "Пользователь не авторизован"

    @pytest.mark.asyncio
    async def test_sync_new_bookmark(self, sync_config_manager, tree):
        api_client = make_api_client()
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.sync_new_bookmark(await tree.get("13"))

        assert result.success
        assert result.remote_id == "b-13"
        api_client.ensure_folder_path_via_api.assert_awaited_once_with(["Work", "Projects"])
        api_client.create_bookmark.assert_awaited_once_with({
            "title": "Repo",
            "url": "https://github.com/example/repo",
            "folderId": "f-api",
            "chromeBookmarkId": "13",
        })
        api_client.trigger_ai_tag_suggestion.assert_awaited_once_with("b-13")

    @pytest.mark.asyncio
    async def test_folder_path_fallback(self, sync_config_manager, tree):
        api_client = make_api_client(existing_folders=[{"id": "w", "name": "Work", "parentId": None}])
        api_client.ensure_folder_path_via_api.side_effect = TransportError("not found", status_code=404)
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.sync_new_bookmark(await tree.get("13"))

        assert result.success
        assert api_client.create_bookmark.call_args.args[0]["folderId"] == "f1"
        api_client.create_folder.assert_awaited_once_with("Projects", "w")

    @pytest.mark.asyncio
    async def test_ai_tag_failure_does_not_fail_sync(self, sync_config_manager, tree):
        api_client = make_api_client()
        api_client.trigger_ai_tag_suggestion.side_effect = TransportError("no bookmark", status_code=404)
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.sync_new_bookmark(await tree.get("11"))

        assert result.success

    @pytest.mark.asyncio
    async def test_create_failure(self, sync_config_manager, tree):
        api_client = make_api_client()
        api_client.create_bookmark.side_effect = TransportError("server error", status_code=500)
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.sync_new_bookmark(await tree.get("11"))

        assert not result.success
        assert result.error == "server error"
        api_client.trigger_ai_tag_suggestion.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_existing(self, sync_config_manager, tree):
        api_client = make_api_client()
        api_client.find_bookmark_by_chrome_id.return_value = {"id": "remote-1"}
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.sync_bookmark_update(await tree.get("11"))

        assert result.remote_id == "remote-1"
        api_client.update_bookmark.assert_awaited_once_with("remote-1", {
            "title": "Python Docs",
            "url": "https://docs.python.org/3/",
            "folderId": "f-api",
        })
        api_client.create_bookmark.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_unknown_creates(self, sync_config_manager, tree):
        api_client = make_api_client()
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.sync_bookmark_update(await tree.get("11"))

        assert result.remote_id == "b-11"
        api_client.update_bookmark.assert_not_called()

    @pytest.mark.asyncio
    async def test_deletion(self, sync_config_manager, tree):
        api_client = make_api_client()
        manager = SyncManager(sync_config_manager, api_client, tree)

        missing = await manager.sync_bookmark_deletion("11")
        assert missing.success
        api_client.delete_bookmark.assert_not_called()

        api_client.find_bookmark_by_chrome_id.return_value = {"id": "remote-1"}
        deleted = await manager.sync_bookmark_deletion("11")
        assert deleted.remote_id == "remote-1"
        api_client.delete_bookmark.assert_awaited_once_with("remote-1")

    @pytest.mark.asyncio
    async def test_batch_sync(self, sync_config_manager, tree):
        api_client = make_api_client()

        async def create(data):
            if data["chromeBookmarkId"] == "20":
                raise TransportError("duplicate url", status_code=400)
            return {"id": f"b-{data['chromeBookmarkId']}"}

        api_client.create_bookmark.side_effect = create
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.batch_sync_bookmarks([await tree.get("11"), await tree.get("20")])

        assert result.successful == 1
        assert result.failed == 1
        assert result.errors == ["News: duplicate url"]

    @pytest.mark.asyncio
    async def test_initial_sync(self, sync_config_manager, tree):
        api_client = make_api_client(existing_bookmarks=[{"id": "old-news", "url": "https://news.example.com"}])
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.perform_initial_sync()

        assert result.success
        assert result.errors == []
        assert result.folders_created == 3
        assert result.bookmarks_created == 3
        assert [(f["name"], f["parentId"]) for f in api_client.created_folders] == [
            ("Work", None), ("Reading", None), ("Projects", "f1"),
        ]
        api_client.update_bookmark.assert_awaited_once_with(
            "old-news", {"title": "News", "folderId": None, "chromeBookmarkId": "20"}
        )
        created_urls = [call.args[0]["url"] for call in api_client.create_bookmark.await_args_list]
        assert created_urls == ["https://docs.python.org/3/", "https://github.com/example/repo"]
        assert api_client.create_bookmark.await_args_list[1].args[0]["folderId"] == "f3"
        assert api_client.trigger_ai_tag_suggestion.await_count == 2

    @pytest.mark.asyncio
    async def test_initial_sync_collects_item_errors(self, sync_config_manager, tree):
        api_client = make_api_client()
        api_client.create_bookmark.side_effect = TransportError("rate limited", status_code=429)
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.perform_initial_sync()

        assert result.success
        assert result.bookmarks_created == 0
        assert len(result.errors) == 3
        assert "rate limited" in result.errors[0]

    @pytest.mark.asyncio
    async def test_initial_sync_fails_when_listing_fails(self, sync_config_manager, tree):
        api_client = make_api_client()
        api_client.get_bookmarks.side_effect = TransportError("unavailable", status_code=503)
        manager = SyncManager(sync_config_manager, api_client, tree)

        result = await manager.perform_initial_sync()

        assert not result.success
        assert "unavailable" in result.errors[-1]
