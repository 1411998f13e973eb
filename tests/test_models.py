"""
Тесты для моделей данных и вычисления итогового состояния задачи.
"""
import pytest

from markhub_pipeline.errors import ReconciliationError, TransportError, categorize_status
from markhub_pipeline.models import (
    BookmarkSnapshot,
    BrowserBookmarkNode,
    ClassificationTask,
    FolderStatus,
    InvalidTransitionError,
    OverallStatus,
    PendingBookmarkRecord,
    TagStatus,
    derive_overall_status,
)


class TestDeriveOverallStatus:
    """Тесты для derive_overall_status."""

    def test_both_pending(self):
        assert derive_overall_status(TagStatus.PENDING, FolderStatus.PENDING) == OverallStatus.PENDING

    @pytest.mark.parametrize("tag_status,folder_status", [
        (TagStatus.GENERATING, FolderStatus.PENDING),
        (TagStatus.GENERATED, FolderStatus.SUGGESTING),
        (TagStatus.PENDING, FolderStatus.FAILED),
        (TagStatus.FAILED, FolderStatus.PENDING),
    ])
    def test_processing_until_both_terminal(self, tag_status, folder_status):
        assert derive_overall_status(tag_status, folder_status) == OverallStatus.PROCESSING

    def test_completed(self):
        assert derive_overall_status(TagStatus.GENERATED, FolderStatus.SUGGESTED) == OverallStatus.COMPLETED

    def test_partially_failed(self):
        assert derive_overall_status(TagStatus.GENERATED, FolderStatus.FAILED) == OverallStatus.PARTIALLY_FAILED
        assert derive_overall_status(TagStatus.FAILED, FolderStatus.SUGGESTED) == OverallStatus.PARTIALLY_FAILED

    def test_failed(self):
        assert derive_overall_status(TagStatus.FAILED, FolderStatus.FAILED) == OverallStatus.FAILED


class TestClassificationTask:
    """Тесты переходов подсостояний задачи."""

    def setup_method(self):
        self.task = ClassificationTask(id="t1", bookmark=BookmarkSnapshot(url="https://a.com", title="A"))

    def test_happy_path(self):
        self.task.start_tags()
        self.task.start_folder()
        assert self.task.overall_status == OverallStatus.PROCESSING

        self.task.finish_tags(["python", "docs"])
        self.task.finish_folder("Work")

        assert self.task.generated_tags == ("python", "docs")
        assert self.task.suggested_folder == "Work"
        assert self.task.overall_status == OverallStatus.COMPLETED
        assert self.task.is_terminal

    def test_finish_without_start_rejected(self):
        with pytest.raises(InvalidTransitionError):
            self.task.finish_tags(["x"])
        with pytest.raises(InvalidTransitionError):
            self.task.finish_folder("Work")

    def test_terminal_state_is_final(self):
        self.task.start_tags()
        self.task.fail_tags("timeout")

        with pytest.raises(InvalidTransitionError):
            self.task.start_tags()
        with pytest.raises(InvalidTransitionError):
            self.task.fail_tags("again")
        assert self.task.tag_error == "timeout"

    def test_fail_from_pending_allowed(self):
        self.task.fail_folder("нет папок")
        assert self.task.folder_status == FolderStatus.FAILED
        assert not self.task.is_terminal


class TestBookmarkSnapshot:
    """Тесты для снимка закладки."""

    def test_from_payload_camel_case(self):
        snapshot = BookmarkSnapshot.from_payload({
            "url": "https://a.com",
            "title": "",
            "addedAt": 1700000000000,
            "tags": ["x"],
        })

        assert snapshot.title == "https://a.com"
        assert snapshot.added_at == "1700000000000"
        assert snapshot.tags == ("x",)

    def test_dedup_key_includes_time(self):
        first = BookmarkSnapshot(url="https://a.com", title="A", added_at="1")
        second = BookmarkSnapshot(url="https://a.com", title="A", added_at="2")
        assert first.dedup_key != second.dedup_key


class TestPendingBookmarkRecord:
    """Тесты для сериализации отложенной закладки."""

    def test_to_dict_omits_empty_fields(self):
        record = PendingBookmarkRecord(url="https://a.com", title="A", created_at="2024-01-01T00:00:00Z",
                                       folder_name="Work")
        assert record.to_dict() == {
            "url": "https://a.com",
            "title": "A",
            "createdAt": "2024-01-01T00:00:00Z",
            "folderName": "Work",
        }

    def test_from_dict_ignores_service_fields(self):
        record = PendingBookmarkRecord.from_dict({
            "url": "https://a.com",
            "createdAt": "now",
            "chromeBookmarkId": "5",
            "_pendingId": "abc",
        })
        assert record.title == "https://a.com"
        assert record.chrome_bookmark_id == "5"


def test_folder_node_has_no_url():
    assert BrowserBookmarkNode(id="1", title="Folder").is_folder
    assert not BrowserBookmarkNode(id="2", title="Page", url="https://a.com").is_folder


class TestErrors:
    """Тесты иерархии исключений."""

    @pytest.mark.parametrize("status_code,category", [
        (404, "not_found"),
        (401, "auth"),
        (403, "auth"),
        (500, "server_error"),
        (503, "server_error"),
        (400, "other"),
        (None, "other"),
    ])
    def test_categorize_status(self, status_code, category):
        assert categorize_status(status_code) == category

    def test_transport_error_retryable(self):
        assert TransportError("t", timeout=True).retryable
        assert TransportError("net").retryable
        assert TransportError("5xx", status_code=502).retryable
        assert not TransportError("4xx", status_code=400).retryable

    def test_reconciliation_category(self):
        assert ReconciliationError("x", category="auth").category == "auth"
