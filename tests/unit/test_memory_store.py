"""
Unit tests for the in-memory table store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from feedlot_etl.core.errors import DuplicateKeyError
from feedlot_etl.core.models.file_record import FileState
from feedlot_etl.warehouse.store import Condition, eq, gt, is_null, ne, not_null, select_one


@pytest.mark.unit
class TestMemoryTableStore:
    """Tests for MemoryTableStore"""

    def test_insert_assigns_id_and_created_at(self, memory_store):
        """Test insert assigns id and created at"""
        row = memory_store.insert("dim_curral", {"organization_id": "o1", "code": "C1"})
        assert row["id"]
        assert row["created_at"].tzinfo is not None

    def test_unique_key_is_enforced(self, memory_store):
        """Test unique key is enforced"""
        memory_store.insert("dim_curral", {"organization_id": "o1", "code": "C1"})
        with pytest.raises(DuplicateKeyError):
            memory_store.insert("dim_curral", {"organization_id": "o1", "code": "C1"})

    def test_unique_key_is_scoped_by_organization(self, memory_store):
        """Test unique key is scoped by organization"""
        memory_store.insert("dim_curral", {"organization_id": "o1", "code": "C1"})
        memory_store.insert("dim_curral", {"organization_id": "o2", "code": "C1"})
        assert memory_store.count("dim_curral") == 2

    def test_enums_are_stored_as_values(self, memory_store):
        """Test enums are stored as values"""
        memory_store.insert("etl_file", {"id": "f1", "current_state": FileState.PARSING})
        assert select_one(memory_store, "etl_file", [eq("id", "f1")])["current_state"] == "parsing"
        assert memory_store.count("etl_file", [eq("current_state", FileState.PARSING)]) == 1

    def test_conditional_update_returns_rowcount(self, memory_store):
        """Test conditional update returns rowcount"""
        memory_store.insert("etl_file", {"id": "f1", "current_state": "uploaded"})

        assert memory_store.update(
            "etl_file", {"current_state": "parsing"},
            [eq("id", "f1"), eq("current_state", "uploaded")]
        ) == 1
        assert memory_store.update(
            "etl_file", {"current_state": "parsing"},
            [eq("id", "f1"), eq("current_state", "uploaded")]
        ) == 0

    def test_null_comparisons_follow_sql(self, memory_store):
        """Test null comparisons follow sql"""
        memory_store.insert("etl_file", {"id": "f1", "next_retry_at": None})
        memory_store.insert("etl_file", {"id": "f2", "next_retry_at": datetime.now(timezone.utc)})

        assert memory_store.count("etl_file", [ne("next_retry_at", datetime(2000, 1, 1, tzinfo=timezone.utc))]) == 1
        assert memory_store.count("etl_file", [is_null("next_retry_at")]) == 1
        assert memory_store.count("etl_file", [not_null("next_retry_at")]) == 1

    def test_order_and_limit(self, memory_store):
        """Test order and limit"""
        now = datetime.now(timezone.utc)
        for i in range(5):
            memory_store.insert("etl_run_log", {"id": f"e{i}", "created_at": now + timedelta(seconds=i)})

        newest = memory_store.select("etl_run_log", order_by="created_at", descending=True, limit=2)
        assert [r["id"] for r in newest] == ["e4", "e3"]

    def test_returned_rows_are_copies(self, memory_store):
        """Test returned rows are copies"""
        memory_store.insert("etl_run_log", {"id": "e1", "metadata": {"a": 1}})
        row = memory_store.select("etl_run_log")[0]
        row["metadata"]["a"] = 2
        assert memory_store.select("etl_run_log")[0]["metadata"] == {"a": 1}

    def test_update_cannot_create_duplicate(self, memory_store):
        """Test update cannot create duplicate"""
        memory_store.insert("dim_curral", {"id": "a", "organization_id": "o1", "code": "C1"})
        memory_store.insert("dim_curral", {"id": "b", "organization_id": "o1", "code": "C2"})
        with pytest.raises(DuplicateKeyError):
            memory_store.update("dim_curral", {"code": "C1"}, [eq("id", "b")])

    def test_unknown_operator_is_rejected(self, memory_store):
        """Test unknown operator is rejected"""
        with pytest.raises(ValueError):
            memory_store.select("etl_file", [Condition("id", "like", "f%")])

    def test_greater_than(self, memory_store):
        memory_store.insert("etl_file", {"id": "f1", "retry_count": 0})
        memory_store.insert("etl_file", {"id": "f2", "retry_count": 2})
        assert [r["id"] for r in memory_store.select("etl_file", [gt("retry_count", 0)])] == ["f2"]

    def test_delete_returns_rowcount(self, memory_store):
        """Test delete returns rowcount"""
        memory_store.insert("etl_file", {"id": "f1", "retry_count": 0})
        memory_store.insert("etl_file", {"id": "f2", "retry_count": 2})
        memory_store.insert("etl_file", {"id": "f3", "retry_count": 5})

        assert memory_store.delete("etl_file", [gt("retry_count", 0)]) == 2
        assert memory_store.delete("etl_file", [gt("retry_count", 0)]) == 0
        assert [r["id"] for r in memory_store.select("etl_file")] == ["f1"]
