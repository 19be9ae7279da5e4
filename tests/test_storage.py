"""
Test suite for storage backends

Runs the same behaviour checks against the in-memory and SQLite backends,
plus transaction rollback and conflict retry.
"""

from unittest.mock import patch

import pytest

from lending_core.errors import TransactionConflictError
from lending_core.storage import InMemoryStorage, SQLiteStorage, create_storage, run_in_transaction


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryStorage()
    else:
        store = SQLiteStorage(tmp_path / "lending.db")
    yield store
    store.close()


class TestBasicOperations:

    def test_save_and_load(self, backend):
        backend.save("loans", "l1", {"id": "l1", "principal": "45000.00"})
        assert backend.load("loans", "l1") == {"id": "l1", "principal": "45000.00"}

    def test_load_missing(self, backend):
        assert backend.load("loans", "missing") is None

    def test_save_replaces(self, backend):
        backend.save("loans", "l1", {"id": "l1", "status": "ACTIVE"})
        backend.save("loans", "l1", {"id": "l1", "status": "COMPLETED"})

        assert backend.load("loans", "l1")["status"] == "COMPLETED"
        assert backend.count("loans") == 1

    def test_loaded_record_is_a_copy(self, backend):
        backend.save("loans", "l1", {"id": "l1", "tags": ["a"]})
        loaded = backend.load("loans", "l1")
        loaded["tags"].append("b")

        assert backend.load("loans", "l1")["tags"] == ["a"]

    def test_delete_and_exists(self, backend):
        backend.save("loans", "l1", {"id": "l1"})
        assert backend.exists("loans", "l1")

        assert backend.delete("loans", "l1") is True
        assert backend.delete("loans", "l1") is False
        assert not backend.exists("loans", "l1")

    def test_clear_table(self, backend):
        backend.save("loans", "l1", {"id": "l1"})
        backend.save("loans", "l2", {"id": "l2"})
        backend.clear_table("loans")
        assert backend.load_all("loans") == []


class TestFind:

    @pytest.fixture
    def populated(self, backend):
        backend.save("installments", "i1", {"id": "i1", "loan_id": "L", "status": "PENDING"})
        backend.save("installments", "i2", {"id": "i2", "loan_id": "L", "status": "OVERDUE"})
        backend.save("installments", "i3", {"id": "i3", "loan_id": "L", "status": "PAID"})
        backend.save("installments", "i4", {"id": "i4", "loan_id": "M", "status": "PENDING"})
        return backend

    def test_exact_filter(self, populated):
        found = populated.find("installments", {"loan_id": "L", "status": "PENDING"})
        assert [r["id"] for r in found] == ["i1"]

    def test_list_filter_matches_any_member(self, populated):
        found = populated.find("installments", {"loan_id": "L", "status": ["PENDING", "OVERDUE"]})
        assert sorted(r["id"] for r in found) == ["i1", "i2"]

    def test_unknown_key_matches_nothing(self, populated):
        assert populated.find("installments", {"sequence": 1}) == []

    def test_count_with_filters(self, populated):
        assert populated.count("installments") == 4
        assert populated.count("installments", {"status": "PENDING"}) == 2
        assert populated.count("installments", {"status": ("PAID", "OVERDUE")}) == 2


class TestAtomic:

    def test_commit(self, backend):
        with backend.atomic():
            backend.save("loans", "l1", {"id": "l1"})
        assert backend.exists("loans", "l1")

    def test_rollback_on_error(self, backend):
        backend.save("loans", "l1", {"id": "l1", "status": "ACTIVE"})

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("loans", "l1", {"id": "l1", "status": "COMPLETED"})
                backend.save("loans", "l2", {"id": "l2"})
                raise RuntimeError("boom")

        assert backend.load("loans", "l1")["status"] == "ACTIVE"
        assert not backend.exists("loans", "l2")

    def test_nested_blocks_join_outer(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                with backend.atomic():
                    backend.save("loans", "inner", {"id": "inner"})
                raise RuntimeError("outer fails")

        assert not backend.exists("loans", "inner")

    def test_usable_after_rollback(self, backend):
        with pytest.raises(ValueError):
            with backend.atomic():
                raise ValueError()

        with backend.atomic():
            backend.save("loans", "l1", {"id": "l1"})
        assert backend.exists("loans", "l1")


class TestRunInTransaction:

    def test_returns_result(self, storage):
        assert run_in_transaction(storage, lambda: 42) == 42

    def test_retries_conflicts(self, storage):
        calls = []

        def flaky():
            calls.append(1)
            storage.save("loans", f"l{len(calls)}", {"id": f"l{len(calls)}"})
            if len(calls) < 3:
                raise TransactionConflictError("busy")
            return "done"

        with patch("lending_core.storage.time.sleep") as sleep:
            assert run_in_transaction(storage, flaky, retries=3, backoff_seconds=0.1) == "done"

        assert len(calls) == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.1, 0.2]
        # Failed attempts were rolled back
        assert storage.exists("loans", "l3")
        assert not storage.exists("loans", "l1")
        assert not storage.exists("loans", "l2")

    def test_reraises_when_exhausted(self, storage):
        def always_conflicts():
            raise TransactionConflictError("busy")

        with pytest.raises(TransactionConflictError):
            run_in_transaction(storage, always_conflicts, retries=2, backoff_seconds=0)

    def test_other_errors_not_retried(self, storage):
        calls = []

        def broken():
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            run_in_transaction(storage, broken, backoff_seconds=0)
        assert len(calls) == 1


class TestCreateStorage:

    def test_memory(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_file(self, tmp_path):
        store = create_storage(f"sqlite:///{tmp_path / 'x.db'}")
        try:
            assert isinstance(store, SQLiteStorage)
            assert store.db_path.endswith("x.db")
        finally:
            store.close()

    def test_sqlite_in_memory(self):
        store = create_storage("sqlite://")
        assert store.db_path == ":memory:"
        store.close()

    def test_unsupported(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/lending")
