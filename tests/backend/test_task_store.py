"""
Unit tests for the in-memory TaskStore.

Covers record lifecycle, snapshot isolation, progress rules, owner listing,
cancellation and retention sweeping.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from backend.core.task_store import (
    TaskStore,
    get_task_store,
    initialize_store,
    reset_store,
)
from backend.tasks.models import TaskEntry, TaskStatus, TaskType


@pytest.fixture
def store():
    """Create a fresh store instance for each test."""
    return TaskStore(retention_minutes=60, sweep_interval_minutes=10)


class TestTaskEntry:
    """Test TaskEntry data class functionality."""

    def test_task_entry_defaults(self):
        now = datetime.now()
        task = TaskEntry(
            task_id="test-001",
            task_type=TaskType.SPLIT_SCRIPT.value,
            owner_ref="project-1",
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        assert task.progress == 0
        assert task.progress_text is None
        assert task.result is None
        assert task.error is None
        assert task.started_at is None
        assert task.completed_at is None
        assert task.is_terminal is False

    def test_task_entry_to_dict(self):
        now = datetime.now()
        task = TaskEntry(
            task_id="test-002",
            task_type="generate-images",
            owner_ref="project-2",
            status=TaskStatus.COMPLETED,
            created_at=now,
            updated_at=now,
            progress=100,
            result={"images": []},
            completed_at=now,
        )

        task_dict = task.to_dict()

        assert task_dict["status"] == "completed"
        assert task_dict["progress"] == 100
        assert task_dict["result"] == {"images": []}
        assert task_dict["completed_at"] == now.isoformat()
        assert task_dict["started_at"] is None

    @pytest.mark.parametrize(
        "status,terminal",
        [
            (TaskStatus.PENDING, False),
            (TaskStatus.RUNNING, False),
            (TaskStatus.COMPLETED, True),
            (TaskStatus.FAILED, True),
            (TaskStatus.CANCELLED, True),
        ],
    )
    def test_terminal_statuses(self, status, terminal):
        assert status.is_terminal is terminal


class TestCreateAndGet:
    @pytest.mark.asyncio
    async def test_create_returns_pending_record(self, store):
        task = await store.create("split-script", "project-1", {"script": "abc"})

        assert task.status == TaskStatus.PENDING
        assert task.owner_ref == "project-1"
        assert task.payload == {"script": "abc"}
        assert task.progress == 0
        assert await store.get_task_count() == 1

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, store):
        ids = {(await store.create("t", "o")).task_id for _ in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    async def test_create_calls_dispatcher(self):
        dispatched = []
        store = TaskStore(dispatcher=dispatched.append)

        task = await store.create("t", "o")

        assert dispatched == [task.task_id]

    @pytest.mark.asyncio
    async def test_get_returns_snapshot(self, store):
        task = await store.create("t", "o")
        snapshot = await store.get(task.task_id)
        snapshot.status = TaskStatus.FAILED
        snapshot.progress = 99

        fresh = await store.get(task.task_id)
        assert fresh.status == TaskStatus.PENDING
        assert fresh.progress == 0

    @pytest.mark.asyncio
    async def test_snapshot_nested_payload_is_isolated(self, store):
        task = await store.create("t", "o", {"config": {"model": "gpt-4o"}, "scenes": [1, 2]})

        snapshot = await store.get(task.task_id)
        snapshot.payload["config"]["model"] = "changed"
        snapshot.payload["scenes"].append(3)
        task.payload["config"]["extra"] = True

        fresh = await store.get(task.task_id)
        assert fresh.payload == {"config": {"model": "gpt-4o"}, "scenes": [1, 2]}

    @pytest.mark.asyncio
    async def test_caller_payload_is_copied_on_create(self, store):
        payload = {"config": {"model": "gpt-4o"}}
        task = await store.create("t", "o", payload)

        payload["config"]["model"] = "changed"

        fresh = await store.get(task.task_id)
        assert fresh.payload["config"]["model"] == "gpt-4o"

    @pytest.mark.asyncio
    async def test_result_snapshot_is_isolated(self, store):
        task = await store.create("t", "o")
        await store.update(task.task_id, status=TaskStatus.RUNNING)
        result = {"images": [{"url": "a"}]}
        completed = await store.update(task.task_id, status=TaskStatus.COMPLETED, result=result)

        completed.result["images"].append({"url": "b"})
        result["images"][0]["url"] = "changed"
        for listed in await store.list_by_owner("o"):
            listed.result["images"].clear()

        fresh = await store.get(task.task_id)
        assert fresh.result == {"images": [{"url": "a"}]}

    @pytest.mark.asyncio
    async def test_get_nonexistent_task_returns_none(self, store):
        assert await store.get("missing") is None


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_merges_fields(self, store):
        task = await store.create("t", "o")
        before = task.updated_at

        await asyncio.sleep(0.001)
        updated = await store.update(task.task_id, status=TaskStatus.RUNNING, progress=20, progress_text="Working")

        assert updated.status == TaskStatus.RUNNING
        assert updated.progress == 20
        assert updated.progress_text == "Working"
        assert updated.updated_at > before

    @pytest.mark.asyncio
    async def test_update_missing_task_is_noop(self, store):
        assert await store.update("missing", progress=10) is None

    @pytest.mark.asyncio
    async def test_progress_is_clamped(self, store):
        task = await store.create("t", "o")

        assert (await store.update(task.task_id, progress=250)).progress == 100

        other = await store.create("t", "o")
        assert (await store.update(other.task_id, progress=-5)).progress == 0

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, store):
        task = await store.create("t", "o")
        await store.update(task.task_id, progress=60)

        updated = await store.update(task.task_id, progress=30, progress_text="Later step")

        assert updated.progress == 60
        assert updated.progress_text == "Later step"

    @pytest.mark.asyncio
    async def test_terminal_records_ignore_updates(self, store):
        task = await store.create("t", "o")
        await store.update(task.task_id, status=TaskStatus.RUNNING)
        await store.update(task.task_id, status=TaskStatus.COMPLETED, result={"ok": True})

        after = await store.update(task.task_id, status=TaskStatus.FAILED, error="late")

        assert after.status == TaskStatus.COMPLETED
        assert after.error is None
        assert after.result == {"ok": True}

    @pytest.mark.asyncio
    async def test_illegal_transition_raises(self, store):
        task = await store.create("t", "o")

        with pytest.raises(ValueError, match="Illegal transition"):
            await store.update(task.task_id, status=TaskStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_result_and_error_together_raise(self, store):
        task = await store.create("t", "o")

        with pytest.raises(ValueError):
            await store.update(task.task_id, result={}, error="boom")

    @pytest.mark.asyncio
    async def test_immutable_fields_cannot_be_updated(self, store):
        task = await store.create("t", "o")

        with pytest.raises(ValueError, match="Cannot update"):
            await store.update(task.task_id, task_id="other")

    @pytest.mark.asyncio
    async def test_task_id_keyword_is_rejected_as_field(self, store):
        task = await store.create("t", "o")

        with pytest.raises(ValueError, match=r"\['task_id'\]"):
            await store.update(task.task_id, task_id=task.task_id, progress=10)

        fresh = await store.get(task.task_id)
        assert fresh.progress == 0


class TestListByOwner:
    @pytest.mark.asyncio
    async def test_lists_only_owner_tasks_newest_first(self, store):
        first = await store.create("t", "project-a")
        await store.create("t", "project-b")
        second = await store.create("t", "project-a")
        third = await store.create("t", "project-a")

        tasks = await store.list_by_owner("project-a")

        assert [t.task_id for t in tasks] == [third.task_id, second.task_id, first.task_id]

    @pytest.mark.asyncio
    async def test_unknown_owner_returns_empty_list(self, store):
        assert await store.list_by_owner("nobody") == []


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending_task(self, store):
        task = await store.create("t", "o")

        assert await store.cancel(task.task_id) is True

        cancelled = await store.get(task.task_id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert cancelled.error is None
        assert cancelled.result is None

    @pytest.mark.asyncio
    async def test_cancel_running_task(self, store):
        task = await store.create("t", "o")
        await store.update(task.task_id, status=TaskStatus.RUNNING)

        assert await store.cancel(task.task_id) is True

    @pytest.mark.asyncio
    async def test_cancel_terminal_or_missing_task_fails(self, store):
        task = await store.create("t", "o")
        await store.update(task.task_id, status=TaskStatus.FAILED, error="x")

        assert await store.cancel(task.task_id) is False
        assert await store.cancel("missing") is False


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_removes_expired_terminal_tasks(self, store):
        old = await store.create("t", "o")
        fresh = await store.create("t", "o")
        running = await store.create("t", "o")
        await store.update(old.task_id, status=TaskStatus.FAILED, error="x",
                           completed_at=datetime.now() - timedelta(minutes=61))
        await store.update(fresh.task_id, status=TaskStatus.FAILED, error="y",
                           completed_at=datetime.now())
        await store.update(running.task_id, status=TaskStatus.RUNNING)

        stats = await store.sweep()

        assert stats == {"expired_tasks": 1, "remaining_tasks": 2}
        assert await store.get(old.task_id) is None
        assert await store.get(fresh.task_id) is not None
        assert await store.get(running.task_id) is not None

    @pytest.mark.asyncio
    async def test_sweeper_runs_periodically(self):
        store = TaskStore(retention_minutes=1)
        store.sweep_interval = timedelta(seconds=0.01)
        task = await store.create("t", "o")
        await store.update(task.task_id, status=TaskStatus.FAILED, error="x",
                           completed_at=datetime.now() - timedelta(minutes=5))

        store.start_sweeper()
        await asyncio.sleep(0.05)
        await store.stop_sweeper()

        assert await store.get(task.task_id) is None

    @pytest.mark.asyncio
    async def test_health_check(self, store):
        await store.create("t", "o")
        failed = await store.create("t", "o")
        await store.update(failed.task_id, status=TaskStatus.FAILED, error="x")

        health = await store.health_check()

        assert health["store"] == "healthy"
        assert health["total_tasks"] == 2
        assert health["status_breakdown"] == {"pending": 1, "failed": 1}
        assert health["sweeper_running"] is False


class TestGlobalStore:
    def setup_method(self):
        reset_store()

    def teardown_method(self):
        reset_store()

    def test_get_before_initialize_raises(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            get_task_store()

    def test_initialize_and_get(self):
        store = initialize_store(retention_minutes=5, sweep_interval_minutes=1)

        assert get_task_store() is store
        assert store.retention == timedelta(minutes=5)
