"""Tests for job scheduling and the sync worker loop."""

import asyncio

import pytest

from app.services.jobs.scheduler import (
    JobCreationError,
    check_job_completion,
    create_sync_job,
    resolve_resource_types,
)
from app.services.jobs.worker import (
    MAX_TASKS_REACHED,
    NO_TASKS,
    SHUTDOWN_DURING_TASK,
    SHUTDOWN_REQUESTED,
    TIMEOUT,
    HeartbeatTimer,
    _process_task,
    run_worker,
)
from app.services.sync.canonical import NormalizedEntity


class TestScheduler:

    @pytest.mark.asyncio
    async def test_job_gets_one_task_per_resource(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])

        assert job["total_tasks"] == 2
        assert job["status"] == "pending"
        tasks = await store.get_job_tasks(job["job_id"])
        assert [t["resource_type"] for t in tasks] == ["customer", "product"]
        assert all(t["status"] == "pending" for t in tasks)

    def test_child_resources_and_duplicates_are_dropped(self, registry, fake_app):
        types = resolve_resource_types(registry, fake_app, ["product", "line_item", "product"])
        assert types == ["product"]

    def test_only_child_resources_is_an_error(self, registry, fake_app):
        with pytest.raises(JobCreationError, match="No resources to sync"):
            resolve_resource_types(registry, fake_app, ["line_item"])

    def test_unknown_resource_type_is_an_error(self, registry, fake_app):
        with pytest.raises(JobCreationError, match="invoice"):
            resolve_resource_types(registry, fake_app, ["customer", "invoice"])

    def test_defaults_to_every_schedulable_resource(self, registry, fake_app):
        assert resolve_resource_types(registry, fake_app) == ["customer", "product"]

    def test_sync_resources_config_narrows_the_default(self, registry, fake_app):
        fake_app.config["sync_resources"] = ["product"]
        assert resolve_resource_types(registry, fake_app) == ["product"]

    @pytest.mark.asyncio
    async def test_invalid_mode_is_rejected(self, store, registry, fake_app):
        with pytest.raises(JobCreationError, match="Invalid mode"):
            await create_sync_job(store, registry, fake_app, "delta")

    @pytest.mark.asyncio
    async def test_completion_waits_for_open_tasks(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])
        first = await store.claim_task(job["job_id"])
        await store.update_task_status(first["id"], "completed")

        assert await check_job_completion(store, job["job_id"]) is None

        second = await store.claim_task(job["job_id"])
        await store.update_task_status(second["id"], "failed", error_message="boom")

        assert await check_job_completion(store, job["job_id"]) == "failed"
        # Already terminal: a second settle changes nothing
        assert await check_job_completion(store, job["job_id"]) is None


class TestConcurrentWorkers:

    @pytest.mark.asyncio
    async def test_two_workers_split_a_two_task_job(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])
        job_id = job["job_id"]

        # Worker A claims customer; worker B races for the same task and loses
        candidate = await store.next_pending_task(job_id)
        task_a = await store.try_claim_task(candidate["id"])
        assert task_a["resource_type"] == "customer"
        assert await store.try_claim_task(candidate["id"]) is None

        # Worker B takes product instead
        task_b = await store.claim_task(job_id)
        assert task_b["resource_type"] == "product"

        outcomes = await asyncio.gather(
            _process_task(store, registry, task_a, 5.0, lambda: False),
            _process_task(store, registry, task_b, 5.0, lambda: False),
        )
        assert outcomes == ["completed", "completed"]

        assert await check_job_completion(store, job_id) == "completed"
        finished = await store.get_job(job_id)
        assert finished["status"] == "completed"
        assert finished["completed_tasks"] == 2
        assert finished["failed_tasks"] == 0
        assert finished["processed_entities"] == 4


@pytest.mark.usefixtures("fast_worker")
class TestRunWorker:

    @pytest.mark.asyncio
    async def test_drains_job_and_completes_it(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])

        result = await run_worker(store, registry, job_id=job["job_id"])

        assert result.tasks_processed == 2
        assert result.jobs_completed == [job["job_id"]]
        assert result.shutdown_reason == NO_TASKS
        assert (await store.get_job(job["job_id"]))["status"] == "completed"
        assert await store.get_entity("fake_app", "fake_customer", "c3") is not None

    @pytest.mark.asyncio
    async def test_max_tasks(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])

        result = await run_worker(store, registry, job_id=job["job_id"], max_tasks=1)

        assert result.tasks_processed == 1
        assert result.shutdown_reason == MAX_TASKS_REACHED
        assert (await store.count_open_tasks(job["job_id"]))["pending"] == 1

    @pytest.mark.asyncio
    async def test_shutdown_before_first_claim_flags_continuation(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        await store.mark_worker_spawned(job["job_id"])
        shutdown = asyncio.Event()
        shutdown.set()

        result = await run_worker(store, registry, job_id=job["job_id"], shutdown=shutdown)

        assert result.tasks_processed == 0
        assert result.shutdown_reason == SHUTDOWN_REQUESTED
        assert (await store.get_job(job["job_id"]))["needs_worker"] is True

    @pytest.mark.asyncio
    async def test_exhausted_budget_stops_before_claiming(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])

        result = await run_worker(store, registry, job_id=job["job_id"], max_runtime_ms=0)

        assert result.shutdown_reason == TIMEOUT
        assert (await store.count_open_tasks(job["job_id"]))["pending"] == 1

    @pytest.mark.asyncio
    async def test_unscoped_worker_stopping_between_tasks_flags_the_job(self, store, registry, fake_app, monkeypatch):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])
        await store.mark_worker_spawned(job["job_id"])
        shutdown = asyncio.Event()
        increment = store.increment_job_counters

        async def increment_then_shutdown(*args, **kwargs):
            await increment(*args, **kwargs)
            shutdown.set()

        monkeypatch.setattr(store, "increment_job_counters", increment_then_shutdown)

        result = await run_worker(store, registry, job_id=None, shutdown=shutdown)

        assert result.shutdown_reason == SHUTDOWN_REQUESTED
        assert result.tasks_processed == 1
        stopped = await store.get_job(job["job_id"])
        assert stopped["status"] == "processing"
        assert stopped["needs_worker"] is True
        assert (await store.count_open_tasks(job["job_id"]))["pending"] == 1

    @pytest.mark.asyncio
    async def test_unscoped_worker_out_of_budget_flags_every_job_with_pending_work(self, store, registry, fake_app):
        first = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        second = await create_sync_job(store, registry, fake_app, "full", ["product"])
        for job in (first, second):
            await store.mark_worker_spawned(job["job_id"])

        result = await run_worker(store, registry, max_runtime_ms=0)

        assert result.shutdown_reason == TIMEOUT
        flagged = {j["id"] for j in await store.get_jobs_needing_worker()}
        assert flagged == {first["job_id"], second["job_id"]}

    @pytest.mark.asyncio
    async def test_max_tasks_flags_the_rest_of_the_job(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])
        await store.mark_worker_spawned(job["job_id"])

        await run_worker(store, registry, job_id=job["job_id"], max_tasks=1)

        assert (await store.get_job(job["job_id"]))["needs_worker"] is True

    @pytest.mark.asyncio
    async def test_interrupted_task_is_released_and_resumed(self, store, registry, fake_app, fake_connector):
        fake_connector.page_size = 1
        await store.upsert_entities([NormalizedEntity("c_gone", "fake_app", "fake_customer", {"id": "c_gone"})])
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        shutdown = asyncio.Event()
        fake_connector.after_page = shutdown.set

        first = await run_worker(store, registry, job_id=job["job_id"], shutdown=shutdown)

        assert first.shutdown_reason == SHUTDOWN_DURING_TASK
        assert first.tasks_processed == 0
        (task,) = await store.get_job_tasks(job["job_id"])
        assert task["status"] == "pending"
        assert task["cursor"] == "1"
        assert (await store.get_job(job["job_id"]))["needs_worker"] is True

        fake_connector.after_page = None
        second = await run_worker(store, registry, job_id=job["job_id"])

        assert second.jobs_completed == [job["job_id"]]
        assert fake_connector.calls[-1]["cursor"] == "1"
        # Resumed listing: no deletion diff, no sync state
        assert await store.get_entity("fake_app", "fake_customer", "c_gone") is not None
        assert await store.get_sync_state("fake_app", "fake_customer") is None

    @pytest.mark.asyncio
    async def test_task_exception_fails_task_and_worker_continues(self, store, registry, fake_app, fake_connector):
        fake_connector.exploding_resources.add("customer")
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])

        result = await run_worker(store, registry, job_id=job["job_id"])

        assert result.tasks_processed == 2
        tasks = {t["resource_type"]: t for t in await store.get_job_tasks(job["job_id"])}
        assert tasks["customer"]["status"] == "failed"
        assert "listing exploded" in tasks["customer"]["error_message"]
        assert tasks["product"]["status"] == "completed"
        finished = await store.get_job(job["job_id"])
        assert finished["status"] == "failed"
        assert finished["failed_tasks"] == 1

    @pytest.mark.asyncio
    async def test_tasks_of_a_cancelled_job_are_failed(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        task = await store.claim_task(job["job_id"])
        await store.cancel_job(job["job_id"])

        outcome = await _process_task(store, registry, task, 5.0, lambda: False)

        assert outcome == "failed"
        (row,) = await store.get_job_tasks(job["job_id"])
        assert row["error_message"] == "Job is cancelled"

    @pytest.mark.asyncio
    async def test_stale_tasks_are_reclaimed_on_start(self, store, supabase, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        await store.claim_task(job["job_id"])
        for row in supabase.rows("sync_job_tasks"):
            row["last_heartbeat"] = "2000-01-01T00:00:00+00:00"

        result = await run_worker(store, registry, job_id=job["job_id"])

        assert result.tasks_processed == 1
        assert result.jobs_completed == [job["job_id"]]

    @pytest.mark.asyncio
    async def test_claim_errors_are_retried(self, store, registry, fake_app, monkeypatch):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        original = store.next_pending_task
        calls = {"n": 0}

        async def flaky(job_id=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("connection reset")
            return await original(job_id)

        monkeypatch.setattr(store, "next_pending_task", flaky)

        result = await run_worker(store, registry, job_id=job["job_id"])

        assert result.tasks_processed == 1
        assert calls["n"] >= 2


class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_heartbeat_persists_progress(self, store, registry, fake_app):
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        task = await store.claim_task(job["job_id"])

        heartbeat = HeartbeatTimer(store, task["id"], interval=0.01)
        heartbeat.start()
        heartbeat.update(cursor="abc", entity_count=7)
        await asyncio.sleep(0.05)
        await heartbeat.stop()

        assert heartbeat.beats >= 1
        (row,) = await store.get_job_tasks(job["job_id"])
        assert row["cursor"] == "abc"
        assert row["entity_count"] == 7

    @pytest.mark.asyncio
    async def test_failed_beat_is_logged_not_raised(self, store, supabase):
        supabase.fail_tables["sync_job_tasks"] = "timeout"
        heartbeat = HeartbeatTimer(store, "task-1", interval=5.0)

        await heartbeat.beat()

        assert heartbeat.beats == 0


class TestDispatcher:

    @pytest.mark.asyncio
    async def test_flagged_jobs_get_a_worker(self, store, registry, fake_app, monkeypatch):
        from app.services.jobs import tasks

        sent = []
        monkeypatch.setattr(tasks.run_sync_worker_task, "send", lambda job_id: sent.append(job_id))
        flagged = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        spawned = await create_sync_job(store, registry, fake_app, "full", ["product"])
        await store.mark_worker_spawned(spawned["job_id"])

        count = await tasks._dispatch(store)

        assert count == 1
        assert sent == [flagged["job_id"]]
        assert (await store.get_job(flagged["job_id"]))["needs_worker"] is False

    @pytest.mark.asyncio
    async def test_stale_task_of_unflagged_job_gets_a_worker(self, store, supabase, registry, fake_app, monkeypatch):
        from app.services.jobs import tasks

        sent = []
        monkeypatch.setattr(tasks.run_sync_worker_task, "send", lambda job_id: sent.append(job_id))
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        await store.mark_worker_spawned(job["job_id"])
        await store.claim_task(job["job_id"])
        await store.mark_job_processing(job["job_id"])
        # Worker killed mid-task: heartbeat stops
        for row in supabase.rows("sync_job_tasks"):
            row["last_heartbeat"] = "2000-01-01T00:00:00+00:00"

        count = await tasks._dispatch(store)

        assert count == 1
        assert sent == [job["job_id"]]
        (task,) = await store.get_job_tasks(job["job_id"])
        assert task["status"] == "pending"

    @pytest.mark.asyncio
    async def test_pending_work_nobody_runs_gets_a_worker(self, store, supabase, registry, fake_app, monkeypatch):
        from app.services.jobs import tasks

        sent = []
        monkeypatch.setattr(tasks.run_sync_worker_task, "send", lambda job_id: sent.append(job_id))
        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])
        await store.mark_worker_spawned(job["job_id"])
        first = await store.claim_task(job["job_id"])
        await store.mark_job_processing(job["job_id"])
        await store.update_task_status(first["id"], "completed")
        # Worker died between tasks, long ago
        for row in supabase.rows("sync_jobs"):
            row["worker_spawned_at"] = "2000-01-01T00:00:00+00:00"

        assert await tasks._dispatch(store) == 1
        assert sent == [job["job_id"]]

    @pytest.mark.asyncio
    async def test_recently_spawned_worker_is_not_duplicated(self, store, registry, fake_app, monkeypatch):
        from app.services.jobs import tasks

        sent = []
        monkeypatch.setattr(tasks.run_sync_worker_task, "send", lambda job_id: sent.append(job_id))
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        await store.mark_worker_spawned(job["job_id"])

        assert await tasks._dispatch(store) == 0
        assert sent == []


class TestSpawnWorker:

    @pytest.mark.asyncio
    async def test_flag_raised_by_the_new_worker_survives(self, store, supabase, registry, fake_app, monkeypatch):
        from app.services.jobs import tasks

        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])

        def send(job_id):
            # The continuation worker flags the job before spawn_worker returns
            for row in supabase.rows("sync_jobs"):
                if row["id"] == job_id:
                    row["needs_worker"] = True

        monkeypatch.setattr(tasks.run_sync_worker_task, "send", send)

        await tasks.spawn_worker(store, job["job_id"])

        spawned = await store.get_job(job["job_id"])
        assert spawned["needs_worker"] is True
        assert spawned["worker_spawned_at"] is not None

    @pytest.mark.asyncio
    async def test_failed_send_reflags_the_job(self, store, registry, fake_app, monkeypatch):
        from app.services.jobs import tasks

        def broken_send(*args):
            raise ConnectionError("redis down")

        monkeypatch.setattr(tasks.run_sync_worker_task, "send", broken_send)
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])

        with pytest.raises(ConnectionError):
            await tasks.spawn_worker(store, job["job_id"])

        assert (await store.get_job(job["job_id"]))["needs_worker"] is True


@pytest.mark.usefixtures("fast_worker")
class TestDramatiqWorker:

    @pytest.fixture
    def dramatiq_shutdown(self):
        from app.services.jobs.broker import shutdown_signal

        shutdown_signal.event.clear()
        yield shutdown_signal
        shutdown_signal.event.clear()

    @pytest.fixture
    def sent(self, monkeypatch):
        from app.services.jobs import tasks

        sent = []
        monkeypatch.setattr(tasks.run_sync_worker_task, "send", lambda *args: sent.append(args))
        return sent

    @pytest.mark.asyncio
    async def test_worker_shutdown_releases_task_in_flight(
        self, store, registry, fake_app, fake_connector, dramatiq_shutdown, sent
    ):
        from app.services.jobs import tasks

        fake_connector.page_size = 1
        fake_connector.after_page = lambda: dramatiq_shutdown.before_worker_shutdown(None, None)
        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])
        await store.mark_worker_spawned(job["job_id"])

        result = await tasks._run_worker_with_cleanup(store, registry, job["job_id"], None)

        assert result.shutdown_reason == SHUTDOWN_DURING_TASK
        (task,) = await store.get_job_tasks(job["job_id"])
        assert task["status"] == "pending"
        assert task["cursor"] == "1"
        # Flag left for the dispatcher, no re-enqueue from a stopping worker
        assert (await store.get_job(job["job_id"]))["needs_worker"] is True
        assert sent == []

    @pytest.mark.asyncio
    async def test_unfinished_job_chains_a_continuation(self, store, registry, fake_app, dramatiq_shutdown, sent):
        from app.services.jobs import tasks

        job = await create_sync_job(store, registry, fake_app, "full", ["customer", "product"])
        await store.mark_worker_spawned(job["job_id"])

        result = await tasks._run_worker_with_cleanup(store, registry, job["job_id"], 1)

        assert result.shutdown_reason == MAX_TASKS_REACHED
        assert sent == [(job["job_id"], 1)]
        assert (await store.get_job(job["job_id"]))["needs_worker"] is False

    @pytest.mark.asyncio
    async def test_finished_job_is_not_chained(self, store, registry, fake_app, dramatiq_shutdown, sent):
        from app.services.jobs import tasks

        job = await create_sync_job(store, registry, fake_app, "full", ["customer"])

        result = await tasks._run_worker_with_cleanup(store, registry, job["job_id"], None)

        assert result.jobs_completed == [job["job_id"]]
        assert sent == []
