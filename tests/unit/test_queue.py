from types import SimpleNamespace
from typing import Any

import pytest

from run_orchestrator.config.settings import Settings
from run_orchestrator.errors import ModelProviderError
from run_orchestrator.models.mock import MockModel
from run_orchestrator.queue.name_generation import (
    RUN_NAME_GENERATION_QUEUE,
    RunNameGenerationMessage,
    handle_run_name_generation_message,
)
from run_orchestrator.queue import run_process as run_process_module
from run_orchestrator.queue.run_process import (
    RUN_PROCESS_QUEUE,
    RunProcessMessage,
    enqueue_run_process,
    handle_run_process_message,
    process_lock_key,
)
from run_orchestrator.queue.worker import QueueBinding, QueueWorker
from run_orchestrator.runs.context import build_context
from run_orchestrator.runs.messages import human
from run_orchestrator.storage.memory import InMemoryRunLock, InMemoryRunQueue, InMemoryRunStore
from run_orchestrator.storage.models import RunRecord


class RejectingModel:
    identifier = "rejecting"
    context_window = None

    def __init__(self) -> None:
        self.calls = 0

    def structured(self, **kwargs: Any) -> Any:
        self.calls += 1
        raise ModelProviderError("bad request", status_code=400)


def _ctx(settings: Settings, store: InMemoryRunStore, model: Any = None):
    factory = SimpleNamespace(build=lambda identifier, **kwargs: model or MockModel([]))
    return build_context(
        settings,
        storage=store,
        lock=InMemoryRunLock(),
        queue=InMemoryRunQueue(clock=lambda: 0.0),
        model_factory=factory,
    )


def _create_run(store: InMemoryRunStore, **overrides: Any) -> RunRecord:
    run = store.create_run(RunRecord(id="run-1", cluster_id="cluster-1", **overrides))
    store.insert_run_message("cluster-1", "run-1", human("hello"))
    return run


def test_message_body_uses_wire_names() -> None:
    message = RunProcessMessage(run_id="run-1", cluster_id="cluster-1")

    assert message.to_body() == {"runId": "run-1", "clusterId": "cluster-1", "lockAttempts": 0}
    assert RunProcessMessage.model_validate({"runId": "r", "clusterId": "c"}).lock_attempts == 0


def test_handler_processes_the_run_and_releases_the_lock(
    settings: Settings, store: InMemoryRunStore
) -> None:
    ctx = _ctx(settings, store, MockModel([{"done": True, "message": "hi"}]))
    _create_run(store)

    handle_run_process_message(RunProcessMessage(run_id="run-1", cluster_id="cluster-1"), ctx)

    assert store.get_run("cluster-1", "run-1").status == "done"
    assert not ctx.lock.is_held(process_lock_key("run-1"))


def test_busy_lock_requeues_with_exponential_delay(
    settings: Settings, store: InMemoryRunStore
) -> None:
    ctx = _ctx(settings, store)
    _create_run(store)
    ctx.lock.try_acquire(process_lock_key("run-1"))

    handle_run_process_message(
        RunProcessMessage(run_id="run-1", cluster_id="cluster-1", lock_attempts=2), ctx
    )

    [entry] = ctx.queue.pending(RUN_PROCESS_QUEUE)
    assert entry["delay_s"] == 25.0
    assert entry["body"]["lockAttempts"] == 3
    assert store.get_run("cluster-1", "run-1").status == "pending"


def test_busy_lock_gives_up_after_max_attempts(
    settings: Settings, store: InMemoryRunStore
) -> None:
    ctx = _ctx(settings, store)
    _create_run(store)
    ctx.lock.try_acquire(process_lock_key("run-1"))

    handle_run_process_message(
        RunProcessMessage(
            run_id="run-1",
            cluster_id="cluster-1",
            lock_attempts=settings.max_process_lock_attempts,
        ),
        ctx,
    )

    assert ctx.queue.pending(RUN_PROCESS_QUEUE) == []


def test_unknown_run_is_dropped(settings: Settings, store: InMemoryRunStore) -> None:
    ctx = _ctx(settings, store)

    handle_run_process_message(RunProcessMessage(run_id="missing", cluster_id="cluster-1"), ctx)

    assert not ctx.lock.is_held(process_lock_key("missing"))


def test_name_generation_sets_the_run_name(settings: Settings, store: InMemoryRunStore) -> None:
    ctx = _ctx(settings, store, MockModel([{"summary": "Greeting from a user"}]))
    _create_run(store)

    name = handle_run_name_generation_message(
        RunNameGenerationMessage(run_id="run-1", cluster_id="cluster-1", content="hello"), ctx
    )

    assert name == "Greeting from a user"
    assert store.get_run("cluster-1", "run-1").name == "Greeting from a user"


def test_name_generation_keeps_existing_names(settings: Settings, store: InMemoryRunStore) -> None:
    model = MockModel([])
    ctx = _ctx(settings, store, model)
    _create_run(store, name="Existing")

    name = handle_run_name_generation_message(
        RunNameGenerationMessage(run_id="run-1", cluster_id="cluster-1", content="hello"), ctx
    )

    assert name == "Existing"
    assert model.calls == []


def test_worker_dispatches_queued_runs(settings: Settings, store: InMemoryRunStore) -> None:
    ctx = _ctx(settings, store, MockModel([{"done": True, "message": "hi"}]))
    _create_run(store)
    enqueue_run_process(ctx, run_id="run-1", cluster_id="cluster-1")

    received = QueueWorker(ctx, concurrency=2).poll_once()

    assert received == 1
    assert ctx.queue.pending(RUN_PROCESS_QUEUE) == []
    assert store.get_run("cluster-1", "run-1").status == "done"


def test_worker_acks_malformed_messages(settings: Settings, store: InMemoryRunStore) -> None:
    ctx = _ctx(settings, store)
    ctx.queue.send(RUN_NAME_GENERATION_QUEUE, {"runId": "run-1"})

    QueueWorker(ctx).poll_once()

    assert ctx.queue.pending(RUN_NAME_GENERATION_QUEUE) == []


def test_worker_releases_messages_when_the_handler_fails(
    settings: Settings, store: InMemoryRunStore
) -> None:
    def explode(message: Any, ctx: Any) -> None:
        raise RuntimeError("boom")

    ctx = _ctx(settings, store)
    ctx.queue.send("custom", {"runId": "run-1", "clusterId": "cluster-1"})
    worker = QueueWorker(ctx, bindings=[QueueBinding("custom", RunProcessMessage, explode)])

    worker.poll_once()

    [entry] = ctx.queue.pending("custom")
    assert entry["in_flight"] is False


def test_run_forever_sleeps_when_idle_and_stops(settings: Settings, store: InMemoryRunStore) -> None:
    ctx = _ctx(settings, store)
    sleeps: list[float] = []
    worker = QueueWorker(ctx, poll_interval_s=0.5)

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        worker.stop()

    worker.sleep = sleep
    worker.run_forever()

    assert sleeps == [0.5]


def test_handler_releases_the_lock_when_the_run_fails(
    settings: Settings, store: InMemoryRunStore
) -> None:
    ctx = _ctx(settings, store, RejectingModel())
    _create_run(store)

    handle_run_process_message(RunProcessMessage(run_id="run-1", cluster_id="cluster-1"), ctx)

    run = store.get_run("cluster-1", "run-1")
    assert run.status == "failed"
    assert run.failure_reason == "bad request"
    assert not ctx.lock.is_held(process_lock_key("run-1"))


def test_unrecorded_errors_propagate_and_release_the_lock(
    settings: Settings, store: InMemoryRunStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    def crash(run: Any, ctx: Any, **kwargs: Any) -> None:
        raise ConnectionError("database went away")

    monkeypatch.setattr(run_process_module, "process_run", crash)
    ctx = _ctx(settings, store)
    _create_run(store)

    with pytest.raises(ConnectionError, match="database went away"):
        handle_run_process_message(
            RunProcessMessage(run_id="run-1", cluster_id="cluster-1"), ctx
        )

    assert not ctx.lock.is_held(process_lock_key("run-1"))
    assert store.get_run("cluster-1", "run-1").status == "pending"


@pytest.mark.parametrize("status", ["done", "failed"])
def test_finished_runs_are_skipped(
    settings: Settings, store: InMemoryRunStore, status: str
) -> None:
    model = MockModel([])
    ctx = _ctx(settings, store, model)
    _create_run(store, status=status)

    handle_run_process_message(RunProcessMessage(run_id="run-1", cluster_id="cluster-1"), ctx)

    assert model.calls == []
    assert store.get_run("cluster-1", "run-1").status == status


def test_worker_does_not_redeliver_failed_runs(
    settings: Settings, store: InMemoryRunStore
) -> None:
    model = RejectingModel()
    ctx = _ctx(settings, store, model)
    _create_run(store)
    enqueue_run_process(ctx, run_id="run-1", cluster_id="cluster-1")
    worker = QueueWorker(ctx)

    for _ in range(3):
        worker.poll_once()

    assert model.calls == 1
    assert store.get_run("cluster-1", "run-1").status == "failed"
    assert ctx.queue.pending(RUN_PROCESS_QUEUE) == []
