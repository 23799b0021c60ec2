from fastapi.testclient import TestClient

from run_orchestrator.api.main import create_app
from run_orchestrator.config.settings import Settings
from run_orchestrator.queue.name_generation import RUN_NAME_GENERATION_QUEUE
from run_orchestrator.queue.run_process import RUN_PROCESS_QUEUE
from run_orchestrator.storage.memory import InMemoryRunQueue, InMemoryRunStore


def _client(settings: Settings, store: InMemoryRunStore, queue: InMemoryRunQueue) -> TestClient:
    return TestClient(create_app(storage=store, queue=queue, settings_override=settings))


def test_health(settings: Settings, store: InMemoryRunStore) -> None:
    response = _client(settings, store, InMemoryRunQueue()).get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "run-orchestrator"}


def test_create_run_stores_prompt_and_enqueues_work(
    settings: Settings, store: InMemoryRunStore
) -> None:
    queue = InMemoryRunQueue()
    client = _client(settings, store, queue)

    response = client.post(
        "/clusters/cluster-1/runs",
        json={"initialPrompt": "echo hello", "attachedFunctions": ["echo"], "tags": {"a": "b"}},
    )

    assert response.status_code == 200
    run = response.json()
    assert run["status"] == "pending"
    assert run["attached_functions"] == ["echo"]
    assert store.get_run_tags("cluster-1", run["id"]) == {"a": "b"}

    [process] = queue.pending(RUN_PROCESS_QUEUE)
    assert process["body"] == {"runId": run["id"], "clusterId": "cluster-1", "lockAttempts": 0}
    [naming] = queue.pending(RUN_NAME_GENERATION_QUEUE)
    assert naming["body"]["content"] == "echo hello"

    messages = client.get(f"/clusters/cluster-1/runs/{run['id']}/messages").json()
    assert [(m["type"], m["data"]["message"]) for m in messages] == [("human", "echo hello")]


def test_named_runs_skip_name_generation(settings: Settings, store: InMemoryRunStore) -> None:
    queue = InMemoryRunQueue()
    client = _client(settings, store, queue)

    client.post("/clusters/cluster-1/runs", json={"initialPrompt": "hi", "name": "Greeting"})

    assert queue.pending(RUN_NAME_GENERATION_QUEUE) == []


def test_create_run_validates_the_prompt(settings: Settings, store: InMemoryRunStore) -> None:
    response = _client(settings, store, InMemoryRunQueue()).post(
        "/clusters/cluster-1/runs", json={"initialPrompt": ""}
    )

    assert response.status_code == 422


def test_process_requeues_existing_runs(settings: Settings, store: InMemoryRunStore) -> None:
    queue = InMemoryRunQueue()
    client = _client(settings, store, queue)
    run_id = client.post("/clusters/cluster-1/runs", json={"initialPrompt": "hi"}).json()["id"]

    response = client.post(f"/clusters/cluster-1/runs/{run_id}/process")

    assert response.json() == {"status": "queued", "runId": run_id}
    assert len(queue.pending(RUN_PROCESS_QUEUE)) == 2


def test_unknown_runs_are_404(settings: Settings, store: InMemoryRunStore) -> None:
    client = _client(settings, store, InMemoryRunQueue())

    assert client.get("/clusters/cluster-1/runs/missing").status_code == 404
    assert client.get("/clusters/cluster-1/runs/missing/messages").status_code == 404
    assert client.post("/clusters/cluster-1/runs/missing/process").status_code == 404


def test_job_result_resumes_the_waiting_run(settings: Settings, store: InMemoryRunStore) -> None:
    queue = InMemoryRunQueue()
    client = _client(settings, store, queue)
    job = store.create_job(
        cluster_id="cluster-1",
        target_fn="echo",
        target_args={"text": "hi"},
        run_id="run-1",
        tool_call_id="call-1",
    )

    response = client.post(
        f"/clusters/cluster-1/jobs/{job.id}/result",
        json={"result": {"text": "hi"}, "resultType": "resolution"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert [entry["body"]["runId"] for entry in queue.pending(RUN_PROCESS_QUEUE)] == ["run-1"]


def test_unknown_job_result_is_404(settings: Settings, store: InMemoryRunStore) -> None:
    client = _client(settings, store, InMemoryRunQueue())

    response = client.post("/clusters/cluster-1/jobs/missing/result", json={"result": "x"})

    assert response.status_code == 404
