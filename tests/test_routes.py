"""Tests for the HTTP surface (main.create_app + knowledge_graph/routes.py)."""

import time

import pytest
from fastapi.testclient import TestClient

from knowledge_graph.graph_store import InMemoryGraphStore
from main import create_app

ALICE = {"X-OWNER-ID": "alice"}
BOB = {"X-OWNER-ID": "bob"}

SEED = {
    "nodes": [{"id": "n1", "name": "n1"}, {"id": "n2", "name": "n2"}, {"id": "n3", "name": "n3"}],
    "edges": [{"source": "n1", "target": "n2"}, {"source": "n2", "target": "n3"}],
}


class BrokenProvider:
    async def generate_concepts(self, graph, count, context):
        raise RuntimeError("upstream unavailable")

    async def generate_connections(self, graph, count, context):
        return []


def wait_for_terminal(client, job_id, headers=ALICE, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/expansions/{job_id}", headers=headers).json()
        if body["status"] in ("completed", "partially_completed", "failed", "cancelled"):
            return body
        if time.monotonic() > deadline:
            pytest.fail(f"job {job_id} stuck in {body['status']}")
        time.sleep(0.01)


@pytest.fixture
def client(make_engine):
    engine = make_engine(graph_store=InMemoryGraphStore())
    engine.register_provider("broken", BrokenProvider())
    app = create_app(engine=engine, snapshot_path="")
    with TestClient(app) as test_client:
        yield test_client


def start(client, context_ref="ctx", headers=ALICE, **options):
    payload = {"context_ref": context_ref, "options": {"provider_id": "mock", **options}}
    return client.post("/expansions", json=payload, headers=headers)


def test_root_and_health(client):
    assert client.get("/").json()["service"] == "concept-graph-api"
    assert client.get("/health").json() == {"status": "healthy", "service": "concept-graph-api"}


def test_seed_graph_and_read_back(client):
    response = client.put("/graphs/ctx", json=SEED, headers=ALICE)
    assert response.status_code == 200
    assert response.json() == {"context_ref": "ctx", "nodes": 3, "edges": 2}

    graph = client.get("/graphs/ctx", headers=ALICE).json()
    assert [n["id"] for n in graph["nodes"]] == ["n1", "n2", "n3"]
    assert client.get("/graphs/ctx", headers=BOB).status_code == 404


def test_seed_graph_with_dangling_edge_is_rejected(client):
    bad = {"nodes": [{"id": "a", "name": "A"}], "edges": [{"source": "a", "target": "zzz"}]}
    assert client.put("/graphs/bad", json=bad, headers=ALICE).status_code == 400


def test_expansion_lifecycle(client):
    client.put("/graphs/ctx", json=SEED, headers=ALICE)

    response = start(client, depth=2, fanout_factor=1.5, max_new_per_node=3, max_total_new=10)
    assert response.status_code == 202
    job_id = response.json()["job_id"]

    status = wait_for_terminal(client, job_id)
    assert status["status"] == "completed"
    assert status["progress_percent"] == 100
    assert status["generated_node_count"] == 10

    results = client.get(f"/expansions/{job_id}/results", headers=ALICE)
    assert results.status_code == 200
    body = results.json()
    assert body["status"] == "completed"
    assert len(body["nodes"]) == 10
    assert body["insights"]

    cancel = client.post(f"/expansions/{job_id}/cancel", headers=ALICE)
    assert cancel.json() == {"job_id": job_id, "accepted": False}


def test_jobs_are_private_to_their_owner(client):
    client.put("/graphs/ctx", json=SEED, headers=ALICE)
    job_id = start(client, depth=1).json()["job_id"]

    assert client.get(f"/expansions/{job_id}", headers=BOB).status_code == 403
    assert client.get(f"/expansions/{job_id}/results", headers=BOB).status_code == 403
    assert client.post(f"/expansions/{job_id}/cancel", headers=BOB).status_code == 403
    assert client.get(f"/expansions/{job_id}").status_code == 422


def test_unknown_job_and_bad_requests(client):
    assert client.get("/expansions/does-not-exist", headers=ALICE).status_code == 404
    assert start(client, context_ref="missing").status_code == 400

    client.put("/graphs/ctx", json=SEED, headers=ALICE)
    assert start(client, depth=0).status_code == 400
    assert start(client, provider_id="nope").status_code == 400


def test_failed_job_has_no_results(client):
    client.put("/graphs/ctx", json=SEED, headers=ALICE)
    job_id = start(client, provider_id="broken").json()["job_id"]

    status = wait_for_terminal(client, job_id)
    assert status["status"] == "failed"
    assert "upstream unavailable" in status["error_message"]
    assert client.get(f"/expansions/{job_id}/results", headers=ALICE).status_code == 409


def test_memory_stats(client):
    stats = client.get("/expansions/memory").json()
    assert stats["last_sample"]["level"] == "normal"
    assert "embedding-cache" in stats["components"]


def test_start_rejected_under_memory_pressure(make_engine, make_governor):
    engine = make_engine(governor=make_governor(0.82), graph_store=InMemoryGraphStore())
    app = create_app(engine=engine, snapshot_path="")

    with TestClient(app) as client:
        client.put("/graphs/ctx", json=SEED, headers=ALICE)
        response = start(client)

    assert response.status_code == 503
    assert "82.0%" in response.json()["detail"]
    assert len(engine.jobs) == 0


def test_snapshot_saved_on_shutdown_and_loaded_on_startup(make_engine, tmp_path):
    path = tmp_path / "cache.json"

    first = make_engine(graph_store=InMemoryGraphStore())
    with TestClient(create_app(engine=first, snapshot_path=str(path))) as client:
        client.put("/graphs/ctx", json=SEED, headers=ALICE)
        job_id = start(client, depth=1).json()["job_id"]
        wait_for_terminal(client, job_id)
    assert path.exists()

    second = make_engine(graph_store=InMemoryGraphStore())
    with TestClient(create_app(engine=second, snapshot_path=str(path))):
        assert len(second.embedding_cache) == len(first.embedding_cache) > 0


def test_memory_monitoring_follows_app_lifecycle(make_engine):
    engine = make_engine(graph_store=InMemoryGraphStore())
    app = create_app(engine=engine, snapshot_path="", monitor_interval=60)

    with TestClient(app):
        assert engine.memory_governor.monitoring is True
    assert engine.memory_governor.monitoring is False
