"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from canvasflow.api import server


@pytest.fixture
def client(monkeypatch, engine_config, test_db, worker_registry, orchestrator):
    """Test client wired to a temporary database and the recording worker."""
    monkeypatch.setattr(server, "_config", engine_config)
    monkeypatch.setattr(server, "_db", test_db)
    monkeypatch.setattr(server, "_workers", worker_registry)
    monkeypatch.setattr(server, "_orchestrator", orchestrator)
    return TestClient(server.app)


def _graph_payload(**overrides):
    payload = {
        "id": "g1",
        "name": "Review flow",
        "nodes": [
            {"id": "A", "type": "worker", "position": {"x": 0, "y": 0}},
            {"id": "H", "type": "human_gate"},
            {"id": "B", "type": "worker"},
        ],
        "edges": [{"source": "A", "target": "H"}, {"source": "H", "target": "B"}],
    }
    payload.update(overrides)
    return payload


def _start(client, **body):
    body.setdefault("graph", _graph_payload())
    response = client.post("/runs", json=body)
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


# =============================================================================
# Compile
# =============================================================================


class TestCompileEndpoint:
    """Tests for POST /graphs/compile."""

    def test_compile_success(self, client):
        response = client.post("/graphs/compile", json=_graph_payload())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["execution_graph"]["entry_nodes"] == ["A"]
        assert "position" not in data["execution_graph"]["nodes"]["A"]

    def test_compile_errors_are_typed(self, client):
        payload = _graph_payload(
            edges=[{"source": "A", "target": "B"}, {"source": "B", "target": "A"}]
        )
        response = client.post("/graphs/compile", json=payload)

        assert response.status_code == 400
        errors = response.json()["detail"]["errors"]
        assert errors[0]["kind"] == "cycle"

    def test_malformed_body_is_bad_request(self, client):
        response = client.post("/graphs/compile", json={"id": "g1", "nodes": "nope"})
        assert response.status_code == 400


# =============================================================================
# Runs
# =============================================================================


class TestRunEndpoints:
    """Tests for run creation, lookup and deletion."""

    def test_start_run_fires_entry_nodes(self, client, recording_worker):
        run = _start(client, input={"topic": "cats"})

        assert run["node_states"]["A"]["status"] == "running"
        assert run["node_states"]["H"]["status"] == "pending"
        assert recording_worker.request_for("A").input == {"topic": "cats"}

    def test_start_run_from_saved_graph(self, client):
        first = _start(client)
        second = _start(client, graph=None, graph_id="g1")

        assert second["graph_id"] == "g1"
        assert second["id"] != first["id"]

    def test_start_run_unknown_graph_id(self, client):
        response = client.post("/runs", json={"graph_id": "missing"})
        assert response.status_code == 404

    def test_start_run_requires_graph(self, client):
        response = client.post("/runs", json={})
        assert response.status_code == 400

    def test_start_run_invalid_graph(self, client):
        payload = _graph_payload(edges=[{"source": "A", "target": "ghost"}])
        response = client.post("/runs", json={"graph": payload})

        assert response.status_code == 400
        assert response.json()["detail"]["errors"][0]["kind"] == "invalid_edge"

    def test_get_and_list_runs(self, client):
        run = _start(client)

        response = client.get(f"/runs/{run['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == run["id"]

        listed = client.get("/runs", params={"graph_id": "g1"}).json()
        assert [r["id"] for r in listed] == [run["id"]]
        assert client.get("/runs", params={"graph_id": "other"}).json() == []

    def test_get_missing_run(self, client):
        assert client.get("/runs/missing").status_code == 404

    def test_delete_run(self, client):
        run = _start(client)

        response = client.delete(f"/runs/{run['id']}")
        assert response.status_code == 200
        assert response.json() == {"status": "deleted", "id": run["id"]}
        assert client.delete(f"/runs/{run['id']}").status_code == 404


# =============================================================================
# Callbacks and Node Control
# =============================================================================


class TestCallbackEndpoint:
    """Tests for POST /callback/{run_id}/{node_id}."""

    def test_completed_callback_walks_graph(self, client):
        run = _start(client)

        response = client.post(
            f"/callback/{run['id']}/A", json={"status": "completed", "output": {"draft": "x"}}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["node_status"] == "completed"
        assert data["run"]["node_states"]["H"]["status"] == "waiting_for_user"

    def test_duplicate_callback_is_acknowledged(self, client):
        run = _start(client)
        body = {"status": "completed", "output": {"draft": "x"}}

        client.post(f"/callback/{run['id']}/A", json=body)
        response = client.post(f"/callback/{run['id']}/A", json=body)
        assert response.status_code == 200

    def test_contradictory_callback_conflicts(self, client):
        run = _start(client)
        client.post(f"/callback/{run['id']}/A", json={"status": "completed"})

        response = client.post(f"/callback/{run['id']}/A", json={"status": "failed"})
        assert response.status_code == 409

    def test_unknown_run_or_node(self, client):
        run = _start(client)
        assert client.post("/callback/missing/A", json={"status": "completed"}).status_code == 404
        assert (
            client.post(f"/callback/{run['id']}/ghost", json={"status": "completed"}).status_code
            == 404
        )

    def test_node_ids_with_url_characters(self, client, recording_worker):
        graph = _graph_payload(
            nodes=[{"id": "gen#1", "type": "worker"}, {"id": "review/final", "type": "human_gate"}],
            edges=[{"source": "gen#1", "target": "review/final"}],
        )
        run = _start(client, graph=graph)
        callback_url = recording_worker.request_for("gen#1").callback_url
        assert callback_url.endswith("/callback/" + run["id"] + "/gen%231")

        response = client.post(
            callback_url.removeprefix("http://engine.test"),
            json={"status": "completed", "output": {"draft": "x"}},
        )
        assert response.status_code == 200
        assert response.json()["run"]["node_states"]["review/final"]["status"] == "waiting_for_user"

        response = client.post(f"/runs/{run['id']}/nodes/review%2Ffinal/complete", json={})
        assert response.status_code == 200
        assert response.json()["node_states"]["review/final"]["status"] == "completed"

    def test_numeric_output_is_recorded(self, client):
        run = _start(client)

        response = client.post(f"/callback/{run['id']}/A", json={"status": "completed", "output": 42})

        assert response.status_code == 200
        assert client.get(f"/runs/{run['id']}").json()["node_states"]["A"]["output"] == 42

    def test_invalid_status_is_bad_request(self, client):
        run = _start(client)
        response = client.post(f"/callback/{run['id']}/A", json={"status": "done"})
        assert response.status_code == 400


class TestNodeControlEndpoints:
    """Tests for human gate completion and retry."""

    def test_complete_human_gate(self, client, recording_worker):
        run = _start(client)
        client.post(f"/callback/{run['id']}/A", json={"status": "completed", "output": {"d": 1}})

        response = client.post(
            f"/runs/{run['id']}/nodes/H/complete", json={"output": {"approved": True}}
        )

        assert response.status_code == 200
        states = response.json()["node_states"]
        assert states["H"]["status"] == "completed"
        assert states["B"]["status"] == "running"
        assert recording_worker.request_for("B").input == {"approved": True}

    def test_complete_gate_that_is_not_waiting(self, client):
        run = _start(client)
        response = client.post(f"/runs/{run['id']}/nodes/H/complete", json={})
        assert response.status_code == 409

    def test_complete_non_gate(self, client):
        run = _start(client)
        response = client.post(f"/runs/{run['id']}/nodes/A/complete", json={})
        assert response.status_code == 400

    def test_retry_failed_node(self, client, recording_worker):
        run = _start(client)
        client.post(f"/callback/{run['id']}/A", json={"status": "failed", "error": "quota"})

        response = client.post(f"/runs/{run['id']}/nodes/A/retry")

        assert response.status_code == 200
        assert response.json()["node_states"]["A"]["status"] == "running"
        assert recording_worker.fired == ["A", "A"]

    def test_retry_node_that_has_not_failed(self, client):
        run = _start(client)
        response = client.post(f"/runs/{run['id']}/nodes/A/retry")
        assert response.status_code == 409
