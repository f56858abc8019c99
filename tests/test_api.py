import pytest
from fastapi.testclient import TestClient

import replay_service
from fakes import storyboard_dict
from replay_service_lib.service_queue import ReplayQueue
from replay_service_lib.service_session import sessions

DEMO = storyboard_dict(
    [
        {"t": 0, "type": "navigate", "url": "https://app.example.com/"},
        {"t": 300, "type": "click", "target": {"selectors": ["#go", "button.go"]}},
    ]
)


@pytest.fixture
def client(monkeypatch):
    async def never_run(job):
        raise AssertionError("workers are not started in API tests")

    sessions.clear()
    monkeypatch.setattr(replay_service, "replay_queue", ReplayQueue(1, never_run, sessions.get))
    yield TestClient(replay_service.app)
    sessions.clear()


class TestStoryboardEndpoints:
    def test_root(self, client):
        body = client.get("/").json()
        assert body["ok"] is True
        assert body["service"] == "Replay Service"

    def test_validate_reports_errors_and_warnings(self, client):
        ok = client.post("/storyboards/validate", json=DEMO).json()
        assert ok == {"valid": True, "errors": [], "warnings": []}

        bad = client.post("/storyboards/validate", json={"timeline": [{"t": 1, "type": "jump"}]}).json()
        assert bad["valid"] is False
        assert bad["errors"] == ["Event 0: unknown type 'jump'"]
        assert "Missing version field" in bad["warnings"]

    def test_info(self, client):
        resp = client.post("/storyboards/info", json=DEMO)
        assert resp.status_code == 200
        assert resp.json()["events"] == 2
        assert resp.json()["eventTypes"] == {"navigate": 1, "click": 1}

    def test_info_rejects_malformed(self, client):
        resp = client.post("/storyboards/info", json={"meta": {}})
        assert resp.status_code == 400
        assert resp.json()["detail"]["errors"] == ["Missing timeline field"]


class TestReplayJobs:
    def test_submit_status_and_stop_queued_job(self, client):
        resp = client.post("/replays", json={"storyboard": DEMO, "speed": 2})
        assert resp.status_code == 200
        job = resp.json()
        assert job["state"] == "queued"
        assert job["queue_position"] == 1
        assert job["total_events"] == 2
        assert job["title"] == "Demo"

        status = client.get(f"/replays/{job['session_id']}").json()
        assert status["queue_position"] == 1

        stopped = client.post(f"/replays/{job['session_id']}/stop").json()
        assert stopped["state"] == "stopped"
        assert stopped["queue_position"] is None

    def test_malformed_timeline_is_400(self, client):
        resp = client.post("/replays", json={"storyboard": {"timeline": [{"t": -1, "type": "click"}]}})
        assert resp.status_code == 400
        assert sessions == {}

    def test_same_session_key_is_409_until_finished(self, client):
        body = {"storyboard": DEMO, "sessionKey": "demo-session"}
        first = client.post("/replays", json=body).json()
        assert client.post("/replays", json=body).status_code == 409

        client.post(f"/replays/{first['session_id']}/stop")
        assert client.post("/replays", json=body).status_code == 200

    def test_unknown_replay_is_404(self, client):
        assert client.get("/replays/nope").status_code == 404
        assert client.get("/replays/nope/logs").status_code == 404
        assert client.post("/replays/nope/stop").status_code == 404

    def test_logs(self, client):
        job = client.post("/replays", json={"storyboard": DEMO}).json()
        sessions[job["session_id"]].log_lines.extend(["one", "two", "three"])

        page = client.get(f"/replays/{job['session_id']}/logs", params={"offset": 1}).json()
        assert page == {"count": 2, "lines": ["two", "three"]}

        plain = client.get(f"/replays/{job['session_id']}/logs", params={"plain": True})
        assert plain.text == "one\ntwo\nthree"
        assert plain.headers["X-Log-Size"] == "3"
