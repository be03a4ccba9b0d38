from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from config import Settings
from conftest import PAST, FakeGraph, SleepRecorder
from errors import ConfigError, ContainerError, RemoteAPIError
from models import DONE, RemoteArtifact
from publisher import PublishWorkflow
from server import create_app
from storage import MemoryStorage, Storage
from worker import RunResult, Worker


@pytest.fixture
def memory_store(clock):
    return MemoryStorage(clock=clock)


@pytest.fixture
def workflow():
    wf = Mock()
    wf.publish.return_value = "17890"
    return wf


@pytest.fixture
def client(memory_store, workflow):
    app = create_app(store=memory_store, worker=Worker(memory_store, workflow), cron_key="s3cret")
    return TestClient(app)


class TestSchedule:
    def test_enqueue_then_duplicate(self, client):
        body = {"image_url": "http://x/a.jpg", "caption": "hi", "publish_at": "2030-01-01T00:00:00Z"}

        first = client.post("/schedule", json=body)
        second = client.post("/schedule", json=body)

        assert first.status_code == 201
        assert first.json()["queued"] is True
        assert second.status_code == 200
        assert second.json() == {"ok": True, "queued": False, "duplicate": True, "key": first.json()["key"]}

    def test_camel_case_aliases(self, client, memory_store):
        response = client.post("/schedule", json={
            "imageUrl": "http://x/a.jpg", "caption": "hi", "publishAt": "2030-02-01T00:00:00Z",
        })
        assert response.status_code == 201
        job = memory_store.get(response.json()["key"])
        assert job.artifact_ref == "http://x/a.jpg"

    @pytest.mark.parametrize("body", [
        {"caption": "hi", "publish_at": "2030-01-01T00:00:00Z"},
        {"image_url": "http://x/a.jpg", "publish_at": "2030-01-01T00:00:00Z"},
        {"image_url": "http://x/a.jpg", "caption": "hi", "publish_at": "soon"},
    ])
    def test_invalid_body_is_400(self, client, body):
        response = client.post("/schedule", json=body)
        assert response.status_code == 400
        assert response.json()["ok"] is False


class TestRun:
    def test_requires_cron_key(self, client):
        assert client.post("/schedule/run").status_code == 401
        assert client.post("/schedule/run", headers={"X-CRON-KEY": "wrong"}).status_code == 401

    def test_runs_tick(self, client, memory_store):
        key = memory_store.enqueue("http://x/a.jpg", "hi", PAST).key

        response = client.post("/schedule/run", headers={"X-CRON-KEY": "s3cret"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "processed": 1, "published": 1, "failed": 0, "running": False}
        assert memory_store.get(key).status == DONE

    def test_active_run_reports_202(self, memory_store):
        worker = Mock()
        worker.run.return_value = RunResult(running=True)
        client = TestClient(create_app(store=memory_store, worker=worker, cron_key="k"))

        response = client.post("/schedule/run", headers={"X-CRON-KEY": "k"})

        assert response.status_code == 202
        assert response.json() == {"ok": True, "running": True}


class TestJobs:
    def test_list_and_detail(self, client, memory_store):
        key = memory_store.enqueue("http://x/a.jpg", "hi", PAST).key

        listing = client.get("/schedule/jobs").json()["jobs"]
        assert [j["key"] for j in listing] == [key]

        detail = client.get(f"/schedule/jobs/{key}")
        assert detail.status_code == 200
        assert detail.json()["status"] == "queued"

        assert client.get("/schedule/jobs/nope").status_code == 404

    def test_metrics_and_health(self, client, memory_store):
        memory_store.enqueue("http://x/a.jpg", "hi", PAST)
        assert client.get("/metrics/json").json()["queued"] == 1
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/schedule/ping").json() == {"status": "schedule ok"}

    def test_home_page(self, client, memory_store):
        memory_store.enqueue("http://x/<a>.jpg", "hi", PAST)
        page = client.get("/")
        assert page.status_code == 200
        assert "http://x/&lt;a&gt;.jpg" in page.text


class TestImmediatePublish:
    def test_publishes_and_returns_ids(self, client, workflow):
        workflow.create_container.return_value = RemoteArtifact(creation_id="c1")
        workflow.finalize.return_value = "m1"

        response = client.post("/posts/create", headers={"X-CRON-KEY": "s3cret"},
                               json={"image_url": "http://x/a.jpg", "caption": "hi"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "media_id": "m1", "creation_id": "c1"}
        workflow.create_container.assert_called_once_with("http://x/a.jpg", "hi")
        workflow.wait_until_ready.assert_called_once()

    def test_full_workflow_against_fake_graph(self, memory_store, clock):
        graph = FakeGraph(statuses=["IN_PROGRESS", "FINISHED"])
        workflow = PublishWorkflow(graph, sleep=SleepRecorder(), clock=clock)
        client = TestClient(create_app(store=memory_store, worker=Worker(memory_store, workflow)))

        response = client.post("/posts/create", json={"imageUrl": "http://x/a.jpg"})

        assert response.json() == {"ok": True, "media_id": "m-c1", "creation_id": "c1"}
        assert graph.status_calls == 2
        assert memory_store.list_jobs() == []

    def test_requires_cron_key(self, client, workflow):
        response = client.post("/posts/create", json={"image_url": "http://x/a.jpg"})
        assert response.status_code == 401
        workflow.create_container.assert_not_called()

    @pytest.mark.parametrize("body", [{}, {"image_url": "  ", "caption": "hi"}])
    def test_missing_image_url(self, client, body):
        response = client.post("/posts/create", headers={"X-CRON-KEY": "s3cret"}, json=body)
        assert response.status_code == 400
        assert response.json() == {"ok": False, "error": "missing_image_url"}

    def test_remote_status_passed_through(self, client, workflow):
        workflow.create_container.return_value = RemoteArtifact(creation_id="c1")
        workflow.finalize.side_effect = RemoteAPIError(400, "Media ID is not available",
                                                       code=9007, subcode=2207027)

        response = client.post("/posts/create", headers={"X-CRON-KEY": "s3cret"},
                               json={"image_url": "http://x/a.jpg"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "publish_failed"
        assert body["details"] == {"message": "Media ID is not available", "code": 9007,
                                   "subcode": 2207027, "creation_id": "c1"}

    def test_container_failure_is_500(self, client, workflow):
        workflow.create_container.return_value = RemoteArtifact(creation_id="c1")
        workflow.wait_until_ready.side_effect = ContainerError("container c1 failed: ERROR")

        response = client.post("/posts/create", headers={"X-CRON-KEY": "s3cret"},
                               json={"image_url": "http://x/a.jpg"})

        assert response.status_code == 500
        assert response.json()["details"]["message"] == "container c1 failed: ERROR"
        workflow.finalize.assert_not_called()


class TestInstagramPing:
    def test_returns_profile(self, client, workflow):
        workflow.client.get_profile.return_value = {"id": "1784", "username": "acme"}

        response = client.get("/instagram/ping")

        assert response.status_code == 200
        assert response.json() == {"ok": True, "profile": {"id": "1784", "username": "acme"}}

    def test_remote_error_is_500(self, client, workflow):
        workflow.client.get_profile.side_effect = RemoteAPIError(401, "Invalid OAuth access token", code=190)

        response = client.get("/instagram/ping")

        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "Instagram API error"}

    def test_other_pings(self, client):
        assert client.get("/posts/ping").json()["ok"] is True
        assert client.get("/ads/ping").json() == {"status": "ads ok"}


class TestCreateApp:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ("IG_USER_ID", "IG_ACCESS_TOKEN", "CRON_KEY", "QUEUE_DB", "GRAPH_API_BASE"):
            monkeypatch.delenv(name, raising=False)

    def test_passed_settings_are_kept(self, tmp_path):
        path = str(tmp_path / "queue.db")
        Storage(path).set_config("batch_size", "3")
        settings = Settings(db_path=path, ig_user_id="1784", ig_access_token="tok",
                            cron_key="s3cret", max_polls=7)

        app = create_app(settings=settings)
        worker = app.state.worker

        assert worker.workflow.client.user_id == "1784"
        assert worker.workflow.max_polls == 7
        assert worker.batch_size == 3
        assert TestClient(app).post("/schedule/run").status_code == 401
        worker.workflow.client.close()

    def test_missing_credentials_fail_fast(self):
        with pytest.raises(ConfigError, match="IG_USER_ID and IG_ACCESS_TOKEN"):
            create_app(store=MemoryStorage(), settings=Settings())

    def test_explicit_worker_needs_no_credentials(self, memory_store):
        app = create_app(store=memory_store, worker=Mock(), settings=Settings())
        assert TestClient(app).get("/health").status_code == 200
