import pytest
from fastapi import status
from fastapi.testclient import TestClient

from mediajobs.main import app


@pytest.fixture
def client(lifecycle, queue):
    """Client against the app with test state; the lifespan is not run."""
    app.state.lifecycle = lifecycle
    app.state.queue = queue
    try:
        yield TestClient(app)
    finally:
        del app.state.lifecycle
        del app.state.queue


def transform_job(**input_overrides):
    input_payload = {
        "video_url": "https://cdn.example.com/source.mp4",
        "face_image_url": "https://cdn.example.com/face.png",
    }
    input_payload.update(input_overrides)
    return {"type": "media_transform", "reference_id": "character-7", "input_payload": input_payload}


def training_job():
    return {
        "type": "training",
        "input_payload": {"images_zip_url": "https://cdn.example.com/set.zip", "trigger_word": "ohwx"},
    }


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"]
        assert data["queue_depths"]["media-transform"] == 0

    def test_health_reports_queue_depth(self, client):
        """Created jobs show up in their partition's depth."""
        client.post("/api/jobs", json=transform_job())
        client.post("/api/jobs", json=training_job())

        depths = client.get("/health").json()["queue_depths"]
        assert depths["media-transform"] == 1
        assert depths["training"] == 1
        assert depths["frame-swap"] == 0


class TestCreateJob:
    def test_create_job_success(self, client):
        response = client.post("/api/jobs", json=transform_job(resolution="480p"))
        assert response.status_code == status.HTTP_201_CREATED

        data = response.json()
        assert data["type"] == "media_transform"
        assert data["status"] == "queued"
        assert data["progress"] == 0
        assert data["reference_id"] == "character-7"
        assert data["input_payload"]["resolution"] == "480p"
        assert data["input_payload"]["duration_seconds"] == 5.0
        assert data["cost_cents"] == 0

    def test_create_job_unknown_type(self, client):
        response = client.post("/api/jobs", json={"type": "upscale", "input_payload": {}})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_create_job_invalid_input(self, client):
        """Type-specific input is validated before anything is stored."""
        response = client.post("/api/jobs", json=transform_job(video_url="not-a-url"))
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["detail"][0]["loc"] == ["video_url"]

        assert client.get("/api/jobs").json()["count"] == 0

    def test_create_job_missing_field(self, client):
        response = client.post("/api/jobs", json={"type": "frame_swap", "input_payload": {"frame_urls": []}})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


class TestGetJob:
    def test_get_job(self, client):
        created = client.post("/api/jobs", json=training_job()).json()

        response = client.get(f"/api/jobs/{created['id']}")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["id"] == created["id"]
        assert data["input_payload"]["steps"] == 1000
        assert data["progress_log"] == []

    def test_get_job_not_found(self, client):
        response = client.get("/api/jobs/does-not-exist")
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestListJobs:
    def test_list_jobs(self, client):
        for _ in range(3):
            client.post("/api/jobs", json=transform_job())

        data = client.get("/api/jobs").json()
        assert data["count"] == 3
        assert len(data["jobs"]) == 3

    def test_list_jobs_filters(self, client):
        client.post("/api/jobs", json=transform_job())
        training = client.post("/api/jobs", json=training_job()).json()
        client.post(f"/api/jobs/{training['id']}/cancel")

        by_type = client.get("/api/jobs", params={"type": "training"}).json()
        assert [job["id"] for job in by_type["jobs"]] == [training["id"]]

        failed = client.get("/api/jobs", params={"status": "failed"}).json()
        assert [job["id"] for job in failed["jobs"]] == [training["id"]]

        queued = client.get("/api/jobs", params={"status": "queued", "type": "training"}).json()
        assert queued["count"] == 0

    def test_list_jobs_pagination(self, client):
        ids = {client.post("/api/jobs", json=transform_job()).json()["id"] for _ in range(5)}

        first = client.get("/api/jobs", params={"limit": 2}).json()
        second = client.get("/api/jobs", params={"limit": 2, "offset": 2}).json()
        rest = client.get("/api/jobs", params={"limit": 2, "offset": 4}).json()

        seen = [job["id"] for page in (first, second, rest) for job in page["jobs"]]
        assert [first["count"], second["count"], rest["count"]] == [2, 2, 1]
        assert set(seen) == ids

    def test_list_jobs_rejects_bad_filter(self, client):
        assert client.get("/api/jobs", params={"status": "paused"}).status_code == 422
        assert client.get("/api/jobs", params={"limit": 0}).status_code == 422


class TestCancelJob:
    def test_cancel_job(self, client):
        created = client.post("/api/jobs", json=transform_job()).json()

        response = client.post(f"/api/jobs/{created['id']}/cancel")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "failed"
        assert data["error_message"] == "cancelled"
        assert data["completed_at"] is not None

    def test_cancel_twice_conflicts(self, client):
        """A terminal job cannot be cancelled again."""
        created = client.post("/api/jobs", json=transform_job()).json()
        client.post(f"/api/jobs/{created['id']}/cancel")

        response = client.post(f"/api/jobs/{created['id']}/cancel")
        assert response.status_code == status.HTTP_409_CONFLICT

    def test_cancel_not_found(self, client):
        response = client.post("/api/jobs/does-not-exist/cancel")
        assert response.status_code == status.HTTP_404_NOT_FOUND
