#tests\test_api.py

"""Test the HTTP API with test-local services injected."""

import os

import pytest
from fastapi.testclient import TestClient

from control_plane.api import dependencies
from control_plane.api.main import app
from control_plane.core.models import RunStatus
from control_plane.jobqueue.jobs import PROCESS_DEPLOYMENT


GITHUB_PUSH = {
    "after": "9f1c2d3e4b5a6978",
    "head_commit": {"message": "Fix footer links", "author": {"name": "Dana Smith"}},
}


@pytest.fixture
def client(target_repository, run_repository, deployment_service, queue_service):
    app.dependency_overrides[dependencies.get_target_repository] = lambda: target_repository
    app.dependency_overrides[dependencies.get_run_repository] = lambda: run_repository
    app.dependency_overrides[dependencies.get_deployment_service] = lambda: deployment_service
    app.dependency_overrides[dependencies.get_queue_service] = lambda: queue_service

    yield TestClient(app)

    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestWebhook:

    def test_valid_webhook_queues_deployment(self, client, target, db_queue):
        response = client.post(f"/webhook/{target.target_id}/s3cret-token", json=GITHUB_PUSH)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "queued"

        job = db_queue.get_job(body["job_id"])
        assert job.name == PROCESS_DEPLOYMENT.name
        assert job.data["payload"] == {
            "commit_hash": "9f1c2d3e4b5a6978",
            "commit_message": "Fix footer links",
            "author": "Dana Smith",
        }

    def test_webhook_without_body(self, client, target, db_queue):
        response = client.post(f"/webhook/{target.target_id}/s3cret-token")

        assert response.status_code == 202
        assert db_queue.pending_counts() == {"deployments": 1}

    def test_wrong_token(self, client, target, db_queue):
        response = client.post(f"/webhook/{target.target_id}/guess", json=GITHUB_PUSH)

        assert response.status_code == 403
        assert db_queue.pending_counts() == {}

    def test_unknown_target(self, client):
        response = client.post("/webhook/9999/anything", json=GITHUB_PUSH)

        assert response.status_code == 404
        assert response.json()["detail"] == "Webhook not found"

    def test_disabled_target(self, client, target, target_repository, db_queue):
        target.is_active = False
        target_repository.update(target)

        response = client.post(f"/webhook/{target.target_id}/s3cret-token", json=GITHUB_PUSH)

        assert response.status_code == 409
        assert db_queue.pending_counts() == {}


class TestDeployments:

    def test_manual_deploy(self, client, target, db_queue):
        response = client.post(f"/targets/{target.target_id}/deploy", json={"commit_hash": "abc1234"})

        assert response.status_code == 202
        job = db_queue.get_job(response.json()["job_id"])
        assert job.data["payload"]["commit_hash"] == "abc1234"

    def test_manual_deploy_allowed_for_disabled_target(self, client, target, target_repository):
        target.is_active = False
        target_repository.update(target)

        response = client.post(f"/targets/{target.target_id}/deploy")

        assert response.status_code == 202

    def test_manual_deploy_unknown_target(self, client):
        assert client.post("/targets/9999/deploy").status_code == 404

    def test_deployment_history(self, client, target, deployment_engine, runner):
        runner.on("git clone", effect=lambda command: os.makedirs(os.path.join(command[-1], ".git")))
        run = deployment_engine.deploy(target, {"commit_hash": "abc1234def"})

        response = client.get(f"/targets/{target.target_id}/deployments")

        assert response.status_code == 200
        history = response.json()
        assert len(history) == 1
        assert history[0]["run_id"] == run.run_id
        assert history[0]["status"] == RunStatus.COMPLETED.value
        assert history[0]["short_commit_hash"] == "abc1234"

        detail = client.get(f"/deployments/{run.run_id}").json()
        assert detail["output"].startswith("Cloning repository...")

    def test_unknown_deployment(self, client):
        assert client.get("/deployments/9999").status_code == 404

    def test_regenerate_ssh_key(self, client, target, credential_repository):
        response = client.post(f"/targets/{target.target_id}/ssh-key")

        assert response.status_code == 200
        body = response.json()
        assert body["public_key"].startswith("ssh-ed25519 ")
        assert body["key_type"] == "ed25519"
        assert "private_key" not in body
        assert credential_repository.get_for_target(target.target_id).public_key == body["public_key"]


class TestQueueEndpoints:

    @pytest.fixture
    def failed_uuid(self, db_queue, failed_store):
        db_queue.enqueue("deployments", PROCESS_DEPLOYMENT, {"target_id": 1})
        db_queue.fail(db_queue.lease("deployments"), RuntimeError("boom"))
        return failed_store.uuids()[0]

    def test_statistics(self, client, failed_uuid):
        response = client.get("/queue/statistics")

        assert response.status_code == 200
        assert response.json() == {
            "pending_jobs": 0,
            "failed_jobs": 1,
            "recent_failed": 1,
            "jobs_by_queue": {},
        }

    def test_failed_listing_and_details(self, client, failed_uuid):
        listing = client.get("/queue/failed").json()
        assert [item["uuid"] for item in listing] == [failed_uuid]
        assert listing[0]["display_name"] == "ProcessDeployment"

        assert client.get(f"/queue/failed/{failed_uuid}").status_code == 200
        assert client.get("/queue/failed/nope").status_code == 404

    def test_retry_failed_job(self, client, failed_uuid, db_queue):
        assert client.post(f"/queue/failed/{failed_uuid}/retry").status_code == 200
        assert client.post(f"/queue/failed/{failed_uuid}/retry").status_code == 404
        assert db_queue.pending_counts() == {"deployments": 1}

    def test_retry_all_and_clear(self, client, failed_uuid):
        assert client.post("/queue/failed/retry-all").json() == {"retried": 1}
        assert client.delete("/queue/failed").json() == {"cleared": 0}

    def test_delete_failed_job(self, client, failed_uuid):
        assert client.delete(f"/queue/failed/{failed_uuid}").status_code == 200
        assert client.delete(f"/queue/failed/{failed_uuid}").status_code == 404

    def test_pending_jobs(self, client, db_queue):
        job_id = db_queue.enqueue("default", PROCESS_DEPLOYMENT, {"target_id": 2})

        pending = client.get("/queue/pending").json()
        assert [job["id"] for job in pending] == [job_id]

        assert client.get(f"/queue/jobs/{job_id}").json()["display_name"] == "ProcessDeployment"
        assert client.delete(f"/queue/jobs/{job_id}").status_code == 200
        assert client.get(f"/queue/jobs/{job_id}").status_code == 404
