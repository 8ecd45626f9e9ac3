"""Tests for the HTTP API, error mapping and webhook acknowledgement."""

import hashlib
import hmac
import json

import pytest
from httpx import AsyncClient

from media_pipeline.state import Event, MediaKind, SubmissionStatus


def script_ready(container, output_id, kind=MediaKind.AUDIO):
    container.store.transition_output(kind, output_id, Event.START_SCRIPT)
    container.store.transition_output(kind, output_id, Event.SCRIPT_DONE, script="A reviewed script.")


async def create_submission(client, outputs=("audio",)):
    response = await client.post(
        "/submissions",
        json={
            "article": {"organizationId": "org-1", "title": "Water on a moon", "content": "Water was found."},
            "outputs": list(outputs),
        },
    )
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio(loop_scope="function")
async def test_health_and_root(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert (await client.get("/")).json()["health"] == "/health"


@pytest.mark.asyncio(loop_scope="function")
async def test_create_article_then_submission(client: AsyncClient):
    article = await client.post(
        "/articles", json={"organizationId": "org-1", "title": "T", "content": "Body"}
    )
    assert article.status_code == 201

    response = await client.post(
        "/submissions", json={"articleId": article.json()["id"], "outputs": ["audio", "quiz"]}
    )
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "PENDING"
    assert [o["kind"] for o in data["outputs"]] == ["audio", "quiz"]
    assert all(o["jobId"] for o in data["outputs"])


@pytest.mark.asyncio(loop_scope="function")
@pytest.mark.parametrize("body", [
    {"outputs": ["audio"]},
    {"articleId": "a", "article": {"organizationId": "o", "title": "t", "content": "c"}, "outputs": ["audio"]},
])
async def test_submission_needs_exactly_one_article_source(client: AsyncClient, body):
    response = await client.post("/submissions", json=body)
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "BAD_REQUEST"


@pytest.mark.asyncio(loop_scope="function")
async def test_submission_validation(client: AsyncClient):
    response = await client.post("/submissions", json={"articleId": "a", "outputs": []})
    assert response.status_code == 422
    response = await client.post("/submissions", json={"articleId": "a", "outputs": ["hologram"]})
    assert response.status_code == 422


@pytest.mark.asyncio(loop_scope="function")
async def test_unknown_article_is_404(client: AsyncClient):
    response = await client.post("/submissions", json={"articleId": "missing", "outputs": ["audio"]})
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio(loop_scope="function")
async def test_get_submission_and_output(client: AsyncClient):
    created = await create_submission(client)
    output_id = created["outputs"][0]["id"]

    submission = (await client.get(f"/submissions/{created['id']}")).json()
    assert submission["outputs"][0]["id"] == output_id
    assert submission["outputs"][0]["status"] == "PENDING"

    output = await client.get(f"/outputs/audio/{output_id}")
    assert output.status_code == 200
    assert output.json()["kind"] == "audio"

    missing = await client.get("/outputs/audio/nope")
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio(loop_scope="function")
async def test_update_script_requires_review_state(client: AsyncClient, container):
    created = await create_submission(client)
    output_id = created["outputs"][0]["id"]

    response = await client.patch(f"/outputs/audio/{output_id}/script", json={"script": "Edited."})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "CONFLICT"

    script_ready(container, output_id)
    response = await client.patch(f"/outputs/audio/{output_id}/script", json={"script": "Edited."})
    assert response.status_code == 200
    assert response.json()["script"] == "Edited."


@pytest.mark.asyncio(loop_scope="function")
async def test_generate_media_before_script_is_rejected(client: AsyncClient):
    created = await create_submission(client)
    output_id = created["outputs"][0]["id"]

    response = await client.post(f"/outputs/audio/{output_id}/generate-media")

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "INVALID_TRANSITION"
    assert detail["status"] == "PENDING"
    assert detail["event"] == "START_MEDIA"


@pytest.mark.asyncio(loop_scope="function")
async def test_generate_media_enqueues_job(client: AsyncClient, container):
    created = await create_submission(client)
    output_id = created["outputs"][0]["id"]
    script_ready(container, output_id)

    response = await client.post(
        f"/outputs/audio/{output_id}/generate-media", json={"customization": {"voiceId": "v-2"}}
    )

    assert response.status_code == 202
    job = await client.get(f"/jobs/{response.json()['jobId']}")
    assert job.status_code == 200
    assert job.json()["state"] == "pending"
    assert job.json()["job_type"] == "generate-media"


@pytest.mark.asyncio(loop_scope="function")
async def test_regenerate(client: AsyncClient, container):
    created = await create_submission(client)
    output_id = created["outputs"][0]["id"]

    response = await client.post(f"/outputs/audio/{output_id}/regenerate", json={})
    assert response.status_code == 409

    script_ready(container, output_id)
    container.store.transition_output(MediaKind.AUDIO, output_id, Event.START_MEDIA)
    container.store.transition_output(MediaKind.AUDIO, output_id, Event.FAIL, error="tts down")

    response = await client.post(f"/outputs/audio/{output_id}/regenerate", json={"script": "Fresh take."})
    assert response.status_code == 202
    output = (await client.get(f"/outputs/audio/{output_id}")).json()
    assert output["status"] == "SCRIPT_READY"
    assert output["script"] == "Fresh take."
    assert output["error"] is None


@pytest.mark.asyncio(loop_scope="function")
async def test_jobs_get_and_delete(client: AsyncClient):
    created = await create_submission(client)
    job_id = created["outputs"][0]["jobId"]

    assert (await client.get("/jobs/nope")).status_code == 404
    assert (await client.delete("/jobs/nope")).status_code == 404

    response = await client.delete(f"/jobs/{job_id}")
    assert response.json() == {"status": "deleted", "id": job_id}
    assert (await client.get(f"/jobs/{job_id}")).status_code == 404


@pytest.mark.asyncio(loop_scope="function")
async def test_render_webhook_is_acknowledged(client: AsyncClient):
    response = await client.post(
        "/webhooks/render",
        json={"event_type": "avatar_video.success", "event_data": {"video_id": "unknown", "url": "https://x"}},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "handled": False}
    assert response.headers["access-control-allow-origin"] == "*"


@pytest.mark.asyncio(loop_scope="function")
async def test_webhook_invalid_json_still_returns_200(client: AsyncClient):
    response = await client.post(
        "/webhooks/captions", content=b"not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 200
    assert response.json()["success"] is False


@pytest.mark.asyncio(loop_scope="function")
async def test_webhook_options(client: AsyncClient):
    for path in ("/webhooks/render", "/webhooks/captions"):
        response = await client.options(path)
        assert response.status_code == 200
        assert response.headers["access-control-allow-methods"] == "POST, OPTIONS"


@pytest.mark.asyncio(loop_scope="function")
async def test_render_webhook_signature(client: AsyncClient, container):
    container.config.providers.render_webhook_secret = "shh"
    body = json.dumps({"event_type": "avatar_video.success", "event_data": {"video_id": "r"}}).encode()

    rejected = await client.post("/webhooks/render", content=body, headers={"signature": "bad"})
    assert rejected.status_code == 401

    signature = hmac.new(b"shh", body, hashlib.sha256).hexdigest()
    accepted = await client.post("/webhooks/render", content=body, headers={"signature": signature})
    assert accepted.status_code == 200


@pytest.mark.asyncio(loop_scope="function")
async def test_submission_events_end_at_terminal_status(client: AsyncClient, container):
    created = await create_submission(client)
    container.store.set_submission_status(created["id"], SubmissionStatus.FAILED)

    response = await client.get(f"/submissions/{created['id']}/events")

    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.text == 'data: {"status": "FAILED"}\n\n'


@pytest.mark.asyncio(loop_scope="function")
async def test_submission_events_unknown_submission(client: AsyncClient):
    response = await client.get("/submissions/nope/events")
    assert response.text == 'data: {"error": "not_found"}\n\n'


def test_importing_the_api_builds_no_app():
    from media_pipeline.api import main

    assert not hasattr(main, "app")
    assert callable(main.create_app)
