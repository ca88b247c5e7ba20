"""Tests for the hosted-function HTTP backend."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import allure
import httpx
import pytest

from conftest import instant_sleep
from scene_studio.config import ApiSettings
from scene_studio.orchestrator.backend import HttpGenerationApi, PassThroughPayloadBuilder
from scene_studio.orchestrator.entities import Character, Costume, Location, Shot
from scene_studio.orchestrator.entity_store import InMemoryEntityStore
from scene_studio.orchestrator.errors import (
    MissingResultError,
    PermanentRequestError,
    TransientRemoteError,
)
from scene_studio.orchestrator.models import GenerationOutput, JobHandle, JobKind, VideoStatus
from scene_studio.orchestrator.notifications import CollectingNotificationSink
from scene_studio.orchestrator.poller import AsyncJobPoller, PollOutcomeKind

pytestmark = [
    allure.epic("Generation Engine"),
    allure.feature("Remote Generation API"),
]

SETTINGS = ApiSettings(base_url="https://example.test/", api_key="secret-key")


class Recorder:
    def __init__(self, responder) -> None:
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


def _call(recorder: Recorder, fn):
    async def scenario():
        async with HttpGenerationApi(SETTINGS, transport=httpx.MockTransport(recorder)) as api:
            return await fn(api)

    return asyncio.run(scenario())


def test_description_posts_to_function_with_auth_headers() -> None:
    recorder = Recorder(lambda _request: httpx.Response(200, json={"description": " A tall man "}))
    payload = PassThroughPayloadBuilder().build(JobKind.DESCRIPTION, Character(id="c1", name="Ivo"))

    output = _call(recorder, lambda api: api.submit(JobKind.DESCRIPTION, payload))

    request = recorder.requests[0]
    assert output == GenerationOutput(value="A tall man", raw={"description": " A tall man "})
    assert str(request.url) == (
        "https://example.test/functions/v1/generate-character-description"
    )
    assert request.headers["Authorization"] == "Bearer secret-key"
    assert request.headers["apikey"] == "secret-key"
    assert recorder.body()["name"] == "Ivo"


@pytest.mark.parametrize(
    ("kind", "entity", "endpoint"),
    [
        (JobKind.DESCRIPTION, Location(id="l1", name="Harbor"), "generate-scene-description"),
        (JobKind.PRIMARY_IMAGE, Character(id="c1", name="Ivo"), "generate-character"),
        (JobKind.PRIMARY_IMAGE, Location(id="l1", name="Harbor"), "generate-scene"),
        (JobKind.STORYBOARD, Shot(id="s1", shot_number=1), "generate-storyboard"),
    ],
)
def test_endpoint_routing(kind: JobKind, entity, endpoint: str) -> None:
    recorder = Recorder(
        lambda _request: httpx.Response(
            200,
            json={"description": "text", "imageUrl": "https://cdn/img.png"},
        ),
    )
    payload = PassThroughPayloadBuilder().build(kind, entity)

    _call(recorder, lambda api: api.submit(kind, payload))

    assert recorder.requests[0].url.path == f"/functions/v1/{endpoint}"


def test_costume_variant_carries_character_reference() -> None:
    recorder = Recorder(lambda _request: httpx.Response(200, json={"image_url": "https://cdn/v"}))
    costume = Costume(id="c1-coat", label="Winter coat")
    character = Character(
        id="c1",
        name="Ivo",
        image_url="https://cdn/ivo.png",
        costumes=(costume,),
    )
    payload = PassThroughPayloadBuilder().build(JobKind.VARIANT_IMAGE, character, costume)

    output = _call(recorder, lambda api: api.submit(JobKind.VARIANT_IMAGE, payload))

    body = recorder.body()
    assert output.value == "https://cdn/v"
    assert recorder.requests[0].url.path == "/functions/v1/generate-character"
    assert body["entity_id"] == "c1-coat"
    assert body["character_id"] == "c1"
    assert body["reference_image_url"] == "https://cdn/ivo.png"
    assert "costumes" not in body


def test_video_submission_returns_handle() -> None:
    recorder = Recorder(
        lambda _request: httpx.Response(200, json={"taskId": "t-42", "provider": "runway"}),
    )
    payload = PassThroughPayloadBuilder().build(JobKind.VIDEO_JOB, Shot(id="s1", shot_number=1))

    handle = _call(recorder, lambda api: api.submit(JobKind.VIDEO_JOB, payload))

    assert handle == JobHandle(external_id="t-42", provider_tag="runway")
    assert recorder.body()["action"] == "create"


def test_poll_status_sends_handle_and_returns_payload() -> None:
    recorder = Recorder(
        lambda _request: httpx.Response(200, json={"status": "completed", "video_url": "v.mp4"}),
    )

    response = _call(
        recorder,
        lambda api: api.poll_status(JobHandle(external_id="t-42", provider_tag="runway")),
    )

    assert response.status == "completed"
    assert response.payload["video_url"] == "v.mp4"
    assert recorder.body() == {"action": "status", "taskId": "t-42", "provider": "runway"}


@pytest.mark.parametrize(
    ("response", "error"),
    [
        (httpx.Response(400, json={"error": "prompt too long"}), PermanentRequestError),
        (httpx.Response(401, text="unauthorized"), PermanentRequestError),
        (httpx.Response(503, text="overloaded"), TransientRemoteError),
        (httpx.Response(200, json={"error": "quota exceeded"}), TransientRemoteError),
        (httpx.Response(200, json={"status": "ok"}), MissingResultError),
    ],
)
def test_error_mapping(response: httpx.Response, error: type[Exception]) -> None:
    recorder = Recorder(lambda _request: response)
    payload = PassThroughPayloadBuilder().build(JobKind.STORYBOARD, Shot(id="s1", shot_number=1))

    with pytest.raises(error):
        _call(recorder, lambda api: api.submit(JobKind.STORYBOARD, payload))


def test_transport_failure_is_transient() -> None:
    def responder(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    payload = PassThroughPayloadBuilder().build(JobKind.STORYBOARD, Shot(id="s1", shot_number=1))

    with pytest.raises(TransientRemoteError, match="network error"):
        _call(Recorder(responder), lambda api: api.submit(JobKind.STORYBOARD, payload))


def test_video_submission_without_task_id_is_missing_result() -> None:
    recorder = Recorder(lambda _request: httpx.Response(200, json={"provider": "runway"}))
    payload = PassThroughPayloadBuilder().build(JobKind.VIDEO_JOB, Shot(id="s1", shot_number=1))

    with pytest.raises(MissingResultError):
        _call(recorder, lambda api: api.submit(JobKind.VIDEO_JOB, payload))


def test_unknown_entity_type_is_rejected() -> None:
    recorder = Recorder(lambda _request: httpx.Response(200, json={}))

    with pytest.raises(PermanentRequestError, match="No endpoint"):
        _call(
            recorder,
            lambda api: api.submit(JobKind.STORYBOARD, {"entity_id": "x", "entity_type": "prop"}),
        )
    assert recorder.requests == []


def test_failed_poll_with_error_object_ends_polling_as_failed() -> None:
    recorder = Recorder(
        lambda _request: httpx.Response(
            200,
            json={"status": "failed", "error": {"message": "content policy"}},
        ),
    )
    store = InMemoryEntityStore(
        shots=[
            Shot(
                id="s1",
                shot_number=1,
                video_task_id="t-42",
                video_status=VideoStatus.PROCESSING,
            ),
        ],
    )
    sink = CollectingNotificationSink()

    outcome = _call(
        recorder,
        lambda api: AsyncJobPoller(api, store, sink, max_attempts=5, sleep=instant_sleep).poll(
            "s1",
            JobHandle(external_id="t-42"),
        ),
    )

    assert outcome.kind == PollOutcomeKind.FAILED
    assert outcome.attempts == 1
    assert outcome.error == "content policy"
    assert len(recorder.requests) == 1
    assert store.get("s1").video_status == VideoStatus.FAILED
    assert store.get("s1").video_error == "content policy"


def test_poll_error_without_status_is_transient() -> None:
    recorder = Recorder(lambda _request: httpx.Response(200, json={"error": "task lookup failed"}))

    with pytest.raises(TransientRemoteError, match="task lookup failed"):
        _call(recorder, lambda api: api.poll_status(JobHandle(external_id="t-42")))
