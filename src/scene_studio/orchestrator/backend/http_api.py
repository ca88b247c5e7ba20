"""HTTP client for the hosted generation functions."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from scene_studio.config import ApiSettings
from scene_studio.orchestrator.errors import (
    MissingResultError,
    PermanentRequestError,
    TransientRemoteError,
)
from scene_studio.orchestrator.models import GenerationOutput, JobHandle, JobKind, PollResponse

logger = logging.getLogger(__name__)

VIDEO_ENDPOINT = "generate-video"

# (kind, entity_type) -> function name
ENDPOINTS: dict[tuple[JobKind, str], str] = {
    (JobKind.DESCRIPTION, "character"): "generate-character-description",
    (JobKind.DESCRIPTION, "location"): "generate-scene-description",
    (JobKind.PRIMARY_IMAGE, "character"): "generate-character",
    (JobKind.PRIMARY_IMAGE, "location"): "generate-scene",
    (JobKind.VARIANT_IMAGE, "costume"): "generate-character",
    (JobKind.STORYBOARD, "shot"): "generate-storyboard",
    (JobKind.VIDEO_JOB, "shot"): VIDEO_ENDPOINT,
}

IMAGE_FIELDS = ("imageUrl", "image_url", "url")


class HttpGenerationApi:
    """Calls ``{base_url}/functions/v1/<name>`` with JSON bodies.

    HTTP 4xx responses raise ``PermanentRequestError``; 5xx responses,
    transport errors and timeouts raise ``TransientRemoteError``. Both are
    retried the same way by the caller.
    """

    def __init__(
        self,
        settings: ApiSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
            headers["apikey"] = settings.api_key
        self._client = httpx.AsyncClient(
            base_url=settings.base_url.rstrip("/") + "/functions/v1/",
            headers=headers,
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def submit(self, kind: JobKind, payload: dict[str, Any]) -> GenerationOutput | JobHandle:
        entity_type = str(payload.get("entity_type", ""))
        endpoint = ENDPOINTS.get((kind, entity_type))
        if endpoint is None:
            raise PermanentRequestError(f"No endpoint for {kind.value} on {entity_type!r}")

        if kind == JobKind.VIDEO_JOB:
            data = await self._invoke(endpoint, {**payload, "action": "create"})
            task_id = data.get("task_id") or data.get("taskId")
            if not task_id:
                raise MissingResultError("Video submission returned no task_id")
            return JobHandle(external_id=str(task_id), provider_tag=data.get("provider"))

        data = await self._invoke(endpoint, payload)
        if kind == JobKind.DESCRIPTION:
            description = data.get("description")
            if not isinstance(description, str) or not description.strip():
                raise MissingResultError(f"{endpoint} returned no description")
            return GenerationOutput(value=description.strip(), raw=data)

        for name in IMAGE_FIELDS:
            value = data.get(name)
            if isinstance(value, str) and value:
                return GenerationOutput(value=value, raw=data)
        raise MissingResultError(f"{endpoint} returned no image URL")

    async def poll_status(self, handle: JobHandle) -> PollResponse:
        body: dict[str, Any] = {"action": "status", "taskId": handle.external_id}
        if handle.provider_tag:
            body["provider"] = handle.provider_tag
        # A terminal "failed" status carries its reason in `error`; the status decides.
        data = await self._invoke(VIDEO_ENDPOINT, body, error_field_fails=False)
        status = data.get("status")
        if not status and data.get("error"):
            raise TransientRemoteError(f"{VIDEO_ENDPOINT} reported: {data['error']}")
        return PollResponse(status=str(status or ""), payload=data)

    async def _invoke(
        self,
        endpoint: str,
        body: dict[str, Any],
        *,
        error_field_fails: bool = True,
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(endpoint, json=body)
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s", endpoint)
            raise TransientRemoteError(f"timeout calling {endpoint}") from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s: %s", endpoint, exc)
            raise TransientRemoteError(f"network error calling {endpoint}: {exc}") from exc

        data = _json_body(response)
        if response.is_client_error:
            raise PermanentRequestError(
                f"{response.status_code} from {endpoint}: {_error_text(data, response)}",
            )
        if not response.is_success:
            raise TransientRemoteError(
                f"{response.status_code} from {endpoint}: {_error_text(data, response)}",
            )
        if error_field_fails and data.get("error"):
            raise TransientRemoteError(f"{endpoint} reported: {data['error']}")
        return data

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpGenerationApi:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_text(data: dict[str, Any], response: httpx.Response) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    if isinstance(error, str) and error:
        return error
    return response.text[:200] or response.reason_phrase
