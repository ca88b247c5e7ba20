"""Remote generation interfaces consumed by the orchestrator."""

from __future__ import annotations

from typing import Any, Protocol

from scene_studio.orchestrator.entities import Character, Costume, Entity
from scene_studio.orchestrator.models import GenerationOutput, JobHandle, JobKind, PollResponse


class RemoteGenerationApi(Protocol):
    """Protocol implemented by generation backends."""

    async def submit(self, kind: JobKind, payload: dict[str, Any]) -> GenerationOutput | JobHandle:
        """Run a synchronous kind to completion or accept an asynchronous one."""

    async def poll_status(self, handle: JobHandle) -> PollResponse:
        """Return the current remote status of an accepted job."""


class PayloadBuilder(Protocol):
    """Builds the request body for one job."""

    def build(
        self,
        kind: JobKind,
        entity: Entity,
        costume: Costume | None = None,
    ) -> dict[str, Any]:
        """Return the JSON payload sent to the remote API."""


class PassThroughPayloadBuilder:
    """Sends entity fields as-is, tagged with identity and job kind.

    Prompt assembly lives outside this package; any real deployment plugs a
    richer builder in through ``PayloadBuilder``.
    """

    def build(
        self,
        kind: JobKind,
        entity: Entity,
        costume: Costume | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            **entity.to_dict(),
            "entity_id": entity.id,
            "entity_type": entity.entity_type,
            "kind": kind.value,
        }
        if costume is not None and isinstance(entity, Character):
            payload.pop("costumes", None)
            payload.update(
                {
                    "entity_id": costume.id,
                    "entity_type": costume.entity_type,
                    "character_id": entity.id,
                    "reference_image_url": entity.image_url,
                    "costume": costume.to_dict(),
                },
            )
        return payload
