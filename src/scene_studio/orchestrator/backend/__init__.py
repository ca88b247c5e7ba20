"""Remote generation backends."""

from scene_studio.orchestrator.backend.base import (
    PassThroughPayloadBuilder,
    PayloadBuilder,
    RemoteGenerationApi,
)
from scene_studio.orchestrator.backend.echo_api import EchoGenerationApi, EchoScript
from scene_studio.orchestrator.backend.http_api import HttpGenerationApi

__all__ = [
    "EchoGenerationApi",
    "EchoScript",
    "HttpGenerationApi",
    "PassThroughPayloadBuilder",
    "PayloadBuilder",
    "RemoteGenerationApi",
]
