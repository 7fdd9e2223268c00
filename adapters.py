"""
Field mapping between the client contract and the Cody LLM API.

All functions here are pure: they take parsed bodies and return new objects,
never touching the network. Malformed upstream bodies surface as ordinary
Python exceptions (KeyError, TypeError, pydantic.ValidationError) which the
caller treats as transport failures.
"""

import time
from typing import Any

from schemas import (
    ChatRequest,
    ChatResponse,
    Choice,
    ModelInfo,
    ModelList,
    ResponseMessage,
    UpstreamChatRequest,
)

PLACEHOLDER_RESPONSE_ID = "temp-id"
DEFAULT_FINISH_REASON = "stop"

MODEL_INFO_FIELDS = ("id", "object", "created", "owned_by")


def to_client_models(catalog: dict[str, Any]) -> ModelList:
    """Map an upstream model catalog to the client catalog.

    Only id, object, created and owned_by are kept from each entry; order is
    preserved.
    """
    return ModelList(
        data=[
            ModelInfo(**{name: entry.get(name) for name in MODEL_INFO_FIELDS})
            for entry in catalog["data"]
        ]
    )


def to_upstream_request(request: ChatRequest) -> UpstreamChatRequest:
    """Map a client chat request to the upstream request body.

    ``temperature`` and ``max_tokens`` are carried only when the client set
    them (0 counts as set). ``stream`` is carried only for streaming requests.
    """
    return UpstreamChatRequest(
        model=request.model,
        messages=request.messages,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
        stream=True if request.stream else None,
    )


def to_client_response(data: dict[str, Any], now: float | None = None) -> ChatResponse:
    """Map a complete upstream chat response to the client response."""
    if now is None:
        now = time.time()

    choices = []
    for index, choice in enumerate(data.get("choices") or []):
        message = choice.get("message") or {}
        choices.append(
            Choice(
                index=index,
                message=ResponseMessage(
                    role=message.get("role"),
                    content=message.get("content"),
                ),
                finish_reason=choice.get("finish_reason") or DEFAULT_FINISH_REASON,
            )
        )

    return ChatResponse(
        id=str(data.get("id") or PLACEHOLDER_RESPONSE_ID),
        created=data.get("created") or int(now),
        model=data.get("model"),
        usage=data.get("usage"),
        choices=choices,
    )
