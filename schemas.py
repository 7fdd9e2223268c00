"""
Wire shapes for both sides of the bridge.

Client-facing models describe what callers send and receive. Upstream models
describe what the Cody LLM API expects. Optional upstream fields use ``None``
to mean "absent" and are dropped on serialization, so a legitimate zero
survives while an unset field never reaches the wire.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Messages
# =============================================================================


class ChatMessage(BaseModel):
    """A chat message as sent by the client, forwarded without changes."""

    model_config = ConfigDict(extra="allow")

    role: str
    content: str | list[Any] | None


class ResponseMessage(BaseModel):
    """Assistant message in a client response; missing upstream values stay null."""

    role: str | None = None
    content: str | list[Any] | None = None


# =============================================================================
# Chat completions
# =============================================================================


class ChatRequest(BaseModel):
    """Inbound chat completion request (client contract)."""

    model_config = ConfigDict(extra="ignore")

    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool | None = False


class UpstreamChatRequest(BaseModel):
    """Outbound chat completion request (upstream contract)."""

    model: str
    messages: list[ChatMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool | None = None  # Only ever True or absent

    def to_payload(self) -> dict[str, Any]:
        """Serialize with absent optional fields omitted.

        Messages are dumped on their own so that client-supplied null values
        inside a message are kept.
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [message.model_dump() for message in self.messages],
        }
        payload.update(self.model_dump(exclude={"model", "messages"}, exclude_none=True))
        return payload


class Choice(BaseModel):
    index: int
    message: ResponseMessage
    finish_reason: str = "stop"


class ChatResponse(BaseModel):
    """Non-streaming chat completion response (client contract)."""

    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str | None = None
    usage: Any = None
    choices: list[Choice] = Field(default_factory=list)


# =============================================================================
# Models catalog
# =============================================================================


class ModelInfo(BaseModel):
    id: str | None = None
    object: str | None = None
    created: int | None = None
    owned_by: str | None = None


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelInfo] = Field(default_factory=list)
