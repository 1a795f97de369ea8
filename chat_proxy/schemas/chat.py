from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


# Inbound browser request


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: List[ChatMessage] = Field(default_factory=list)


# Outgoing stream envelopes (chat-completions chunk subset)


class DeltaMessage(BaseModel):
    role: Optional[Literal["assistant"]] = None
    content: Optional[str] = None


class StreamChoice(BaseModel):
    index: int = 0
    delta: DeltaMessage = Field(default_factory=DeltaMessage)
    finish_reason: Optional[Literal["stop"]] = None


class ChatCompletionChunk(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    choices: List[StreamChoice]

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump()
        # delta carries only the fields that are set; finish_reason is always present
        for raw, choice in zip(data["choices"], self.choices):
            raw["delta"] = choice.delta.model_dump(exclude_none=True)
        return data


class CumulativeChunk(BaseModel):
    response: str
    done: bool = False


# Errors


class ErrorBody(BaseModel):
    type: str
    message: str


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    error: ErrorBody
