from dataclasses import dataclass
from typing import Annotated, Any, Dict, Generic, List, Literal, TypeVar, Union

from pydantic import BaseModel, Field

T = TypeVar("T", bound=BaseModel)

ResponseFormat = Literal["text", "json"]
StopReason = Literal["end_turn", "tool_use", "max_tokens", "content_filter"]


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class UsageStats(BaseModel):
    total_requests: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    estimated_cost: float = 0.0  # USD


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class CompletionResult(BaseModel):
    content: str
    usage: TokenUsage
    latency_ms: int
    model: str


@dataclass
class StructuredResult(Generic[T]):
    data: T
    usage: TokenUsage
    latency_ms: int
    attempts: int


# ==========================================
# CONTENT BLOCKS (tool-capable responses)
# ==========================================

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


ContentBlock = Annotated[Union[TextBlock, ToolUseBlock], Field(discriminator="type")]


class ToolDefinition(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ToolCompletionResult(BaseModel):
    content: List[ContentBlock]
    usage: TokenUsage
    latency_ms: int
    model: str
    stop_reason: StopReason = "end_turn"


class ToolResult(BaseModel):
    tool_name: str
    tool_call_id: str
    result: str
    is_error: bool = False


class ToolLoopResult(BaseModel):
    final_text: str
    tool_results: List[ToolResult] = Field(default_factory=list)
    total_usage: TokenUsage = Field(default_factory=TokenUsage)


# ==========================================
# STREAM CHUNKS
# ==========================================

class TextDeltaChunk(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    content: str


class UsageChunk(BaseModel):
    type: Literal["usage"] = "usage"
    usage: TokenUsage


class DoneChunk(BaseModel):
    type: Literal["done"] = "done"


StreamChunk = Annotated[Union[TextDeltaChunk, UsageChunk, DoneChunk], Field(discriminator="type")]
