from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


RunStatus = Literal["running", "completed", "overloaded", "exhausted", "cancelled", "failed"]


class ToolInvocation(BaseModel):
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolRef(BaseModel):
    id: str = ""
    name: str


class TextMessage(BaseModel):
    type: Literal["text"] = "text"
    role: Literal["user", "assistant"] = "assistant"
    content: str = ""
    stop_reason: Optional[str] = None


class ToolCallMessage(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    role: Literal["assistant"] = "assistant"
    tools: List[ToolInvocation] = Field(default_factory=list)
    stop_reason: Optional[str] = "tool"


class ToolResultMessage(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    role: Literal["tool_result"] = "tool_result"
    tool: ToolRef
    content: Any = None
    error: bool = False


Message = Annotated[Union[TextMessage, ToolCallMessage, ToolResultMessage], Field(discriminator="type")]

_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(Message)


def parse_message(raw: Any) -> Union[TextMessage, ToolCallMessage, ToolResultMessage]:
    """Validate a raw mapping into one of the closed message variants."""
    if isinstance(raw, (TextMessage, ToolCallMessage, ToolResultMessage)):
        return raw
    try:
        return _MESSAGE_ADAPTER.validate_python(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid message: {exc.error_count()} error(s)", exc.errors()) from exc


def parse_history(raw: Any) -> List[Union[TextMessage, ToolCallMessage, ToolResultMessage]]:
    if not isinstance(raw, list):
        raise ValidationError("history must be a list of messages")
    return [parse_message(item) for item in raw]


class InferenceResult(BaseModel):
    output: List[Message] = Field(default_factory=list)
    history: List[Message] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Dict[str, Any] = Field(default_factory=dict)

    def tool_calls(self) -> List[ToolInvocation]:
        calls: List[ToolInvocation] = []
        for msg in self.output:
            if isinstance(msg, ToolCallMessage):
                calls.extend(msg.tools)
        return calls


class RunRequest(BaseModel):
    input: str
    concurrency_key: Optional[str] = None
    run_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"input": data}
        if not isinstance(data, dict):
            return data
        if "input" not in data:
            for alias in ("prompt", "question"):
                if data.get(alias):
                    data = {**data, "input": data[alias]}
                    break
        return data


class EventEnvelope(BaseModel):
    name: str
    data: RunRequest
    id: Optional[str] = None


class RunResponse(BaseModel):
    answer: Optional[str] = None
    run_id: str
    status: RunStatus
