"""
Pydantic schemas for tool contracts, model turns, thread messages and the HTTP surface.
"""

import json
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# TOOL CONTRACTS
# =============================================================================

ToolName = Literal["writeFile", "readFile", "runBash", "replaceText", "exposePort"]


class WriteFileArgs(BaseModel):
    """Write content to a file in the workspace."""
    path: str = Field(..., min_length=1, description="The absolute path to the file (e.g., /workspace/app/src/index.ts)")
    content: str = Field(..., description="The content to write to the file")


class ReadFileArgs(BaseModel):
    """Read the contents of a file in the workspace."""
    path: str = Field(..., min_length=1, description="The absolute path to the file (e.g., /workspace/app/src/index.ts)")


class RunBashArgs(BaseModel):
    """Execute a bash command in the workspace."""
    command: str = Field(..., min_length=1, description="The bash command to execute")
    cwd: Optional[str] = Field(None, description="Working directory for the command (default: /workspace)")


class ReplaceTextArgs(BaseModel):
    """Replace one exact occurrence of a text string in a file."""
    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(..., min_length=1, description="The absolute path to the file")
    old_text: str = Field(..., alias="oldText", min_length=1, description="The exact text to find and replace")
    new_text: str = Field(..., alias="newText", description="The text to replace it with")


class ExposePortArgs(BaseModel):
    """Publish a port the application listens on."""
    port: int = Field(..., ge=1, le=65535, description="The port the server listens on inside the sandbox")


class ToolOutcome(BaseModel):
    """Structured result of a tool execution. Tools never raise; they return this."""
    success: bool
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **payload: Any) -> "ToolOutcome":
        return cls(success=True, payload=payload)

    @classmethod
    def fail(cls, error: str, **payload: Any) -> "ToolOutcome":
        return cls(success=False, payload=payload, error=error)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into the shape the model and the audit trail see."""
        data: Dict[str, Any] = {"success": self.success, **self.payload}
        if self.error is not None:
            data["error"] = self.error
        return data


class ToolInvocation(BaseModel):
    """A single tool call proposed by the model, plus its outcome once executed."""
    call_id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    parse_error: Optional[str] = None
    outcome: Optional[ToolOutcome] = None

    @classmethod
    def from_request(cls, call_id: str, name: str, raw_arguments: Optional[str]) -> "ToolInvocation":
        """Build an invocation from the model's JSON argument string, tolerating bad JSON."""
        arguments: Dict[str, Any] = {}
        parse_error = None
        if raw_arguments:
            try:
                parsed = json.loads(raw_arguments)
            except json.JSONDecodeError as e:
                parse_error = f"Arguments are not valid JSON: {e}"
            else:
                if isinstance(parsed, dict):
                    arguments = parsed
                else:
                    parse_error = "Arguments must be a JSON object"
        return cls(call_id=call_id, name=name, arguments=arguments, parse_error=parse_error)


# =============================================================================
# MODEL TURNS
# =============================================================================

class ToolCallRequest(BaseModel):
    """A tool call as emitted by the model."""
    id: str
    name: str
    arguments: str = "{}"


class ModelTurn(BaseModel):
    """One model response: optional text plus zero or more tool calls."""
    text: Optional[str] = None
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    usage: Optional[Dict[str, Any]] = None


# =============================================================================
# THREAD MESSAGES
# =============================================================================

MessageRole = Literal["user", "assistant", "tool_call", "tool_result"]


class ThreadMessage(BaseModel):
    """A message in a thread, serialized with camelCase keys for the control API."""
    model_config = ConfigDict(populate_by_name=True)

    role: MessageRole
    content: Optional[str] = None
    tool_name: Optional[str] = Field(None, alias="toolName")
    tool_args: Optional[Dict[str, Any]] = Field(None, alias="toolArgs")
    tool_result: Optional[Dict[str, Any]] = Field(None, alias="toolResult")
    usage: Optional[Dict[str, Any]] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# HTTP REQUESTS / RESPONSES
# =============================================================================

class SetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId", min_length=1)


class StatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId", min_length=1)


class EditRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId", min_length=1)
    thread_id: str = Field(..., alias="threadId", min_length=1)
    prompt: str = Field(..., min_length=1)


class SetupResult(BaseModel):
    """Outcome of preparing a project's sandbox for preview."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId")
    preview_url: str = Field(..., alias="previewUrl")
    message: str
    healthy: bool = False


class StatusResult(BaseModel):
    """Whether a project's cached preview is still live."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId")
    active: bool
    preview_url: Optional[str] = Field(None, alias="previewUrl")


class EditResult(BaseModel):
    """Outcome of one agent run against a project's sandbox."""
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId")
    response: str = ""
    steps: int = 0
    tool_calls: int = Field(0, alias="toolCalls")
