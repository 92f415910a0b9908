"""Wire models for the droid stream-jsonrpc dialect.

Every message is one JSON object on its own line:

    {"jsonrpc": "2.0", "factoryApiVersion": "1.0.0", "type": "request",
     "method": "droid.add_user_message", "params": {...}, "id": "<uuid>"}

``type`` is one of ``request``, ``response`` or ``notification`` and selects
the model used to validate the line.
"""

from __future__ import annotations

import json
import uuid
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

JSONRPC_VERSION = "2.0"
FACTORY_API_VERSION = "1.0.0"

# JSON-RPC error codes used in replies to droid requests
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


class DroidMethod(str, Enum):
    """Methods exchanged with the droid subprocess."""

    # Bridge -> droid
    INITIALIZE_SESSION = "droid.initialize_session"
    ADD_USER_MESSAGE = "droid.add_user_message"
    UPDATE_SESSION_SETTINGS = "droid.update_session_settings"

    # Droid -> bridge
    SESSION_NOTIFICATION = "droid.session_notification"
    REQUEST_PERMISSION = "droid.request_permission"


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    jsonrpc: str = JSONRPC_VERSION
    factory_api_version: str = Field(default=FACTORY_API_VERSION, alias="factoryApiVersion")

    def to_line(self) -> str:
        """Serialize as a single newline-terminated JSON line."""
        return self.model_dump_json(by_alias=True, exclude_none=True) + "\n"


class DroidRequest(_Envelope):
    """A request in either direction."""

    type: Literal["request"] = "request"
    method: str
    params: dict[str, Any] = Field(default_factory=dict)
    id: str | int = Field(default_factory=lambda: str(uuid.uuid4()))


class DroidErrorPayload(BaseModel):
    """JSON-RPC error object."""

    model_config = ConfigDict(extra="allow")

    code: int = INTERNAL_ERROR
    message: str = "Internal error"
    data: Any = None


class DroidResponse(_Envelope):
    """A response to a request; carries ``result`` or ``error``."""

    type: Literal["response"] = "response"
    id: str | int | None = None
    result: Any = None
    error: DroidErrorPayload | None = None

    @classmethod
    def success(cls, request_id: str | int, result: Any) -> DroidResponse:
        return cls(id=request_id, result=result)

    @classmethod
    def failure(cls, request_id: str | int, code: int, message: str) -> DroidResponse:
        return cls(id=request_id, error=DroidErrorPayload(code=code, message=message))


class DroidNotificationMessage(_Envelope):
    """A one-way message from the droid."""

    type: Literal["notification"] = "notification"
    method: str
    params: dict[str, Any] = Field(default_factory=dict)


DroidMessage = Annotated[
    DroidRequest | DroidResponse | DroidNotificationMessage,
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter[Any] = TypeAdapter(DroidMessage)


def decode_line(line: str) -> DroidRequest | DroidResponse | DroidNotificationMessage:
    """Parse one stdout line into a typed message.

    Raises:
        ValueError: The line is not JSON or not a valid envelope
            (``json.JSONDecodeError`` and pydantic's ``ValidationError``
            are both ``ValueError`` subclasses).
    """
    data = json.loads(line)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return _message_adapter.validate_python(data)


# =============================================================================
# Initialization result
# =============================================================================


class DroidSettings(BaseModel):
    """Session settings reported by the droid."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", protected_namespaces=())

    model_id: str | None = Field(default=None, alias="modelId")
    reasoning_effort: str | None = Field(default=None, alias="reasoningEffort")
    autonomy_level: str | None = Field(default=None, alias="autonomyLevel")
    spec_mode_model_id: str | None = Field(default=None, alias="specModeModelId")
    spec_mode_reasoning_effort: str | None = Field(default=None, alias="specModeReasoningEffort")

    @classmethod
    def from_raw(cls, raw: Any) -> DroidSettings:
        """Copy only the string-valued settings out of a loose payload."""
        if not isinstance(raw, dict):
            return cls()
        values = {
            name: raw[field.alias]
            for name, field in cls.model_fields.items()
            if field.alias and isinstance(raw.get(field.alias), str)
        }
        return cls(**values)


class AvailableModel(BaseModel):
    """A model the droid can switch to."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    display_name: str | None = Field(default=None, alias="displayName")

    @property
    def label(self) -> str:
        return self.display_name or self.id


class InitSessionResult(BaseModel):
    """Result of ``droid.initialize_session``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    session_id: str = Field(alias="sessionId")
    settings: DroidSettings = Field(default_factory=DroidSettings)
    available_models: list[AvailableModel] = Field(default_factory=list, alias="availableModels")
    session: dict[str, Any] | None = None

    @field_validator("settings", mode="before")
    @classmethod
    def _loose_settings(cls, value: Any) -> DroidSettings:
        if isinstance(value, DroidSettings):
            return value
        return DroidSettings.from_raw(value)

    @field_validator("available_models", mode="before")
    @classmethod
    def _drop_unusable_models(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [m for m in value if isinstance(m, dict) and isinstance(m.get("id"), str)]

    @property
    def messages(self) -> list[dict[str, Any]]:
        """History messages the droid returned for a resumed session."""
        if not self.session:
            return []
        messages = self.session.get("messages")
        if not isinstance(messages, list):
            return []
        return [m for m in messages if isinstance(m, dict)]
