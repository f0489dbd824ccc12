"""
Agent runtime wire models.

The runtime inside each sandbox serves sessions and messages over HTTP. Times
on the wire are epoch milliseconds under a ``time`` object.
"""

from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


def from_epoch_ms(value: Any) -> Optional[datetime]:
    """Convert an epoch-milliseconds value to an aware datetime."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return None


class RuntimeSession(BaseModel):
    """A session as listed by the agent runtime."""

    id: str
    title: Optional[str] = None
    parent_id: Optional[str] = Field(default=None, alias="parentID")
    time: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "extra": "allow"}

    @property
    def created_at(self) -> Optional[datetime]:
        return from_epoch_ms(self.time.get("created"))

    @property
    def updated_at(self) -> Optional[datetime]:
        return from_epoch_ms(self.time.get("updated"))


class RuntimeMessage(BaseModel):
    """A message as returned by the runtime: metadata plus content parts."""

    info: dict[str, Any]
    parts: list[Any] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return str(self.info["id"])

    @property
    def role(self) -> str:
        return str(self.info.get("role", "assistant"))

    @property
    def created_at(self) -> Optional[datetime]:
        time_info = self.info.get("time") or {}
        return from_epoch_ms(time_info.get("created"))

    def content(self) -> dict[str, Any]:
        """Content stored for this message: parts, model and time, unmodified."""
        model = self.info.get("model")
        if model is None and ("modelID" in self.info or "providerID" in self.info):
            model = {
                "providerID": self.info.get("providerID"),
                "modelID": self.info.get("modelID"),
            }
        return {
            "parts": self.parts,
            "model": model,
            "time": self.info.get("time"),
        }


class RuntimeEvent(BaseModel):
    """One server-sent event from the runtime's event stream."""

    type: str
    properties: dict[str, Any] = Field(default_factory=dict)


class MessageEventInfo(BaseModel):
    """Shape required of the ``info`` object in message events."""

    id: str
    session_id: str = Field(alias="sessionID")
    role: Optional[str] = None
    time: Optional[dict[str, Any]] = None

    model_config = {"populate_by_name": True, "extra": "allow"}


class PartEventInfo(BaseModel):
    """Shape required of the ``part`` object in message.part.updated events."""

    id: Optional[str] = None
    message_id: str = Field(alias="messageID")
    session_id: str = Field(alias="sessionID")

    model_config = {"populate_by_name": True, "extra": "allow"}


class ModelRef(BaseModel):
    provider_id: str = Field(alias="providerID")
    model_id: str = Field(alias="modelID")

    model_config = {"populate_by_name": True}


class SendMessageInput(BaseModel):
    """Prompt sent to a runtime session."""

    parts: list[dict[str, Any]]
    model: Optional[ModelRef] = None

    @classmethod
    def text(cls, text: str, model: Optional[ModelRef] = None) -> "SendMessageInput":
        return cls(parts=[{"type": "text", "text": text}], model=model)


PermissionResponse = Literal["once", "always", "reject"]


class FileNode(BaseModel):
    name: str
    path: str
    type: str = "file"
    ignored: bool = False

    model_config = {"extra": "allow"}


class FileContent(BaseModel):
    type: str = "text"
    content: str = ""

    model_config = {"extra": "allow"}


class Provider(BaseModel):
    id: str
    name: str = ""
    source: Optional[str] = None
    models: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}
