"""Wire schemas for the agent webhook exchange.

Request and response bodies use camelCase keys on the wire; the Python side
uses snake_case with aliases.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PayloadMetadata(_WireModel):
    """Client/device context sent with every message."""

    platform: str
    app_version: str = Field(alias="appVersion")
    device_model: str = Field(alias="deviceModel")
    os_version: str = Field(alias="osVersion")
    voice_enabled: bool = Field(alias="voiceEnabled")


class WebhookPayload(_WireModel):
    """Body POSTed to an agent webhook."""

    message: str
    timestamp: datetime
    user_id: str = Field(alias="userId")
    agent_id: str = Field(alias="agentId")
    metadata: PayloadMetadata

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class WebhookTestPayload(_WireModel):
    """Lightweight probe body used by connection tests."""

    test: bool = True
    timestamp: datetime
    agent_id: str = Field(alias="agentId")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class WebhookAttachment(_WireModel):
    """Attachment reference returned by an agent."""

    type: str
    url: str
    name: str | None = None
    size: int | None = None


class WebhookResponse(_WireModel):
    """Body an agent returns on a 2xx response."""

    response: str
    timestamp: datetime
    agent_id: str | None = Field(default=None, alias="agentId")
    metadata: dict[str, str] | None = None
    attachments: list[WebhookAttachment] | None = None


class WebhookValidation(BaseModel):
    """Outcome of a syntactic webhook URL check."""

    is_valid: bool
    error: str | None = None
