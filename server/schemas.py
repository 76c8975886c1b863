from pydantic import BaseModel, ConfigDict, Field, AliasChoices
from typing import Any, Optional, Literal

from models import CLIENT_ID_MAX_LENGTH


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Client protocol

class PollRequest(CamelModel):
    client_id: Optional[str] = Field(None, alias="clientId", max_length=100)
    device_label: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("deviceId", "deviceLabel", "device_label"),
        max_length=200
    )
    foreground_app: Optional[str] = Field(None, alias="foregroundApp", max_length=200)
    is_foreground: Optional[bool] = Field(None, alias="isForeground")


class CommandOut(CamelModel):
    id: str
    type: str
    payload: Any = None
    timestamp: int
    executed: bool


class PollResponse(CamelModel):
    client_id: str = Field(alias="clientId")
    status: Literal["connected"] = "connected"
    timestamp: int
    commands: list[CommandOut]


class AckRequest(CamelModel):
    client_id: Optional[str] = Field(None, alias="clientId", max_length=100)
    command_id: Optional[str] = Field(None, alias="commandId", max_length=100)


class SuccessResponse(BaseModel):
    success: bool = True


# Admin

class ClientSummary(CamelModel):
    id: str
    device_label: Optional[str] = Field(None, alias="deviceLabel")
    foreground_app: Optional[str] = Field(None, alias="foregroundApp")
    is_foreground: Optional[bool] = Field(None, alias="isForeground")
    is_online: bool = Field(alias="isOnline")
    last_seen: int = Field(alias="lastSeen")
    pending_commands_count: int = Field(alias="pendingCommandsCount")


class ClientListResponse(BaseModel):
    clients: list[ClientSummary]


class SendCommandRequest(CamelModel):
    client_id: Optional[str] = Field(None, alias="clientId", max_length=100)
    command_type: Optional[str] = Field(None, alias="commandType", max_length=100)
    command_payload: Optional[Any] = Field(None, alias="commandPayload")


class SendCommandResponse(BaseModel):
    success: bool = True
    command: CommandOut


# Message board

class PostMessageRequest(BaseModel):
    content: Optional[str] = Field(None, max_length=10000)


# Licenses

class CreateLicenseBatchRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: Literal["monthly", "yearly", "lifetime"]
    count: int = Field(..., ge=1, le=1000)
    duration: int = Field(..., ge=0, le=36500)  # days
    notes: Optional[str] = Field(None, max_length=2000)


class RedeemLicenseRequest(CamelModel):
    key: Optional[str] = Field(None, max_length=32)
    client_id: Optional[str] = Field(None, alias="clientId", max_length=CLIENT_ID_MAX_LENGTH)
