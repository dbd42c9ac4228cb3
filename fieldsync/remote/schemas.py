"""Wire models for the telemetry JSON-RPC API.

Models are permissive (`extra="allow"`): the remote adds fields freely and
only the handful below feed the canonical asset records.
"""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fieldsync.core.errors import NetworkFailure


class Credentials(BaseModel):
    """Session credentials returned by `Authenticate`."""

    database: str = ""
    user_name: str = Field(default="", alias="userName")
    session_id: str = Field(default="", alias="sessionId")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def as_params(self) -> dict:
        return self.model_dump(by_alias=True, include={"database", "user_name", "session_id"})


class Device(BaseModel):
    id: str
    name: Optional[str] = None
    comment: Optional[str] = None

    model_config = ConfigDict(str_strip_whitespace=True, extra="allow")


class DeviceRef(BaseModel):
    id: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class DeviceStatusInfo(BaseModel):
    device: Optional[DeviceRef] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed: float = 0.0
    bearing: float = 0.0
    date_time: Optional[str] = Field(default=None, alias="dateTime")
    is_device_communicating: bool = Field(default=False, alias="isDeviceCommunicating")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("speed", "bearing", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @property
    def device_id(self) -> Optional[str]:
        return self.device.id if self.device is not None else None


class RpcErrorDetail(BaseModel):
    name: str = ""
    message: str = ""

    model_config = ConfigDict(extra="allow")


class RpcError(BaseModel):
    name: str = ""
    message: str = ""
    errors: List[RpcErrorDetail] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")

    def names(self) -> List[str]:
        found = [self.name] if self.name else []
        found.extend(detail.name for detail in self.errors if detail.name)
        return found


def parse_devices(raw: Any) -> List[Device]:
    return _parse_list(Device, raw, "Device")


def parse_statuses(raw: Any) -> List[DeviceStatusInfo]:
    return _parse_list(DeviceStatusInfo, raw, "DeviceStatusInfo")


def _parse_list(model: type, raw: Any, type_name: str) -> list:
    if not isinstance(raw, list):
        raise NetworkFailure(f"unexpected {type_name} response: expected a list")
    try:
        return [model.model_validate(item) for item in raw]
    except ValidationError as exc:
        raise NetworkFailure(f"malformed {type_name} response: {exc.error_count()} errors") from exc


__all__ = [
    "Credentials",
    "Device",
    "DeviceRef",
    "DeviceStatusInfo",
    "RpcError",
    "RpcErrorDetail",
    "parse_devices",
    "parse_statuses",
]
