from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from common.config import ConfigurationError


class ControlState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class AgentKind(str, Enum):
    SIGNALING = "signaling_agent"
    PROXY = "proxy_agent"


_TRANSITIONS: dict[ControlState, frozenset[ControlState]] = {
    ControlState.DISCONNECTED: frozenset({ControlState.CONNECTING}),
    ControlState.CONNECTING: frozenset({ControlState.CONNECTED, ControlState.ERROR}),
    ControlState.CONNECTED: frozenset({ControlState.DISCONNECTING}),
    ControlState.DISCONNECTING: frozenset({ControlState.DISCONNECTED}),
    ControlState.ERROR: frozenset(),
}


def can_transition(current: ControlState, new: ControlState) -> bool:
    return new in _TRANSITIONS[current]


def ensure_agent_kind(value: Any) -> AgentKind:
    if isinstance(value, AgentKind):
        return value
    try:
        return AgentKind(str(value))
    except ValueError as exc:
        choices = ", ".join(k.value for k in AgentKind)
        raise ConfigurationError(f"unknown connect agent {value!r}, expected one of: {choices}") from exc


def _check_name(kind: str, value: str) -> str:
    if not value or value != value.strip():
        raise ConfigurationError(f"invalid {kind}: {value!r}")
    if "/" in value or any(ch.isspace() for ch in value):
        raise ConfigurationError(f"invalid {kind}: {value!r}")
    return value


@dataclass(frozen=True, slots=True)
class DeviceLocator:
    service_endpoint: str
    host: str
    device_id: str

    def __post_init__(self) -> None:
        if not self.service_endpoint:
            raise ConfigurationError("locator requires a service endpoint")
        _check_name("host name", self.host)
        _check_name("device id", self.device_id)

    @property
    def key(self) -> str:
        raw = "\0".join((self.service_endpoint, self.host, self.device_id))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        return f"{self.host}/{self.device_id}"

    def to_dict(self) -> dict[str, str]:
        return {
            "service_endpoint": self.service_endpoint,
            "host": self.host,
            "device_id": self.device_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceLocator":
        return cls(
            service_endpoint=str(data["service_endpoint"]),
            host=str(data["host"]),
            device_id=str(data["device_id"]),
        )


@dataclass(slots=True)
class ConnectionStatus:
    control_port: int | None = None
    control_state: ControlState = ControlState.CONNECTING

    def to_dict(self) -> dict[str, Any]:
        return {"control_port": self.control_port, "control_state": self.control_state.value}

    @classmethod
    def from_dict(cls, data: Any) -> "ConnectionStatus":
        if not isinstance(data, dict):
            raise ValueError("connection status must be a JSON object")
        port = data.get("control_port")
        if port is not None:
            if isinstance(port, bool) or not isinstance(port, int) or not 0 < port <= 65535:
                raise ValueError(f"invalid control_port: {port!r}")
        try:
            state = ControlState(data.get("control_state"))
        except ValueError as exc:
            raise ValueError(f"invalid control_state: {data.get('control_state')!r}") from exc
        return cls(control_port=port, control_state=state)

    def encode(self, **extra: Any) -> bytes:
        payload = self.to_dict()
        payload.update({k: v for k, v in extra.items() if v})
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes) -> tuple["ConnectionStatus", dict[str, Any]]:
        obj = json.loads(data.decode("utf-8"))
        status = cls.from_dict(obj)
        extra = {k: v for k, v in obj.items() if k not in ("control_port", "control_state")}
        return status, extra

    def describe(self) -> str:
        if self.control_port:
            return f"127.0.0.1:{self.control_port}"
        return self.control_state.value


@dataclass(slots=True)
class ConnectionRecord:
    locator: DeviceLocator
    status: ConnectionStatus
    agent_kind: AgentKind
    log_path: str
    socket_path: str
    agent_pid: int | None = None
    created_at: float = field(default_factory=time.time)

    def transition(self, new_state: ControlState) -> None:
        current = self.status.control_state
        if not can_transition(current, new_state):
            raise ValueError(f"{self.locator}: illegal transition {current.value} -> {new_state.value}")
        self.status.control_state = new_state

    def to_dict(self) -> dict[str, Any]:
        return {
            "locator": self.locator.to_dict(),
            "status": self.status.to_dict(),
            "agent_kind": self.agent_kind.value,
            "agent_pid": self.agent_pid,
            "log_path": self.log_path,
            "socket_path": self.socket_path,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectionRecord":
        pid = data.get("agent_pid")
        return cls(
            locator=DeviceLocator.from_dict(data["locator"]),
            status=ConnectionStatus.from_dict(data["status"]),
            agent_kind=AgentKind(data["agent_kind"]),
            log_path=str(data.get("log_path", "")),
            socket_path=str(data.get("socket_path", "")),
            agent_pid=int(pid) if pid is not None else None,
            created_at=float(data.get("created_at", 0.0)),
        )
