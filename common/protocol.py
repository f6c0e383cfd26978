from __future__ import annotations

import json
from enum import Enum
from typing import Any, Mapping

PROTOCOL_VERSION = "1.0"
# Largest WebSocket message accepted on the signaling session.
MAX_FRAME_SIZE = 16 * 1024 * 1024
ADB_CHANNEL = "adb"


class MsgType(str, Enum):
    # agent -> service
    OFFER = "OFFER"
    # service -> agent
    ANSWER = "ANSWER"
    REJECT = "REJECT"
    # either side
    BYE = "BYE"


_REQUIRED_FIELDS: dict[MsgType, tuple[str, ...]] = {
    MsgType.OFFER: ("device_id", "channel", "public_key", "nonce"),
    MsgType.ANSWER: ("public_key", "nonce"),
    MsgType.REJECT: (),
    MsgType.BYE: (),
}


class ProtocolError(ValueError):
    pass


def ensure_message_type(value: Any) -> MsgType:
    if isinstance(value, MsgType):
        return value
    try:
        return MsgType(str(value))
    except ValueError as exc:
        raise ProtocolError(f"unknown message type: {value!r}") from exc


def build_message(msg_type: MsgType | str, **fields: Any) -> dict[str, Any]:
    kind = ensure_message_type(msg_type)
    return {"type": kind.value, **fields}


def parse_message(data: str | bytes) -> dict[str, Any]:
    try:
        obj = json.loads(data)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"invalid JSON payload: {exc}") from exc
    if not isinstance(obj, dict):
        raise ProtocolError("signaling message must be a JSON object")
    kind = ensure_message_type(obj.get("type"))
    missing = [name for name in _REQUIRED_FIELDS[kind] if not obj.get(name)]
    if missing:
        raise ProtocolError(f"{kind.value} message missing fields: {', '.join(missing)}")
    return obj


def encode_message(message: Mapping[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)
