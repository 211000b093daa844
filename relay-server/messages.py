"""Wire protocol for the relay WebSocket.

Every frame is a JSON object:

    {"type": "<event>", "data": {...}, "sessionId": "<token>"}

`sessionId` is optional and lives on the envelope so that event payloads
can be forwarded to the peer exactly as the sender wrote them.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

# --- Event names ---

REGISTER_DEVICE = "register-device"
START_RECORD = "start-record"
STOP_RECORD = "stop-record"
RECORDING_READY = "recording-ready"
PING = "ping"

DEVICE_REGISTERED = "device-registered"
VIDEO_UPLOADED = "video-uploaded"
SESSION_STARTED = "session-started"
SESSION_ENDED = "session-ended"
ERROR = "error"
PONG = "pong"

Timestamp = Union[int, float]


class InvalidMessage(ValueError):
    pass


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


class RegisterDevice(_Payload):
    device_type: str = Field(alias="deviceType")
    device_id: str = Field(alias="deviceId")


class StartRecord(_Payload):
    device_id: str = Field(alias="deviceId", min_length=1)
    timestamp: Timestamp


class StopRecord(_Payload):
    device_id: str = Field(alias="deviceId", min_length=1)
    timestamp: Timestamp


class RecordingReady(_Payload):
    video_url: str = Field(alias="videoUrl", min_length=1)
    filename: str = Field(min_length=1)
    device_id: str = Field(alias="deviceId", min_length=1)
    timestamp: Timestamp


class Ping(_Payload):
    pass


class Pong(_Payload):
    pass


INBOUND_MODELS: dict[str, type[_Payload]] = {
    REGISTER_DEVICE: RegisterDevice,
    START_RECORD: StartRecord,
    STOP_RECORD: StopRecord,
    RECORDING_READY: RecordingReady,
    PING: Ping,
    PONG: Pong,
}


@dataclass
class Inbound:
    type: str
    payload: _Payload
    data: dict  # the payload exactly as received
    session_id: Optional[str] = None


def parse(raw: Union[str, bytes]) -> Inbound:
    """Decode and validate one inbound frame (text, or UTF-8 bytes).

    Raises InvalidMessage with a short human-readable reason.
    """
    try:
        frame = json.loads(raw)
    except (ValueError, TypeError):
        raise InvalidMessage("frame is not valid JSON") from None
    if not isinstance(frame, dict):
        raise InvalidMessage("frame must be a JSON object")

    msg_type = frame.get("type")
    model = INBOUND_MODELS.get(msg_type) if isinstance(msg_type, str) else None
    if model is None:
        raise InvalidMessage(f"unknown message type {msg_type!r}")

    data = frame.get("data", {})
    if not isinstance(data, dict):
        raise InvalidMessage(f"{msg_type}: data must be an object")

    session_id = frame.get("sessionId")
    if session_id is not None and (not isinstance(session_id, str) or not session_id):
        raise InvalidMessage(f"{msg_type}: sessionId must be a non-empty string")

    try:
        payload = model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "data" for err in e.errors())
        raise InvalidMessage(f"{msg_type}: invalid or missing field(s): {fields}") from None

    return Inbound(type=msg_type, payload=payload, data=data, session_id=session_id)


def encode(msg_type: str, data: Optional[dict[str, Any]] = None, session_id: Optional[str] = None) -> str:
    frame: dict[str, Any] = {"type": msg_type, "data": data or {}}
    if session_id:
        frame["sessionId"] = session_id
    return json.dumps(frame)
