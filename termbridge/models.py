"""Records and wire types shared by the daemon, realtime client and stores.

Machine/Session mirror the registry rows. RealtimeMessage is the payload
broadcast on a session channel; `to_payload()`/`from_payload()` are the
only place that knows the camelCase wire field names.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any

from termbridge.errors import MessageDecodeError

MACHINE_ONLINE = "online"
MACHINE_OFFLINE = "offline"

SESSION_ACTIVE = "active"
SESSION_PAUSED = "paused"
SESSION_ENDED = "ended"

PERMISSION_MODES = (
    "default",
    "acceptEdits",
    "plan",
    "bypassPermissions",
    "delegate",
    "dontAsk",
)

MSG_OUTPUT = "output"
MSG_INPUT = "input"
MSG_ERROR = "error"
MSG_SYSTEM = "system"
MSG_PING = "ping"
MSG_PONG = "pong"
MSG_MODE = "mode"
MSG_MODE_CHANGE = "mode-change"
MSG_MODEL = "model"
MSG_MODEL_CHANGE = "model-change"
MSG_MODELS = "models"
MSG_MODELS_REQUEST = "models-request"
MSG_COMMANDS = "commands"
MSG_COMMANDS_REQUEST = "commands-request"
MSG_CANCEL = "cancel"

MESSAGE_TYPES = frozenset(
    {
        MSG_OUTPUT,
        MSG_INPUT,
        MSG_ERROR,
        MSG_SYSTEM,
        MSG_PING,
        MSG_PONG,
        MSG_MODE,
        MSG_MODE_CHANGE,
        MSG_MODEL,
        MSG_MODEL_CHANGE,
        MSG_MODELS,
        MSG_MODELS_REQUEST,
        MSG_COMMANDS,
        MSG_COMMANDS_REQUEST,
        MSG_CANCEL,
    }
)

IMAGE_MEDIA_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")

TRIGGER_TASK_COMPLETE = "task_complete"
TRIGGER_ERROR = "error"
TRIGGER_INPUT_REQUIRED = "input_required"


def now_ms() -> int:
    return int(time.time() * 1000)


def session_output_channel(session_id: str) -> str:
    return f"session:{session_id}:output"


def session_input_channel(session_id: str) -> str:
    return f"session:{session_id}:input"


@dataclass
class Machine:
    """Machine record."""

    id: str
    owner_id: str
    name: str
    hostname: str
    status: str
    created_at: str
    last_seen_at: str | None = None


@dataclass
class Session:
    """Session record."""

    id: str
    machine_id: str
    status: str
    working_directory: str | None
    started_at: str
    model: str | None = None
    resume_token: str | None = None
    ended_at: str | None = None


@dataclass(frozen=True)
class NotificationTrigger:
    kind: str  # task_complete|error|input_required
    message: str


@dataclass(frozen=True)
class ImageAttachment:
    media_type: str
    data: str  # base64

    def to_payload(self) -> dict[str, str]:
        return {"type": "image", "mediaType": self.media_type, "data": self.data}

    @classmethod
    def from_payload(cls, raw: object) -> "ImageAttachment":
        if not isinstance(raw, dict):
            raise MessageDecodeError("attachment must be an object")
        media_type = raw.get("mediaType")
        data = raw.get("data")
        if not isinstance(media_type, str) or not isinstance(data, str):
            raise MessageDecodeError(
                "attachment requires string mediaType and data",
                payload_preview=_preview(raw),
            )
        return cls(media_type=media_type, data=data)


@dataclass(frozen=True)
class SlashCommand:
    name: str
    description: str = ""
    argument_hint: str = ""

    def to_payload(self) -> dict[str, str]:
        return {
            "name": self.name,
            "description": self.description,
            "argumentHint": self.argument_hint,
        }

    @classmethod
    def from_payload(cls, raw: object) -> "SlashCommand":
        if isinstance(raw, str):
            return cls(name=raw)
        if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
            raise MessageDecodeError("command requires a name", payload_preview=_preview(raw))
        return cls(
            name=raw["name"],
            description=str(raw.get("description") or ""),
            argument_hint=str(raw.get("argumentHint") or ""),
        )


@dataclass(frozen=True)
class ModelInfo:
    value: str
    display_name: str
    description: str = ""

    def to_payload(self) -> dict[str, str]:
        return {
            "value": self.value,
            "displayName": self.display_name,
            "description": self.description,
        }

    @classmethod
    def from_payload(cls, raw: object) -> "ModelInfo":
        if not isinstance(raw, dict) or not isinstance(raw.get("value"), str):
            raise MessageDecodeError("model requires a value", payload_preview=_preview(raw))
        return cls(
            value=raw["value"],
            display_name=str(raw.get("displayName") or raw["value"]),
            description=str(raw.get("description") or ""),
        )


@dataclass(frozen=True)
class RealtimeMessage:
    """One broadcast on a session channel. Never mutated after send."""

    type: str
    seq: int
    timestamp: int
    content: str | None = None
    attachments: tuple[ImageAttachment, ...] | None = None
    permission_mode: str | None = None
    model: str | None = None
    commands: tuple[SlashCommand, ...] | None = None
    available_models: tuple[ModelInfo, ...] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "timestamp": self.timestamp,
            "seq": self.seq,
        }
        if self.content is not None:
            payload["content"] = self.content
        if self.attachments is not None:
            payload["attachments"] = [a.to_payload() for a in self.attachments]
        if self.permission_mode is not None:
            payload["permissionMode"] = self.permission_mode
        if self.model is not None:
            payload["model"] = self.model
        if self.commands is not None:
            payload["commands"] = [c.to_payload() for c in self.commands]
        if self.available_models is not None:
            payload["availableModels"] = [m.to_payload() for m in self.available_models]
        return payload

    @classmethod
    def from_payload(cls, raw: object) -> "RealtimeMessage":
        if not isinstance(raw, dict):
            raise MessageDecodeError("payload must be an object", payload_preview=_preview(raw))

        msg_type = raw.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            raise MessageDecodeError("missing type", payload_preview=_preview(raw))

        seq = raw.get("seq")
        if isinstance(seq, bool) or not isinstance(seq, int) or seq < 0:
            raise MessageDecodeError("seq must be a non-negative integer", payload_preview=_preview(raw))

        timestamp = raw.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise MessageDecodeError("timestamp must be epoch millis", payload_preview=_preview(raw))

        content = raw.get("content")
        if content is not None and not isinstance(content, str):
            raise MessageDecodeError("content must be a string", payload_preview=_preview(raw))

        def _list(key: str, parse) -> tuple | None:
            value = raw.get(key)
            if value is None:
                return None
            if not isinstance(value, list):
                raise MessageDecodeError(f"{key} must be a list", payload_preview=_preview(raw))
            return tuple(parse(item) for item in value)

        permission_mode = raw.get("permissionMode")
        model = raw.get("model")

        return cls(
            type=msg_type,
            seq=seq,
            timestamp=int(timestamp),
            content=content,
            attachments=_list("attachments", ImageAttachment.from_payload),
            permission_mode=permission_mode if isinstance(permission_mode, str) else None,
            model=model if isinstance(model, str) else None,
            commands=_list("commands", SlashCommand.from_payload),
            available_models=_list("availableModels", ModelInfo.from_payload),
        )


def _preview(raw: object, max_len: int = 200) -> str:
    try:
        text = json.dumps(raw, ensure_ascii=True, default=str)
    except (TypeError, ValueError):
        text = repr(raw)
    if len(text) > max_len:
        return text[: max_len - 3] + "..."
    return text
