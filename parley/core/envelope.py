"""
Protocol envelope for the chat WebSocket.

Every frame on the connection is a JSON object:

    {version, turnId, replyTo, timestamp, type, messageId, data}

Outbound frames always use these keys. Inbound frames additionally accept the
short keys ``v``, ``t`` and ``msgId`` sent by older clients.
"""

import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from parley.core.voice_errors import CONN_006, VoiceError

PROTOCOL_VERSION = 1


class InboundType(str, Enum):
    """Client → server message types."""

    STT_START = "stt_start"
    STT_AUDIO = "stt_audio"
    STT_END = "stt_end"
    USER_TEXT = "user_text"


class OutboundType(str, Enum):
    """Server → client message types."""

    STT_ACK = "stt_ack"
    STT_ERROR = "stt_error"
    STT_RESULT = "stt_result"
    STT_READY = "stt_ready"
    STT_VAD_START = "stt_vad_start"
    STT_VAD_STOP = "stt_vad_stop"
    STT_TRANSCRIPT_PARTIAL = "stt_transcript_partial"
    STT_TRANSCRIPT_FINAL = "stt_transcript_final"
    CTX_SOURCES = "ctx_sources"
    LLM_TOKEN = "llm_token"
    SENTENCE = "sentence"
    TTS_LEVELS = "tts_levels"
    TTS_CHUNK = "tts_chunk"
    TTS_ERROR = "tts_error"
    DONE = "done"
    ERROR = "error"


class InboundEnvelope(BaseModel):
    """A parsed client frame. Unknown top-level keys are ignored."""

    version: int = Field(default=PROTOCOL_VERSION, validation_alias=AliasChoices("version", "v"))
    turn_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("turnId", "turn_id"))
    reply_to: Optional[str] = Field(default=None, validation_alias=AliasChoices("replyTo", "reply_to"))
    timestamp: Optional[int] = Field(default=None, validation_alias=AliasChoices("timestamp", "t"))
    type: str
    message_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "msgId"))
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore")

    @field_validator("turn_id", "reply_to", "message_id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)):
            return str(value)
        raise ValueError("identifier must be a string")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Optional[int]:
        if isinstance(value, float):
            return int(value)
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _default_data(cls, value: Any) -> Any:
        return {} if value is None else value


class OutboundEnvelope(BaseModel):
    """A server frame, serialized with camelCase keys."""

    version: int = PROTOCOL_VERSION
    turn_id: str = Field(serialization_alias="turnId")
    reply_to: Optional[str] = Field(default=None, serialization_alias="replyTo")
    timestamp: int
    type: str
    message_id: str = Field(serialization_alias="messageId")
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


@dataclass(frozen=True)
class ReplyContext:
    """Correlation ids stamped on every frame produced for one inbound message."""

    turn_id: str
    reply_to: Optional[str] = None

    @classmethod
    def for_inbound(cls, envelope: InboundEnvelope) -> "ReplyContext":
        return cls(turn_id=envelope.turn_id or new_id(), reply_to=envelope.message_id)


def new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_envelope(raw: Union[str, bytes, Dict[str, Any]]) -> InboundEnvelope:
    """
    Parse a client frame.

    Raises:
        VoiceError: CONN_006 when the frame is not JSON or not a valid envelope
    """
    try:
        payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise VoiceError(CONN_006, message="Frame is not valid JSON", original_error=e) from e

    if not isinstance(payload, dict):
        raise VoiceError(CONN_006, message="Frame must be a JSON object")

    try:
        return InboundEnvelope.model_validate(payload)
    except ValidationError as e:
        raise VoiceError(
            CONN_006,
            message="Frame is not a valid envelope",
            error_count=e.error_count(),
        ) from e


def build_event(event_type: Union[OutboundType, str], data: Optional[Dict[str, Any]], context: ReplyContext) -> Dict[str, Any]:
    """Build the wire dict for one outbound event."""
    envelope = OutboundEnvelope(
        turn_id=context.turn_id,
        reply_to=context.reply_to,
        timestamp=now_ms(),
        type=event_type.value if isinstance(event_type, OutboundType) else event_type,
        message_id=new_id(),
        data=data or {},
    )
    return envelope.to_wire()
