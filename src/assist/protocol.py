"""
WebSocket event protocol between the operator console and the service.

Every frame is a JSON object `{"event": <name>, "data": {...}}`.

Inbound:
- start-recognition: {leadRef?, mode}
- audio-chunk: {audioSource, audioData}, base64 PCM (fallback path only)
- request-response: manual suggestion trigger
- save-conversation: {outcome?, feedback?, aiHelpful?}
- end-recognition

Outbound events are listed in `ServerEventType`.
"""

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

import msgspec
import structlog

from src.assist.errors import ProtocolError
from src.assist.roles import ConversationMode, Role, parse_role

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class ClientEventType(str, Enum):
    START_RECOGNITION = "start-recognition"
    AUDIO_CHUNK = "audio-chunk"
    REQUEST_RESPONSE = "request-response"
    SAVE_CONVERSATION = "save-conversation"
    END_RECOGNITION = "end-recognition"


class ServerEventType(str, Enum):
    RECOGNITION_STARTED = "recognition-started"
    TRANSCRIPT = "transcript"
    PRONUNCIATION_SCORE = "pronunciation-score"
    PRONUNCIATION_SUMMARY = "pronunciation-summary"
    OPERATOR_RESPONSE = "operator-response"
    STREAM_RESTARTED = "stream-restarted"
    CONVERSATION_SAVED = "conversation-saved"
    RECOGNITION_ENDED = "recognition-ended"
    ERROR = "error"


@dataclass
class StartRecognition:
    mode: ConversationMode
    lead_ref: Optional[str] = None

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "StartRecognition":
        raw_mode = str(data.get("mode") or ConversationMode.SALES.value).strip().lower()
        try:
            mode = ConversationMode(raw_mode)
        except ValueError:
            raise ProtocolError(
                f"Unknown mode: {raw_mode}",
                code="INVALID_MODE",
                details=["mode must be 'sales' or 'vendor'"],
            )
        lead_ref = data.get("leadRef")
        return cls(mode=mode, lead_ref=str(lead_ref) if lead_ref not in (None, "") else None)


@dataclass
class AudioChunk:
    role: Role
    audio: bytes

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "AudioChunk":
        role = parse_role(data.get("audioSource"))
        if role is None:
            raise ProtocolError(
                f"Unknown audio source: {data.get('audioSource')!r}",
                code="INVALID_AUDIO_SOURCE",
            )
        payload = data.get("audioData") or ""
        try:
            audio = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError, TypeError):
            raise ProtocolError("audioData is not valid base64", code="INVALID_AUDIO_DATA")
        return cls(role=role, audio=audio)


@dataclass
class SaveConversation:
    outcome: Optional[str] = None
    feedback: Optional[str] = None
    ai_helpful: Optional[bool] = None

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "SaveConversation":
        ai_helpful = data.get("aiHelpful")
        return cls(
            outcome=data.get("outcome"),
            feedback=data.get("feedback"),
            ai_helpful=bool(ai_helpful) if ai_helpful is not None else None,
        )


ClientEvent = Union[StartRecognition, AudioChunk, SaveConversation, None]


def parse_client_message(raw_message: Union[str, bytes]) -> Tuple[ClientEventType, ClientEvent]:
    """
    Parse one inbound frame.

    Raises:
        ProtocolError: invalid JSON, unknown event or bad payload.
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")

    event_name = message.get("event", "")
    try:
        event_type = ClientEventType(event_name)
    except ValueError:
        logger.warning("Unknown client event", event_type=event_name)
        raise ProtocolError(f"Unknown event type: {event_name}", code="UNKNOWN_EVENT")

    data = message.get("data") or {}
    if not isinstance(data, dict):
        raise ProtocolError("Event data must be a JSON object")

    if event_type == ClientEventType.START_RECOGNITION:
        return event_type, StartRecognition.from_data(data)
    elif event_type == ClientEventType.AUDIO_CHUNK:
        return event_type, AudioChunk.from_data(data)
    elif event_type == ClientEventType.SAVE_CONVERSATION:
        return event_type, SaveConversation.from_data(data)
    else:
        return event_type, None


def encode_event(event: Union[ServerEventType, str], data: Optional[Dict[str, Any]] = None) -> str:
    """Serialize an outbound event frame."""
    name = event.value if isinstance(event, ServerEventType) else event
    return encoder.encode({"event": name, "data": data or {}}).decode("utf-8")


def encode_audio(audio: bytes) -> str:
    return base64.b64encode(audio).decode("utf-8")
