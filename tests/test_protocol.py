"""
Tests for the WebSocket event protocol.
"""

import base64
import json

import pytest

from src.assist.errors import ProtocolError
from src.assist.protocol import (
    AudioChunk,
    ClientEventType,
    SaveConversation,
    ServerEventType,
    StartRecognition,
    encode_audio,
    encode_event,
    parse_client_message,
)
from src.assist.roles import ConversationMode, Role


def _frame(event, data=None):
    message = {"event": event}
    if data is not None:
        message["data"] = data
    return json.dumps(message)


class TestParseClientMessage:

    def test_start_defaults_to_sales(self):
        event_type, event = parse_client_message(_frame("start-recognition"))
        assert event_type == ClientEventType.START_RECOGNITION
        assert event == StartRecognition(mode=ConversationMode.SALES, lead_ref=None)

    def test_start_vendor_with_lead(self):
        _, event = parse_client_message(_frame("start-recognition", {"mode": "Vendor", "leadRef": 42}))
        assert event.mode is ConversationMode.VENDOR
        assert event.lead_ref == "42"

    def test_start_unknown_mode(self):
        with pytest.raises(ProtocolError) as exc:
            parse_client_message(_frame("start-recognition", {"mode": "retail"}))
        assert exc.value.code == "INVALID_MODE"

    def test_audio_chunk(self):
        audio = b"\x01\x02\x03\x04"
        _, event = parse_client_message(
            _frame("audio-chunk", {"audioSource": "input_audio", "audioData": encode_audio(audio)})
        )
        assert event == AudioChunk(role=Role.OPERATOR, audio=audio)

    def test_audio_chunk_bad_source(self):
        with pytest.raises(ProtocolError) as exc:
            parse_client_message(_frame("audio-chunk", {"audioSource": "speaker", "audioData": ""}))
        assert exc.value.code == "INVALID_AUDIO_SOURCE"

    def test_audio_chunk_bad_base64(self):
        with pytest.raises(ProtocolError) as exc:
            parse_client_message(_frame("audio-chunk", {"audioSource": "operator", "audioData": "%%%"}))
        assert exc.value.code == "INVALID_AUDIO_DATA"

    def test_save_conversation(self):
        _, event = parse_client_message(
            _frame("save-conversation", {"outcome": "converted", "feedback": "ok", "aiHelpful": 1})
        )
        assert event == SaveConversation(outcome="converted", feedback="ok", ai_helpful=True)

    @pytest.mark.parametrize("event", ["request-response", "end-recognition"])
    def test_events_without_payload(self, event):
        event_type, payload = parse_client_message(_frame(event))
        assert event_type.value == event
        assert payload is None

    def test_bytes_input(self):
        event_type, _ = parse_client_message(_frame("end-recognition").encode())
        assert event_type == ClientEventType.END_RECOGNITION

    @pytest.mark.parametrize(
        "raw,code",
        [
            ("not json", "INVALID_MESSAGE"),
            ("[1, 2]", "INVALID_MESSAGE"),
            (json.dumps({"event": "start-recognition", "data": [1]}), "INVALID_MESSAGE"),
            (json.dumps({"event": "hangup"}), "UNKNOWN_EVENT"),
        ],
    )
    def test_rejected_frames(self, raw, code):
        with pytest.raises(ProtocolError) as exc:
            parse_client_message(raw)
        assert exc.value.code == code


class TestEncode:

    def test_event_frame(self):
        frame = json.loads(encode_event(ServerEventType.TRANSCRIPT, {"transcript": "hi"}))
        assert frame == {"event": "transcript", "data": {"transcript": "hi"}}

    def test_event_without_data(self):
        frame = json.loads(encode_event(ServerEventType.RECOGNITION_ENDED))
        assert frame == {"event": "recognition-ended", "data": {}}

    def test_encode_audio(self):
        assert base64.b64decode(encode_audio(b"\x00\xff")) == b"\x00\xff"
