"""
Tests for the Deepgram streaming client.
"""

from unittest.mock import AsyncMock

import pytest

from src.assist.roles import Role
from src.assist.stt import DeepgramSTT, create_stream_factory, is_duration_limit_error


@pytest.mark.parametrize(
    "code,message,expected",
    [
        (11, None, True),
        ("11", None, True),
        (None, "Stream exceeded the 305 seconds limit", True),
        (None, "Exceeded maximum allowed stream duration", True),
        (1011, "internal error", False),
        ("abc", None, False),
        (None, None, False),
    ],
)
def test_is_duration_limit_error(code, message, expected):
    assert is_duration_limit_error(code, message) is expected


def _results(transcript, is_final=True, words=None, confidence=0.93):
    return {
        "type": "Results",
        "is_final": is_final,
        "speech_final": is_final,
        "channel": {
            "alternatives": [
                {
                    "transcript": transcript,
                    "confidence": confidence,
                    "words": words or [],
                }
            ]
        },
    }


@pytest.mark.asyncio
async def test_results_become_transcription_results():
    on_transcript = AsyncMock()
    stt = DeepgramSTT(on_transcript=on_transcript, label="counterparty")

    await stt._handle_message(
        _results(
            "We need three units.",
            words=[
                {"word": "we", "punctuated_word": "We", "confidence": 0.99},
                {"word": "need", "confidence": 0.8},
            ],
        )
    )

    result = on_transcript.await_args.args[0]
    assert result.text == "We need three units."
    assert result.is_final is True
    assert result.confidence == 0.93
    assert result.words == [("We", 0.99), ("need", 0.8)]
    assert stt.metrics.final_transcripts == 1


@pytest.mark.asyncio
async def test_empty_results_are_ignored():
    on_transcript = AsyncMock()
    stt = DeepgramSTT(on_transcript=on_transcript)

    await stt._handle_message(_results(""))
    await stt._handle_message({"type": "Results", "channel": {"alternatives": []}})

    on_transcript.assert_not_awaited()


@pytest.mark.asyncio
async def test_duration_error_is_flagged():
    on_error = AsyncMock()
    stt = DeepgramSTT(on_error=on_error)

    await stt._handle_message({"type": "Error", "code": 11, "description": "Stream duration exceeded"})

    error = on_error.await_args.args[0]
    assert error.is_duration_limit is True
    assert error.provider_code == 11


@pytest.mark.asyncio
async def test_other_provider_error_is_not_a_limit():
    on_error = AsyncMock()
    stt = DeepgramSTT(on_error=on_error)

    await stt._handle_message({"type": "Error", "message": "bad audio"})

    error = on_error.await_args.args[0]
    assert error.is_duration_limit is False
    assert "bad audio" in error.message


@pytest.mark.asyncio
async def test_send_audio_only_when_connected():
    stt = DeepgramSTT()
    stt._ws = AsyncMock()

    await stt.send_audio(b"\x00" * 320)
    assert stt._ws.send.await_count == 0

    stt._is_connected = True
    await stt.send_audio(b"\x00" * 320)
    stt._ws.send.assert_awaited_once_with(b"\x00" * 320)
    assert stt.metrics.total_audio_ms == pytest.approx(10.0)


def test_url_requests_linear16_mono():
    url = DeepgramSTT()._build_url()
    assert "encoding=linear16" in url
    assert "channels=1" in url
    assert "interim_results=true" in url
    assert "sample_rate=16000" in url


def test_factory_labels_streams_by_role():
    factory = create_stream_factory()
    stream = factory(Role.OPERATOR, AsyncMock(), AsyncMock())

    assert isinstance(stream, DeepgramSTT)
    assert stream.label == "operator"
