"""
Pytest configuration and fixtures.
"""

import asyncio
import os
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest

from src.assist.errors import ReasoningError, RecognitionError
from src.assist.extract import ConversationExtraction, ResponseDraft
from src.assist.stt import TranscriptionResult


@pytest.fixture(autouse=True)
def mock_env_vars(tmp_path):
    """Mock environment variables for tests."""
    env_vars = {
        "PORT": "7860",
        "LOG_LEVEL": "DEBUG",
        "JWT_SECRET": "test_jwt_secret",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "GROQ_API_KEY": "test_groq_key",
        "GROQ_MODEL": "llama-3.3-70b-versatile",
        "VALIDATE_LLM_MODEL": "false",
        "USE_BACKEND_AUDIO_CAPTURE": "false",
        "RESTART_DELAY_SECONDS": "0.01",
        "CAPTURE_WATCHDOG_SECONDS": "0.05",
        "CONVERSATION_LOG_DIR": str(tmp_path / "conversations"),
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.assist.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeStream:
    """Stands in for a Deepgram stream; tests drive its callbacks."""

    def __init__(self, role, on_transcript, on_error, *, fail_connect: bool = False):
        self.role = role
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.fail_connect = fail_connect
        self.connected = False
        self.finished = False
        self.sent: List[bytes] = []

    async def connect(self) -> None:
        if self.fail_connect:
            raise RecognitionError("connect refused", code="RECOGNITION_START_FAILED")
        self.connected = True

    async def send_audio(self, audio_bytes: bytes) -> None:
        self.sent.append(audio_bytes)

    async def finish(self) -> None:
        self.finished = True

    async def say(self, text: str, *, is_final: bool = True, confidence: float = 0.9) -> None:
        words = [(w, confidence) for w in text.split()]
        await self.on_transcript(
            TranscriptionResult(text=text, is_final=is_final, confidence=confidence, words=words)
        )

    async def hit_duration_limit(self) -> None:
        await self.on_error(
            RecognitionError(
                "Stream exceeded maximum allowed duration",
                is_duration_limit=True,
                provider_code=11,
            )
        )


class FakeStreamFactory:
    """Records every stream it creates, newest last per role."""

    def __init__(self):
        self.created: List[FakeStream] = []
        self.fail_connect = False

    def __call__(self, role, on_transcript, on_error) -> FakeStream:
        stream = FakeStream(role, on_transcript, on_error, fail_connect=self.fail_connect)
        self.created.append(stream)
        return stream

    def latest(self, role) -> FakeStream:
        return [s for s in self.created if s.role is role][-1]


class FakeReasoner:
    """
    Scripted reasoning service.

    `responses` maps stage name to a model instance, an exception, or a list
    of those consumed in order.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None, delay: float = 0.0):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, response_model, *, temperature=0.3, max_tokens=None, stage="response"):
        self.calls.append({"stage": stage, "messages": messages, "model": response_model})
        if self.delay:
            await asyncio.sleep(self.delay)

        value = self.responses.get(stage)
        if isinstance(value, list):
            value = value.pop(0) if value else None
        if isinstance(value, BaseException):
            raise value
        if value is None:
            if response_model is ConversationExtraction:
                return ConversationExtraction()
            if response_model is ResponseDraft:
                return ResponseDraft(response="How many units do you need?")
            raise ReasoningError(f"no scripted response for {stage}", code=f"{stage.upper()}_FAILED")
        return value

    def stages(self) -> List[str]:
        return [c["stage"] for c in self.calls]


@pytest.fixture
def stream_factory():
    return FakeStreamFactory()


@pytest.fixture
def fake_reasoner():
    return FakeReasoner()


@pytest.fixture
def make_reasoner():
    return FakeReasoner
