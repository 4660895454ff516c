"""
Deepgram Speech-to-Text streaming client.

One client wraps one provider stream for one role:
- linear16, 16kHz, mono (the demultiplexer output)
- interim results enabled so the operator sees live text
- word-level confidences kept for pronunciation scoring

Provider errors are classified into `RecognitionError`. A hard session
duration limit (code 11 / "305 seconds" / "maximum ... duration") is flagged
with `is_duration_limit` so the restart coordinator can recover from it.
"""

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple
import time

import structlog
import websockets

from src.assist.config import get_config
from src.assist.errors import RecognitionError

logger = structlog.get_logger(__name__)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"

# Provider status code for "stream exceeded maximum allowed duration".
DURATION_LIMIT_CODE = 11
_DURATION_LIMIT_PATTERNS = (
    re.compile(r"305\s*seconds", re.IGNORECASE),
    re.compile(r"maximum\b.*\bduration", re.IGNORECASE),
    re.compile(r"exceeded\b.*\bstream duration", re.IGNORECASE),
)

TranscriptCallback = Callable[["TranscriptionResult"], Awaitable[None]]
ErrorCallback = Callable[[RecognitionError], Awaitable[None]]


def is_duration_limit_error(code: Any = None, message: Optional[str] = None) -> bool:
    """True when a provider error means the stream hit its lifetime limit."""
    if code is not None:
        try:
            if int(code) == DURATION_LIMIT_CODE:
                return True
        except (TypeError, ValueError):
            pass
    if message:
        return any(p.search(message) for p in _DURATION_LIMIT_PATTERNS)
    return False


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: float = 0.0
    speech_final: bool = False
    words: List[Tuple[str, float]] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)
    latency_ms: float = 0.0


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_ms: float = 0.0
    total_transcripts: int = 0
    final_transcripts: int = 0
    avg_latency_ms: float = 0.0

    def record_transcript(self, is_final: bool, latency_ms: float) -> None:
        self.total_transcripts += 1
        if is_final:
            self.final_transcripts += 1
        if self.total_transcripts > 0:
            self.avg_latency_ms = (
                (self.avg_latency_ms * (self.total_transcripts - 1) + latency_ms)
                / self.total_transcripts
            )


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_transcript: Optional[TranscriptCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        label: str = "",
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.label = label
        self._on_transcript = on_transcript
        self._on_error = on_error
        self._ws = None
        self._is_connected = False
        self._closing = False
        self._metrics = STTMetrics()
        self._last_audio_time: float = 0.0
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    def _build_url(self) -> str:
        return (
            f"{DEEPGRAM_URL}"
            f"?model={self.config.deepgram_model}"
            f"&language={self.config.deepgram_language}"
            f"&encoding=linear16"
            f"&sample_rate={self.config.sample_rate}"
            f"&channels=1"
            f"&punctuate=true"
            f"&interim_results=true"
            f"&smart_format=true"
        )

    async def connect(self) -> None:
        """
        Connect to Deepgram streaming API.

        Raises:
            RecognitionError: the stream could not be opened.
        """
        if self._is_connected:
            return

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            logger.info("Connecting to Deepgram", role=self.label, model=self.config.deepgram_model)
            self._ws = await websockets.connect(
                self._build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                role=self.label,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise RecognitionError(
                f"Could not open speech recognition stream: {e}",
                code="RECOGNITION_START_FAILED",
                details=[f"{type(e).__name__}: {e}"],
            ) from e

        self._is_connected = True
        self._closing = False
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", role=self.label)

    async def finish(self) -> None:
        """Flush pending results and close the stream."""
        self._closing = True

        if self._ws and self._is_connected:
            try:
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except Exception as e:
                logger.debug("CloseStream not sent", role=self.label, error=str(e))

        self._is_connected = False

        if self._receive_task:
            try:
                await asyncio.wait_for(self._receive_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._receive_task.cancel()
                await asyncio.gather(self._receive_task, return_exceptions=True)
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", role=self.label, error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected", role=self.label, metrics=self._metrics.__dict__)

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send linear16 audio to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        try:
            self._last_audio_time = time.time()
            self._metrics.total_audio_ms += len(audio_bytes) / (self.config.sample_rate * 2) * 1000
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", role=self.label, error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                    await self._handle_message(data)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram", role=self.label)
                except Exception as e:
                    logger.error("Error processing Deepgram message", role=self.label, error=str(e))

            if not self._closing:
                reason = getattr(self._ws, "close_reason", None) or "closed by provider"
                logger.warning("Deepgram stream ended", role=self.label, reason=reason)
                await self._emit_error(
                    RecognitionError(
                        f"Speech recognition stream closed: {reason}",
                        is_duration_limit=is_duration_limit_error(None, reason),
                        provider_code=getattr(self._ws, "close_code", None),
                    )
                )

        except websockets.exceptions.ConnectionClosed as e:
            if not self._closing:
                await self._report_close(e)
            else:
                logger.info("Deepgram connection closed", role=self.label)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", role=self.label, error=str(e))
            if not self._closing:
                await self._emit_error(RecognitionError(f"Speech recognition stream failed: {e}"))
        finally:
            self._is_connected = False

    async def _report_close(self, exc: "websockets.exceptions.ConnectionClosed") -> None:
        rcvd = getattr(exc, "rcvd", None)
        code = getattr(rcvd, "code", None)
        reason = getattr(rcvd, "reason", "") or str(exc)
        logger.warning("Deepgram connection closed unexpectedly", role=self.label, code=code, reason=reason)
        await self._emit_error(
            RecognitionError(
                f"Speech recognition stream closed: {reason}",
                is_duration_limit=is_duration_limit_error(None, reason),
                provider_code=code,
            )
        )

    async def _emit_error(self, error: RecognitionError) -> None:
        if self._on_error:
            await self._on_error(error)

    async def _handle_message(self, data: dict) -> None:
        """Handle a message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            channel = data.get("channel", {})
            alternatives = channel.get("alternatives", [])

            if not alternatives:
                return

            transcript = alternatives[0].get("transcript", "")
            confidence = alternatives[0].get("confidence", 0.0)
            is_final = data.get("is_final", False)
            speech_final = data.get("speech_final", False)

            if not transcript:
                return

            words = [
                (w.get("punctuated_word") or w.get("word", ""), float(w.get("confidence", 0.0)))
                for w in alternatives[0].get("words", [])
                if isinstance(w, dict)
            ]

            latency_ms = 0.0
            if self._last_audio_time > 0:
                latency_ms = (time.time() - self._last_audio_time) * 1000

            self._metrics.record_transcript(is_final, latency_ms)

            result = TranscriptionResult(
                text=transcript,
                is_final=is_final,
                confidence=confidence,
                speech_final=speech_final,
                words=words,
                latency_ms=latency_ms,
            )

            logger.debug(
                "STT transcript",
                role=self.label,
                text=transcript[:50] if len(transcript) > 50 else transcript,
                is_final=is_final,
            )

            if self._on_transcript:
                await self._on_transcript(result)

        elif msg_type_norm == "error":
            message = str(data.get("description") or data.get("message") or "Unknown")
            code = data.get("code", data.get("err_code"))
            logger.error("Deepgram error", role=self.label, error=message, details=data)
            await self._emit_error(
                RecognitionError(
                    f"Speech recognition error: {message}",
                    is_duration_limit=is_duration_limit_error(code, message),
                    provider_code=code,
                )
            )

        elif msg_type_norm == "metadata":
            logger.debug("Deepgram metadata", role=self.label, request_id=data.get("request_id"))


def create_stream_factory(config: Optional[Any] = None) -> Callable[..., DeepgramSTT]:
    """
    Build the factory recognition sessions use to open provider streams.

    The factory signature is `(role, on_transcript, on_error) -> stream`.
    """
    if config is None:
        config = get_config()

    def factory(role: Any, on_transcript: TranscriptCallback, on_error: ErrorCallback) -> DeepgramSTT:
        return DeepgramSTT(
            on_transcript=on_transcript,
            on_error=on_error,
            label=getattr(role, "value", str(role)),
            config=config,
        )

    return factory
