"""
Per-connection conversation session.

A `ConversationSession` is the only owner of a connection's state: the
conversation context, the recognition coordinator, the capture handle and the
suggestion pipeline. Work reaches it through explicit channels:

    capture thread -> capture queue -> demux -> coordinator.write()
    provider callbacks -> event queue -> _consume_events()
    client frames -> handle_message()

Every `AssistError` is reported to the client in one place (`_report_error`).

Teardown order (end-recognition or disconnect):
1. capture handle
2. both recognition sessions
3. event consumer
4. conversation context

An in-flight suggestion is allowed to finish; its result is discarded.
"""

import asyncio
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set
import uuid

import structlog

from src.assist.audio import ChannelDemultiplexer
from src.assist.capture import AggregateAudioCapture, create_capture
from src.assist.config import get_config
from src.assist.context import ConversationContext
from src.assist.errors import (
    AssistError,
    DemuxError,
    PersistenceError,
    ProtocolError,
    ReasoningError,
    Severity,
    unexpected_error,
)
from src.assist.extract import Reasoner
from src.assist.logstore import ConversationLogRecord, ConversationLogWriter, LearningScheduler
from src.assist.pricing import PricingTable
from src.assist.prompts import format_learnings_context, house_guidance
from src.assist.pronunciation import score_utterance, summarize
from src.assist.protocol import (
    AudioChunk,
    ClientEventType,
    SaveConversation,
    ServerEventType,
    StartRecognition,
    encode_event,
    parse_client_message,
)
from src.assist.recognition import (
    RecognitionEvent,
    RecognitionEventKind,
    SessionRestartCoordinator,
    StreamFactory,
)
from src.assist.roles import ConversationMode, Role
from src.assist.suggestion import SuggestionPipeline, ThrottleGate

logger = structlog.get_logger(__name__)

SendMessage = Callable[[str], Awaitable[None]]
CaptureFactory = Callable[..., AggregateAudioCapture]

MAX_LOGGED_TRANSCRIPT_CHARS = 80
LEARNINGS_LOOKBACK = 20


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CLOSED = "closed"


class CaptureMode(str, Enum):
    AGGREGATE = "aggregate"
    CLIENT = "client"


@dataclass
class SessionServices:
    """Shared collaborators injected into every session."""
    reasoner: Reasoner
    log_writer: ConversationLogWriter
    pricing: PricingTable
    stream_factory: StreamFactory
    learning_scheduler: Optional[LearningScheduler] = None
    capture_factory: CaptureFactory = create_capture


@dataclass
class SessionMetrics:
    transcripts: int = 0
    finals: int = 0
    suggestions: int = 0
    suggestion_failures: int = 0
    errors: int = 0
    saves: int = 0
    stream_restarts: int = 0


def _truncate(text: str, limit: int = MAX_LOGGED_TRANSCRIPT_CHARS) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class ConversationSession:
    """Actor for one operator connection."""

    def __init__(
        self,
        send_message: SendMessage,
        services: SessionServices,
        *,
        config: Optional[Any] = None,
        operator_id: Optional[str] = None,
        connection_id: Optional[str] = None,
    ):
        self.config = config or get_config()
        self.services = services
        self.operator_id = operator_id
        self.connection_id = connection_id or uuid.uuid4().hex[:12]
        self._send_message = send_message
        self._log = logger.bind(connection_id=self.connection_id)

        self._state = SessionState.IDLE
        self.context: Optional[ConversationContext] = None
        self.coordinator: Optional[SessionRestartCoordinator] = None
        self.pipeline: Optional[SuggestionPipeline] = None
        self.capture: Optional[AggregateAudioCapture] = None
        self.capture_mode: Optional[CaptureMode] = None
        self._demux: Optional[ChannelDemultiplexer] = None
        self._events: "asyncio.Queue[RecognitionEvent]" = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._summary_sent = False
        self._saved_id: Optional[str] = None
        self._finishing = False
        self._warned_audio_chunk = False
        self.metrics = SessionMetrics()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SessionState.RUNNING

    @property
    def saved_conversation_id(self) -> Optional[str]:
        return self._saved_id

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _emit(self, event: ServerEventType, data: Optional[Dict[str, Any]] = None) -> None:
        if self._state == SessionState.CLOSED:
            return
        try:
            await self._send_message(encode_event(event, data))
        except Exception as e:
            self._log.warning("Failed to send event", event=event.value, error=str(e))

    async def _report_error(self, error: AssistError) -> None:
        self.metrics.errors += 1
        log = self._log.error if error.severity in (Severity.FATAL, Severity.ERROR) else self._log.warning
        log(
            "Session error",
            code=error.code,
            error_type=error.error_type.value,
            severity=error.severity.value,
            message=error.message,
        )
        await self._emit(ServerEventType.ERROR, error.to_payload())

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle one client frame.

        Typed errors are reported to the client and never propagate; the
        connection stays open.
        """
        if self._state == SessionState.CLOSED:
            return
        try:
            event_type, event = parse_client_message(raw_message)

            if event_type == ClientEventType.START_RECOGNITION:
                await self._handle_start(event)
            elif event_type == ClientEventType.AUDIO_CHUNK:
                await self._handle_audio_chunk(event)
            elif event_type == ClientEventType.REQUEST_RESPONSE:
                await self._handle_request_response()
            elif event_type == ClientEventType.SAVE_CONVERSATION:
                await self._handle_save(event)
            elif event_type == ClientEventType.END_RECOGNITION:
                await self._handle_end()

        except AssistError as e:
            await self._report_error(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.exception("Unexpected error handling message")
            await self._report_error(unexpected_error(e))

    # ------------------------------------------------------------------
    # start-recognition
    # ------------------------------------------------------------------

    async def _handle_start(self, event: StartRecognition) -> None:
        if self._state in (SessionState.STARTING, SessionState.RUNNING):
            raise ProtocolError("Recognition already started", code="ALREADY_STARTED")
        if self._state == SessionState.STOPPING:
            raise ProtocolError("Previous recognition is still stopping", code="STOPPING")

        config = self.config
        self._state = SessionState.STARTING
        self.context = ConversationContext(
            event.mode,
            lead_ref=event.lead_ref,
            operator_id=self.operator_id,
            operator_label=config.operator_label,
        )
        self._summary_sent = False
        self._saved_id = None
        self._events = asyncio.Queue()

        self.pipeline = SuggestionPipeline(
            self.context,
            self.services.reasoner,
            self.services.pricing,
            gate=ThrottleGate(
                config.suggestion_min_interval_seconds,
                config.suggestion_max_interval_seconds,
            ),
            learnings_provider=self._load_learnings if event.mode is ConversationMode.VENDOR else None,
            guidance=house_guidance(config, event.mode),
            history_lines=config.suggestion_history_lines,
            extraction_temperature=config.extraction_temperature,
            response_temperature=config.response_temperature,
            response_max_tokens=config.response_max_tokens,
        )
        self.coordinator = SessionRestartCoordinator(
            self.services.stream_factory,
            self._events,
            restart_delay_seconds=config.restart_delay_seconds,
            max_lifetime_seconds=config.recognition_max_session_seconds,
            on_restarted=self._on_stream_restarted,
            on_restart_failed=self._report_error,
        )
        self._consumer_task = asyncio.create_task(self._consume_events())

        try:
            await self.coordinator.start()
            if config.use_backend_audio_capture:
                await self._start_capture()
            else:
                self.capture_mode = CaptureMode.CLIENT
        except AssistError:
            await self._teardown()
            self.context = None
            self.pipeline = None
            self._state = SessionState.IDLE
            raise

        self._state = SessionState.RUNNING
        self._log.info(
            "Recognition started",
            mode=event.mode.value,
            lead_ref=event.lead_ref,
            capture_mode=self.capture_mode.value,
        )
        await self._emit(
            ServerEventType.RECOGNITION_STARTED,
            {
                "mode": event.mode.value,
                "leadRef": event.lead_ref,
                "captureMode": self.capture_mode.value,
            },
        )

    async def _start_capture(self) -> None:
        config = self.config
        self._demux = ChannelDemultiplexer(
            config.channel_assignment,
            channel_count=config.audio_channels,
        )
        self.capture = self.services.capture_factory(config, self._on_capture_audio, self._on_capture_error)
        self.capture_mode = CaptureMode.AGGREGATE
        await self.capture.start()

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------

    async def _on_capture_audio(self, chunk: bytes) -> None:
        if self._demux is None or self.coordinator is None:
            return
        try:
            result = self._demux.feed(chunk)
        except DemuxError as e:
            await self._report_error(e)
            return

        if result.operator:
            await self.coordinator.write(Role.OPERATOR, result.operator)
        if result.counterparty:
            await self.coordinator.write(Role.COUNTERPARTY, result.counterparty)

    async def _on_capture_error(self, error: AssistError) -> None:
        await self._report_error(error)
        if error.is_fatal and self._state == SessionState.RUNNING:
            self._log.error("Capture failed; ending conversation", code=error.code)
            self._state = SessionState.STOPPING
            # called from a capture task, which the teardown cancels
            self._spawn(self._handle_end())

    async def _handle_audio_chunk(self, event: AudioChunk) -> None:
        if self._state != SessionState.RUNNING or self.coordinator is None:
            return
        if self.capture_mode is not CaptureMode.CLIENT:
            if not self._warned_audio_chunk:
                self._warned_audio_chunk = True
                self._log.warning("Ignoring client audio while aggregate capture is active")
            return
        if event.audio:
            await self.coordinator.write(event.role, event.audio)

    # ------------------------------------------------------------------
    # Recognition events
    # ------------------------------------------------------------------

    async def _consume_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if event.kind == RecognitionEventKind.TRANSCRIPT:
                    await self._handle_transcript(event)
                elif event.kind == RecognitionEventKind.LIMIT:
                    self._spawn(self._handle_limit(event))
                elif event.kind == RecognitionEventKind.ERROR and event.error is not None:
                    await self._report_error(event.error)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.exception("Recognition event handling failed", kind=event.kind.value)
                await self._report_error(unexpected_error(e))

    async def _handle_limit(self, event: RecognitionEvent) -> None:
        if self.coordinator is not None:
            await self.coordinator.handle_limit(event.role, event.generation)

    async def _on_stream_restarted(self, payload: Dict[str, Any]) -> None:
        self.metrics.stream_restarts += 1
        await self._emit(ServerEventType.STREAM_RESTARTED, payload)

    async def _handle_transcript(self, event: RecognitionEvent) -> None:
        result = event.result
        context = self.context
        if result is None or context is None or not result.text.strip():
            return

        self.metrics.transcripts += 1
        payload: Dict[str, Any] = {
            "audioSource": event.role.value,
            "transcript": result.text,
            "isFinal": result.is_final,
        }
        if result.confidence is not None:
            payload["confidence"] = result.confidence
        await self._emit(ServerEventType.TRANSCRIPT, payload)

        if not result.is_final:
            return

        line = context.append_final(
            event.role,
            result.text,
            timestamp=result.timestamp,
            confidence=result.confidence,
        )
        if line is None:
            return
        self.metrics.finals += 1
        self._log.debug("Final transcript", role=event.role.value, text=_truncate(line.text))

        if event.role is Role.OPERATOR:
            sample = score_utterance(line.text, result.confidence, [c for _, c in result.words])
            context.pronunciation.append(sample)
            await self._emit(ServerEventType.PRONUNCIATION_SCORE, sample.to_dict())
        else:
            self._trigger_suggestion(manual=False)

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def _trigger_suggestion(self, *, manual: bool) -> bool:
        pipeline = self.pipeline
        if pipeline is None or self._state != SessionState.RUNNING:
            return False
        if not pipeline.try_begin(manual=manual):
            return False
        self._spawn(self._run_suggestion(pipeline))
        return True

    async def _run_suggestion(self, pipeline: SuggestionPipeline) -> None:
        try:
            result = await pipeline.run()
        except ReasoningError as e:
            self.metrics.suggestion_failures += 1
            if pipeline is self.pipeline:
                await self._report_error(e)
            return
        except Exception as e:
            self.metrics.suggestion_failures += 1
            self._log.exception("Suggestion pipeline failed")
            if pipeline is self.pipeline:
                await self._report_error(unexpected_error(e))
            return

        if pipeline is not self.pipeline or self._state == SessionState.CLOSED:
            self._log.debug("Discarding suggestion for a finished conversation")
            return

        self.metrics.suggestions += 1
        await self._emit(ServerEventType.OPERATOR_RESPONSE, result.to_payload())

    async def _handle_request_response(self) -> None:
        if self.context is None or self.pipeline is None:
            raise ProtocolError("No active conversation", code="NOT_STARTED")
        if not self.context.lines:
            self._log.debug("Manual suggestion requested with empty transcript")
            return
        if not self._trigger_suggestion(manual=True):
            self._log.info("Manual suggestion skipped; one is already running")

    async def _load_learnings(self) -> str:
        learnings = await self.services.log_writer.recent_learnings(LEARNINGS_LOOKBACK)
        return format_learnings_context(learnings)

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    async def _handle_save(self, event: SaveConversation) -> None:
        conversation_id = await self._save(
            outcome=event.outcome,
            feedback=event.feedback,
            ai_helpful=event.ai_helpful,
        )
        if conversation_id is not None:
            await self._emit_pronunciation_summary()

    async def _save(
        self,
        *,
        outcome: Optional[str] = None,
        feedback: Optional[str] = None,
        ai_helpful: Optional[bool] = None,
        notify: bool = True,
    ) -> Optional[str]:
        context = self.context
        if context is None or context.transcript_chars < self.config.min_transcript_chars_to_save:
            if notify:
                await self._emit(
                    ServerEventType.CONVERSATION_SAVED,
                    {"success": False, "message": "No conversation to save"},
                )
            return None

        record = ConversationLogRecord.from_context(
            context,
            outcome=outcome,
            feedback=feedback,
            ai_helpful=ai_helpful,
        )
        try:
            conversation_id = await self.services.log_writer.write(record)
        except Exception as e:
            error = e if isinstance(e, PersistenceError) else PersistenceError(
                "Failed to save conversation",
                details=[f"{type(e).__name__}: {e}"],
            )
            if notify:
                await self._emit(
                    ServerEventType.CONVERSATION_SAVED,
                    {"success": False, "message": "Failed to save conversation"},
                )
            await self._report_error(error)
            return None

        self._saved_id = conversation_id
        self.metrics.saves += 1
        self._log.info(
            "Conversation saved",
            conversation_id=conversation_id,
            mode=context.mode.value,
            outcome=record.outcome.value,
            lines=record.line_count,
            duration_seconds=record.duration_seconds,
        )
        if notify:
            await self._emit(
                ServerEventType.CONVERSATION_SAVED,
                {
                    "success": True,
                    "conversationId": conversation_id,
                    "message": "Conversation saved for AI learning",
                },
            )

        scheduler = self.services.learning_scheduler
        if context.mode is ConversationMode.VENDOR and scheduler is not None:
            scheduler.schedule(conversation_id, record.transcript)
        return conversation_id

    async def _emit_pronunciation_summary(self) -> None:
        context = self.context
        if self._summary_sent or context is None or not context.pronunciation:
            return
        self._summary_sent = True
        summary = summarize(context.pronunciation)
        self._log.info(
            "Pronunciation summary",
            overall_score=summary.overall_score,
            segments=len(summary.segment_scores),
        )
        await self._emit(ServerEventType.PRONUNCIATION_SUMMARY, summary.to_dict())

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _handle_end(self) -> None:
        if self._finishing:
            return
        await self._finish_conversation()
        await self._emit(ServerEventType.RECOGNITION_ENDED)

    async def _finish_conversation(self) -> None:
        """Stop recognition, auto-save and summarize, then drop the context."""
        if self._finishing:
            return
        self._finishing = True
        try:
            await self._stop_recognition()
            if self.context is not None:
                if self.config.auto_save_on_disconnect and self._saved_id is None:
                    await self._save(outcome="pending", notify=False)
                await self._emit_pronunciation_summary()
            self.context = None
            self.pipeline = None
            if self._state != SessionState.CLOSED:
                self._state = SessionState.IDLE
        finally:
            self._finishing = False

    async def _stop_recognition(self) -> None:
        if self._state == SessionState.RUNNING:
            self._state = SessionState.STOPPING
        await self._teardown()

    async def _teardown(self) -> None:
        capture, self.capture = self.capture, None
        if capture is not None:
            try:
                await capture.stop()
            except Exception as e:
                self._log.error("Error stopping capture", error=str(e))

        coordinator, self.coordinator = self.coordinator, None
        if coordinator is not None:
            try:
                await coordinator.stop()
            except Exception as e:
                self._log.error("Error stopping recognition", error=str(e))

        consumer, self._consumer_task = self._consumer_task, None
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
        await self._drain_transcripts()

        if self._demux is not None:
            self._log.info("Demux stopped", frames_processed=self._demux.frames_processed)
            self._demux.reset()
            self._demux = None
        self.capture_mode = None

    async def _drain_transcripts(self) -> None:
        """Keep finals flushed while the provider streams were closing."""
        while not self._events.empty():
            event = self._events.get_nowait()
            if event.kind != RecognitionEventKind.TRANSCRIPT:
                continue
            try:
                await self._handle_transcript(event)
            except Exception:
                self._log.exception("Failed to record flushed transcript")

    async def close(self) -> None:
        """Connection closed. Safe to call more than once."""
        if self._state == SessionState.CLOSED:
            return
        await self._finish_conversation()
        self._state = SessionState.CLOSED

        # Let in-flight suggestions finish; their results are discarded.
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._log.info("Session closed", **asdict(self.metrics))

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


class SessionRegistry:
    """Live sessions by connection id. Lookup only; sessions own their state."""

    def __init__(self):
        self._sessions: Dict[str, ConversationSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sessions

    def add(self, session: ConversationSession) -> None:
        self._sessions[session.connection_id] = session

    def get(self, connection_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(connection_id)

    def remove(self, connection_id: str) -> Optional[ConversationSession]:
        return self._sessions.pop(connection_id, None)

    @property
    def restart_count(self) -> int:
        return sum(s.metrics.stream_restarts for s in self._sessions.values())

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(s.close() for s in sessions), return_exceptions=True)


async def create_session(
    send_message: SendMessage,
    services: SessionServices,
    *,
    config: Optional[Any] = None,
    operator_id: Optional[str] = None,
    connection_id: Optional[str] = None,
) -> ConversationSession:
    """
    Create a session for a new connection.

    Args:
        send_message: Function to send frames to the client WebSocket
        services: Shared collaborators (reasoning, store, pricing, STT)
    """
    session = ConversationSession(
        send_message,
        services,
        config=config,
        operator_id=operator_id,
        connection_id=connection_id,
    )
    logger.info("Session created", connection_id=session.connection_id, operator_id=operator_id)
    return session
