"""
Recognition sessions and the paired restart coordinator.

Each connection owns two `RecognitionSession`s (operator, counterparty). A
session wraps one provider stream and pushes everything it hears onto the
connection's event queue as `RecognitionEvent`s; it never calls back into the
conversation directly.

Streaming providers cap how long a single stream may live. When either
session reports that limit (provider error, or the proactive lifetime timer),
the `SessionRestartCoordinator` replaces both sessions:

    1. set the restart flag (sibling and stale signals are ignored)
    2. mark both sessions Restarting and end them
    3. wait `restart_delay_seconds` for provider resources to release
    4. open two new sessions under a new generation
    5. notify the transport (`stream-restarted`)

Audio written while a restart is in progress is dropped and counted, never
queued.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Sequence
import time

import structlog

from src.assist.errors import RecognitionError, Severity
from src.assist.roles import Role
from src.assist.stt import ErrorCallback, TranscriptCallback, TranscriptionResult

logger = structlog.get_logger(__name__)

RESTART_MESSAGE = "Speech recognition restarted to stay within the provider session limit"


class SessionStatus(str, Enum):
    """Lifecycle of one recognition session."""
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    RESTARTING = "restarting"
    CLOSED = "closed"
    FAILED = "failed"


class RecognitionEventKind(str, Enum):
    TRANSCRIPT = "transcript"
    ERROR = "error"
    LIMIT = "limit"


@dataclass
class RecognitionEvent:
    """Something a recognition session observed, tagged with its origin."""
    kind: RecognitionEventKind
    role: Role
    generation: int
    result: Optional[TranscriptionResult] = None
    error: Optional[RecognitionError] = None


class RecognitionStream(Protocol):
    """Provider stream handle (see `src.assist.stt.DeepgramSTT`)."""

    async def connect(self) -> None: ...

    async def send_audio(self, audio_bytes: bytes) -> None: ...

    async def finish(self) -> None: ...


StreamFactory = Callable[[Role, TranscriptCallback, ErrorCallback], RecognitionStream]


class RecognitionSession:
    """One provider stream for one role."""

    def __init__(
        self,
        role: Role,
        stream_factory: StreamFactory,
        events: "asyncio.Queue[RecognitionEvent]",
        *,
        generation: int = 0,
        max_lifetime_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.role = role
        self.generation = generation
        self._stream_factory = stream_factory
        self._events = events
        self._max_lifetime_seconds = max_lifetime_seconds
        self._clock = clock
        self._stream: Optional[RecognitionStream] = None
        self._status = SessionStatus.IDLE
        self._started_at: Optional[float] = None
        self._lifetime_task: Optional[asyncio.Task] = None
        self._warned_inactive = False
        self.bytes_written = 0
        self.dropped_writes = 0

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def started_at(self) -> Optional[float]:
        return self._started_at

    @property
    def is_active(self) -> bool:
        return self._status == SessionStatus.ACTIVE

    async def start(self) -> None:
        """
        Open the provider stream.

        Raises:
            RecognitionError: the stream could not be opened; status is Failed.
        """
        self._status = SessionStatus.STARTING
        self._stream = self._stream_factory(self.role, self._on_transcript, self._on_error)
        try:
            await self._stream.connect()
        except RecognitionError:
            self._status = SessionStatus.FAILED
            raise
        except Exception as e:
            self._status = SessionStatus.FAILED
            raise RecognitionError(
                f"Could not start {self.role.value} recognition: {e}",
                code="RECOGNITION_START_FAILED",
            ) from e

        self._started_at = self._clock()
        self._status = SessionStatus.ACTIVE
        self._warned_inactive = False
        if self._max_lifetime_seconds:
            self._lifetime_task = asyncio.create_task(self._lifetime_watch())
        logger.info("Recognition session active", role=self.role.value, generation=self.generation)

    async def write(self, buffer: bytes) -> bool:
        """Forward audio if Active; otherwise drop it and warn once."""
        if self._status != SessionStatus.ACTIVE or self._stream is None:
            self.dropped_writes += 1
            if not self._warned_inactive:
                self._warned_inactive = True
                logger.warning(
                    "Dropping audio for inactive recognition session",
                    role=self.role.value,
                    status=self._status.value,
                    generation=self.generation,
                )
            return False

        await self._stream.send_audio(buffer)
        self.bytes_written += len(buffer)
        return True

    def mark_restarting(self) -> None:
        if self._status != SessionStatus.CLOSED:
            self._status = SessionStatus.RESTARTING
            self._warned_inactive = False

    async def end(self) -> None:
        """Close the provider stream. Safe to call more than once."""
        if self._lifetime_task and self._lifetime_task is not asyncio.current_task():
            self._lifetime_task.cancel()
            await asyncio.gather(self._lifetime_task, return_exceptions=True)
        self._lifetime_task = None

        previous = self._status
        self._status = SessionStatus.CLOSED
        if self._stream is None or previous == SessionStatus.CLOSED:
            return

        try:
            await self._stream.finish()
        except Exception as e:
            logger.warning("Error ending recognition stream", role=self.role.value, error=str(e))
        logger.info(
            "Recognition session closed",
            role=self.role.value,
            generation=self.generation,
            bytes_written=self.bytes_written,
            dropped_writes=self.dropped_writes,
        )

    async def _on_transcript(self, result: TranscriptionResult) -> None:
        # Results flushed while a stream is being finished are still real speech.
        self._events.put_nowait(
            RecognitionEvent(
                kind=RecognitionEventKind.TRANSCRIPT,
                role=self.role,
                generation=self.generation,
                result=result,
            )
        )

    async def _on_error(self, error: RecognitionError) -> None:
        if self._status in (SessionStatus.CLOSED, SessionStatus.RESTARTING):
            logger.debug("Ignoring error from closing session", role=self.role.value, error=error.message)
            return

        if error.is_duration_limit:
            self._signal_limit(reason=error.message)
            return

        self._status = SessionStatus.FAILED
        self._events.put_nowait(
            RecognitionEvent(
                kind=RecognitionEventKind.ERROR,
                role=self.role,
                generation=self.generation,
                error=error,
            )
        )

    async def _lifetime_watch(self) -> None:
        await asyncio.sleep(self._max_lifetime_seconds or 0)
        if self._status == SessionStatus.ACTIVE:
            self._signal_limit(reason="session lifetime reached")

    def _signal_limit(self, *, reason: str) -> None:
        logger.info(
            "Recognition session limit reached",
            role=self.role.value,
            generation=self.generation,
            reason=reason,
        )
        self._events.put_nowait(
            RecognitionEvent(
                kind=RecognitionEventKind.LIMIT,
                role=self.role,
                generation=self.generation,
            )
        )


class SessionRestartCoordinator:
    """
    Owns both recognition sessions of a connection and restarts them together.

    Exactly one restart cycle runs at a time: the restart flag is set before
    the first await, and limit signals carrying an older generation are
    ignored, so a sibling signalling the same limit a few milliseconds later
    does not cause a second cycle.
    """

    def __init__(
        self,
        stream_factory: StreamFactory,
        events: "asyncio.Queue[RecognitionEvent]",
        *,
        restart_delay_seconds: float = 0.1,
        max_lifetime_seconds: Optional[float] = None,
        on_restarted: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        on_restart_failed: Optional[Callable[[RecognitionError], Awaitable[None]]] = None,
        roles: Sequence[Role] = (Role.OPERATOR, Role.COUNTERPARTY),
    ):
        self._stream_factory = stream_factory
        self._events = events
        self._restart_delay_seconds = restart_delay_seconds
        self._max_lifetime_seconds = max_lifetime_seconds
        self._on_restarted = on_restarted
        self._on_restart_failed = on_restart_failed
        self._roles = tuple(roles)
        self._sessions: Dict[Role, RecognitionSession] = {}
        self._generation = 0
        self._restarting = False
        self._closed = True
        self.restart_count = 0
        self.dropped_writes = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_restarting(self) -> bool:
        return self._restarting

    @property
    def is_running(self) -> bool:
        return not self._closed

    def session(self, role: Role) -> Optional[RecognitionSession]:
        return self._sessions.get(role)

    def _new_session(self, role: Role) -> RecognitionSession:
        return RecognitionSession(
            role,
            self._stream_factory,
            self._events,
            generation=self._generation,
            max_lifetime_seconds=self._max_lifetime_seconds,
        )

    async def _open_sessions(self) -> None:
        self._generation += 1
        self._sessions = {role: self._new_session(role) for role in self._roles}
        results = await asyncio.gather(
            *(s.start() for s in self._sessions.values()),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            await self._end_all()
            first = failures[0]
            if isinstance(first, RecognitionError):
                raise first
            raise RecognitionError(f"Could not start recognition: {first}", code="RECOGNITION_START_FAILED") from first

    async def _end_all(self) -> None:
        if not self._sessions:
            return
        await asyncio.gather(*(s.end() for s in self._sessions.values()), return_exceptions=True)

    async def start(self) -> None:
        """
        Open both sessions.

        Raises:
            RecognitionError: either session failed to open; both are closed.
        """
        self._closed = False
        try:
            await self._open_sessions()
        except RecognitionError:
            self._closed = True
            raise

    async def write(self, role: Role, buffer: bytes) -> bool:
        """Route audio to the role's session; dropped during a restart."""
        session = self._sessions.get(role)
        if self._restarting or self._closed or session is None:
            self.dropped_writes += 1
            return False
        return await session.write(buffer)

    async def handle_limit(self, role: Role, generation: int) -> bool:
        """
        React to a duration-limit signal from one session.

        Returns True if this call performed the restart cycle.
        """
        if self._closed:
            return False
        if self._restarting or generation != self._generation:
            logger.debug(
                "Ignoring duplicate limit signal",
                role=role.value,
                signal_generation=generation,
                current_generation=self._generation,
                restarting=self._restarting,
            )
            return False

        self._restarting = True
        try:
            logger.info("Restarting recognition sessions", trigger_role=role.value, generation=generation)
            for session in self._sessions.values():
                session.mark_restarting()
            await self._end_all()

            await asyncio.sleep(self._restart_delay_seconds)
            if self._closed:
                return False

            await self._open_sessions()
            if self._closed:
                await self._end_all()
                return False

            self.restart_count += 1
            logger.info(
                "Recognition sessions restarted",
                generation=self._generation,
                restart_count=self.restart_count,
                dropped_writes=self.dropped_writes,
            )
            if self._on_restarted:
                await self._on_restarted({"streamType": "both", "message": RESTART_MESSAGE})
            return True

        except RecognitionError as e:
            logger.error("Recognition restart failed", error=e.message)
            if self._on_restart_failed:
                await self._on_restart_failed(
                    RecognitionError(
                        f"Failed to restart speech recognition: {e.message}",
                        code="RESTART_FAILED",
                        severity=Severity.ERROR,
                        details=e.details,
                    )
                )
            return False
        finally:
            self._restarting = False

    async def stop(self) -> None:
        """Close both sessions; later limit signals and writes are ignored."""
        self._closed = True
        await self._end_all()
