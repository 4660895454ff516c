"""
Conversation log storage and background learning extraction.

Records are stored per mode (sales / vendor). The file-backed store keeps one
JSONL file per mode; file I/O runs in a worker thread and writes are
serialized per store.

Vendor records carry a `processed` flag so learning extraction runs at most
once per record, even if it is scheduled again by hand.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Set
import uuid

import msgspec
import structlog

from src.assist.context import ConversationContext
from src.assist.errors import PersistenceError
from src.assist.extract import Reasoner, extract_vendor_learnings
from src.assist.roles import ConversationMode

logger = structlog.get_logger(__name__)

encoder = msgspec.json.Encoder()
decoder = msgspec.json.Decoder()


class Outcome(str, Enum):
    PENDING = "pending"
    CONVERTED = "converted"
    LOST = "lost"
    CALLBACK = "callback"
    NO_SALE = "no_sale"


def parse_outcome(value: Any) -> Outcome:
    if isinstance(value, Outcome):
        return value
    try:
        return Outcome(str(value or "pending").strip().lower())
    except ValueError:
        logger.warning("Unknown outcome; using pending", outcome=value)
        return Outcome.PENDING


@dataclass
class ConversationLogRecord:
    """Durable record of one conversation."""
    mode: ConversationMode
    transcript: str
    lines: List[Dict[str, Any]] = field(default_factory=list)
    extracted_info: Dict[str, Any] = field(default_factory=dict)
    pricing_breakdown: Optional[Dict[str, Any]] = None
    quoted_price: Optional[str] = None
    outcome: Outcome = Outcome.PENDING
    role_labels: Dict[str, str] = field(default_factory=dict)
    speaker_count: int = 2
    word_count: int = 0
    line_count: int = 0
    duration_seconds: int = 0
    operator_id: Optional[str] = None
    lead_ref: Optional[str] = None
    feedback: Optional[str] = None
    ai_helpful: Optional[bool] = None
    processed: bool = False
    learnings: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_context(
        cls,
        context: ConversationContext,
        *,
        outcome: Any = None,
        feedback: Optional[str] = None,
        ai_helpful: Optional[bool] = None,
    ) -> "ConversationLogRecord":
        lines = context.ordered_lines()
        quote = context.last_quote
        return cls(
            mode=context.mode,
            transcript=context.render_transcript(),
            lines=[
                {
                    "role": line.role.value,
                    "speaker": context.label_for(line.role),
                    "text": line.text,
                    "timestamp": line.timestamp,
                    "confidence": line.confidence,
                }
                for line in lines
            ],
            extracted_info=context.extracted.to_dict(),
            pricing_breakdown=quote.to_dict() if quote else None,
            quoted_price=str(quote.grand_total) if quote else None,
            outcome=parse_outcome(outcome),
            role_labels=context.role_labels(),
            speaker_count=len({line.role for line in lines}) or 2,
            word_count=context.word_count,
            line_count=len(lines),
            duration_seconds=context.duration_seconds(),
            operator_id=context.operator_id,
            lead_ref=context.lead_ref,
            feedback=feedback,
            ai_helpful=ai_helpful,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["outcome"] = self.outcome.value
        if self.mode is not ConversationMode.VENDOR:
            data.pop("processed")
            data.pop("learnings")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationLogRecord":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["mode"] = ConversationMode(known.get("mode", "sales"))
        known["outcome"] = parse_outcome(known.get("outcome"))
        return cls(**known)


class ConversationLogWriter(Protocol):
    """Where finished conversations go."""

    async def write(self, record: ConversationLogRecord) -> str: ...

    async def get(self, conversation_id: str) -> Optional[ConversationLogRecord]: ...

    async def mark_processed(self, conversation_id: str, learnings: Dict[str, Any]) -> bool: ...

    async def recent_learnings(self, limit: int = 20) -> List[Dict[str, Any]]: ...


class InMemoryConversationStore:
    """Process-local store; records are lost on restart."""

    def __init__(self):
        self._records: Dict[str, ConversationLogRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def write(self, record: ConversationLogRecord) -> str:
        self._records[record.id] = record
        return record.id

    async def get(self, conversation_id: str) -> Optional[ConversationLogRecord]:
        return self._records.get(conversation_id)

    async def mark_processed(self, conversation_id: str, learnings: Dict[str, Any]) -> bool:
        record = self._records.get(conversation_id)
        if record is None or record.processed:
            return False
        record.processed = True
        record.learnings = learnings
        return True

    async def recent_learnings(self, limit: int = 20) -> List[Dict[str, Any]]:
        vendor = [
            r for r in self._records.values()
            if r.mode is ConversationMode.VENDOR and r.processed and r.learnings
        ]
        vendor.sort(key=lambda r: r.created_at, reverse=True)
        return [r.learnings for r in vendor[:limit]]


class JsonlConversationStore:
    """
    Append-only JSONL files, one per mode, under `base_dir`.

    `mark_processed` rewrites the vendor file in place (write to a temp file,
    then replace).
    """

    def __init__(self, base_dir: str = "data/conversations"):
        self.base_dir = Path(base_dir)
        self._lock = asyncio.Lock()

    def path_for(self, mode: ConversationMode) -> Path:
        return self.base_dir / f"{mode.value}.jsonl"

    async def write(self, record: ConversationLogRecord) -> str:
        payload = encoder.encode(record.to_dict())
        path = self.path_for(record.mode)
        async with self._lock:
            try:
                await asyncio.to_thread(self._append, path, payload)
            except OSError as e:
                logger.error("Conversation write failed", path=str(path), error=str(e))
                raise PersistenceError(
                    "Failed to save conversation",
                    details=[f"{type(e).__name__}: {e}"],
                ) from e
        logger.info("Conversation saved", conversation_id=record.id, mode=record.mode.value, path=str(path))
        return record.id

    async def get(self, conversation_id: str) -> Optional[ConversationLogRecord]:
        async with self._lock:
            for mode in ConversationMode:
                for data in await asyncio.to_thread(self._read_all, self.path_for(mode)):
                    if data.get("id") == conversation_id:
                        return ConversationLogRecord.from_dict(data)
        return None

    async def mark_processed(self, conversation_id: str, learnings: Dict[str, Any]) -> bool:
        path = self.path_for(ConversationMode.VENDOR)
        async with self._lock:
            rows = await asyncio.to_thread(self._read_all, path)
            for row in rows:
                if row.get("id") != conversation_id:
                    continue
                if row.get("processed"):
                    return False
                row["processed"] = True
                row["learnings"] = learnings
                await asyncio.to_thread(self._rewrite, path, rows)
                return True
        return False

    async def recent_learnings(self, limit: int = 20) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = await asyncio.to_thread(self._read_all, self.path_for(ConversationMode.VENDOR))
        learned = [r for r in rows if r.get("processed") and r.get("learnings")]
        learned.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return [r["learnings"] for r in learned[:limit]]

    @staticmethod
    def _append(path: Path, payload: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "ab") as f:
            f.write(payload + b"\n")

    @staticmethod
    def _read_all(path: Path) -> List[Dict[str, Any]]:
        if not path.exists():
            return []
        rows = []
        with open(path, "rb") as f:
            for lineno, raw in enumerate(f, start=1):
                raw = raw.strip()
                if not raw:
                    continue
                try:
                    rows.append(decoder.decode(raw))
                except msgspec.DecodeError:
                    logger.warning("Skipping corrupt conversation log line", path=str(path), line=lineno)
        return rows

    @staticmethod
    def _rewrite(path: Path, rows: List[Dict[str, Any]]) -> None:
        tmp = path.with_suffix(".jsonl.tmp")
        with open(tmp, "wb") as f:
            for row in rows:
                f.write(encoder.encode(row) + b"\n")
        os.replace(tmp, path)


class LearningScheduler:
    """
    Runs vendor learning extraction as detached tasks.

    Callers never await the extraction. Failures are logged, never retried.
    """

    def __init__(self, store: ConversationLogWriter, reasoner: Reasoner):
        self._store = store
        self._reasoner = reasoner
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, conversation_id: str, transcript: str) -> bool:
        """Start extraction for a saved vendor conversation. False if already running."""
        if conversation_id in self._in_flight:
            logger.debug("Learning extraction already running", conversation_id=conversation_id)
            return False
        self._in_flight.add(conversation_id)
        task = asyncio.create_task(self._run(conversation_id, transcript))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, conversation_id: str, transcript: str) -> None:
        try:
            record = await self._store.get(conversation_id)
            if record is not None and record.processed:
                logger.info("Learnings already extracted", conversation_id=conversation_id)
                return

            learnings = await extract_vendor_learnings(self._reasoner, transcript)
            updated = await self._store.mark_processed(conversation_id, learnings.model_dump())
            if updated:
                self.completed += 1
                logger.info(
                    "Vendor learnings extracted",
                    conversation_id=conversation_id,
                    phrases=len(learnings.effective_phrases),
                    tactics=len(learnings.negotiation_tactics),
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed += 1
            logger.error(
                "Vendor learning extraction failed",
                conversation_id=conversation_id,
                error_type=type(e).__name__,
                error=str(e),
            )
        finally:
            self._in_flight.discard(conversation_id)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for running extractions; cancel whatever is left after `timeout`."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
