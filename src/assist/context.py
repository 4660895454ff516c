"""
Per-connection conversation state.

The transcript holds final lines only and is append-only. Each role's lines
are kept in arrival order with non-decreasing timestamps; the combined
transcript is a time-ordered merge produced when it is read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import itertools
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple

from src.assist.pricing import PriceQuote
from src.assist.pronunciation import PronunciationSample
from src.assist.roles import ConversationMode, Role, role_label


@dataclass(frozen=True)
class TranscriptLine:
    role: Role
    text: str
    is_final: bool
    timestamp: float
    confidence: Optional[float] = None
    seq: int = 0


@dataclass
class ExtractedInfo:
    """Structured facts pulled from the conversation so far."""
    location: Dict[str, Optional[str]] = field(default_factory=dict)
    event_type: Optional[str] = None
    quantity: Optional[int] = None
    dates: List[str] = field(default_factory=list)
    intent: Optional[str] = None
    summary: Optional[str] = None
    questions: List[str] = field(default_factory=list)
    tone: Optional[str] = None

    def merge(self, update: Mapping[str, Any]) -> None:
        """Overlay non-empty values from `update` (snake_case keys)."""
        location = update.get("location")
        if isinstance(location, Mapping):
            for key, value in location.items():
                if value:
                    self.location[key] = value
        for key in ("event_type", "intent", "summary", "tone"):
            value = update.get(key)
            if isinstance(value, str) and value.strip():
                setattr(self, key, value.strip())
        quantity = update.get("quantity")
        if isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0:
            self.quantity = quantity
        for key in ("dates", "questions"):
            value = update.get(key)
            if value:
                setattr(self, key, [str(v) for v in value if v])

    def copy(self) -> "ExtractedInfo":
        return ExtractedInfo(
            location=dict(self.location),
            event_type=self.event_type,
            quantity=self.quantity,
            dates=list(self.dates),
            intent=self.intent,
            summary=self.summary,
            questions=list(self.questions),
            tone=self.tone,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": dict(self.location),
            "eventType": self.event_type,
            "quantity": self.quantity,
            "dates": list(self.dates),
            "intent": self.intent,
            "summary": self.summary,
            "questions": list(self.questions),
            "tone": self.tone,
        }


class ConversationContext:
    """
    Mutable state for one connection.

    Only the owning session actor mutates this object.
    """

    def __init__(
        self,
        mode: ConversationMode,
        *,
        lead_ref: Optional[str] = None,
        operator_id: Optional[str] = None,
        operator_label: str = "Sales Rep",
        started_at: Optional[float] = None,
    ):
        self._mode = mode
        self.lead_ref = lead_ref
        self.operator_id = operator_id
        self.operator_label = operator_label
        self.started_at = started_at if started_at is not None else time.time()
        self.extracted = ExtractedInfo()
        self.last_quote: Optional[PriceQuote] = None
        self.pronunciation: List[PronunciationSample] = []
        self._lines: List[TranscriptLine] = []
        self._last_ts: Dict[Role, float] = {}
        self._seq = itertools.count()

    @property
    def mode(self) -> ConversationMode:
        return self._mode

    @property
    def lines(self) -> Tuple[TranscriptLine, ...]:
        return tuple(self._lines)

    def label_for(self, role: Role) -> str:
        return role_label(role, self._mode, self.operator_label)

    def role_labels(self) -> Dict[str, str]:
        return {role.value: self.label_for(role) for role in Role}

    def append_final(
        self,
        role: Role,
        text: str,
        *,
        timestamp: Optional[float] = None,
        confidence: Optional[float] = None,
    ) -> Optional[TranscriptLine]:
        """Append a final line; blank text is ignored."""
        text = (text or "").strip()
        if not text:
            return None

        ts = timestamp if timestamp is not None else time.time()
        previous = self._last_ts.get(role)
        if previous is not None and ts < previous:
            ts = previous
        self._last_ts[role] = ts

        line = TranscriptLine(
            role=role,
            text=text,
            is_final=True,
            timestamp=ts,
            confidence=confidence,
            seq=next(self._seq),
        )
        self._lines.append(line)
        return line

    def ordered_lines(self) -> List[TranscriptLine]:
        return sorted(self._lines, key=lambda line: (line.timestamp, line.seq))

    def render_line(self, line: TranscriptLine) -> str:
        return f"[{self.label_for(line.role)}]: {line.text}"

    def render_transcript(self, last: Optional[int] = None) -> str:
        lines = self.ordered_lines()
        if last is not None:
            lines = lines[-last:] if last > 0 else []
        return "\n".join(self.render_line(line) for line in lines)

    @property
    def transcript_chars(self) -> int:
        return len(self.render_transcript())

    @property
    def word_count(self) -> int:
        return sum(len(line.text.split()) for line in self._lines)

    def duration_seconds(self, now: Optional[float] = None) -> int:
        return int((now if now is not None else time.time()) - self.started_at)
