"""
Throttled, single-flight suggestion pipeline.

Each finalized counterparty utterance asks the pipeline whether it may run.
It runs only if no other run is in flight and the throttle interval has
passed since the last trigger. A run is two reasoning calls:

1. extraction: facts so far, merged into the context (failure is tolerated)
2. response: the operator's next line plus, in sales mode, pricing that is
   corrected by the `PricingTable` before it is returned

Neither stage is retried. The in-flight guard is released when the run ends,
whatever the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from src.assist.context import ConversationContext, ExtractedInfo
from src.assist.extract import Reasoner, ResponseDraft, extract_conversation
from src.assist.pricing import PriceQuote, PricingTable
from src.assist.prompts import response_messages
from src.assist.roles import ConversationMode

logger = structlog.get_logger(__name__)

LearningsProvider = Callable[[], Awaitable[str]]


@dataclass
class SuggestionResult:
    response: str
    quote: Optional[PriceQuote]
    next_action: str
    confidence: str
    extracted: ExtractedInfo

    def to_payload(self) -> Dict[str, Any]:
        """`operator-response` event payload."""
        return {
            "response": self.response,
            "pricingBreakdown": self.quote.to_dict() if self.quote else None,
            "nextAction": self.next_action,
            "confidence": self.confidence,
            "extractedInfo": self.extracted.to_dict(),
        }


class ThrottleGate:
    """
    Minimum interval between pipeline triggers.

    The effective interval follows observed reasoning latency so a slow
    provider is not asked more often than it can answer, clamped to
    [min_interval, max_interval].
    """

    def __init__(
        self,
        min_interval: float = 1.5,
        max_interval: float = 6.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = min_interval
        self.max_interval = max(max_interval, min_interval)
        self._clock = clock
        self._interval = min_interval
        self._last_trigger: Optional[float] = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def last_trigger(self) -> Optional[float]:
        return self._last_trigger

    def ready(self) -> bool:
        if self._last_trigger is None:
            return True
        return self._clock() - self._last_trigger >= self._interval

    def mark(self) -> None:
        self._last_trigger = self._clock()

    def observe_latency(self, seconds: float) -> None:
        self._interval = max(self.min_interval, min(self.max_interval, seconds))


class SuggestionPipeline:
    """Suggestion generation for one conversation."""

    def __init__(
        self,
        context: ConversationContext,
        reasoner: Reasoner,
        pricing: PricingTable,
        *,
        gate: Optional[ThrottleGate] = None,
        learnings_provider: Optional[LearningsProvider] = None,
        guidance: str = "",
        history_lines: int = 10,
        extraction_temperature: float = 0.3,
        response_temperature: float = 0.7,
        response_max_tokens: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.context = context
        self._reasoner = reasoner
        self._pricing = pricing
        self._gate = gate or ThrottleGate(clock=clock)
        self._learnings_provider = learnings_provider
        self._guidance = guidance
        self._history_lines = history_lines
        self._extraction_temperature = extraction_temperature
        self._response_temperature = response_temperature
        self._response_max_tokens = response_max_tokens
        self._clock = clock
        self._in_flight = False
        self.runs = 0
        self.skipped = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def gate(self) -> ThrottleGate:
        return self._gate

    def try_begin(self, *, manual: bool = False) -> bool:
        """
        Claim the single-flight slot.

        Manual requests bypass the throttle but never run concurrently with
        another suggestion.
        """
        if self._in_flight:
            self.skipped += 1
            logger.debug("Suggestion skipped", reason="in_flight", manual=manual)
            return False
        if not manual and not self._gate.ready():
            self.skipped += 1
            logger.debug("Suggestion skipped", reason="throttled", interval=self._gate.interval)
            return False

        self._in_flight = True
        self._gate.mark()
        return True

    async def run(self) -> SuggestionResult:
        """
        Execute both stages. Call only after `try_begin()` returned True.

        Raises:
            ReasoningError: the response stage failed.
        """
        started = self._clock()
        self.runs += 1
        try:
            await self._extraction_stage()
            result = await self._response_stage()
            self._gate.observe_latency(self._clock() - started)
            return result
        finally:
            self._in_flight = False

    async def maybe_run(self, *, manual: bool = False) -> Optional[SuggestionResult]:
        if not self.try_begin(manual=manual):
            return None
        return await self.run()

    async def _extraction_stage(self) -> None:
        result = await extract_conversation(
            self._reasoner,
            self.context.render_transcript(),
            self.context.mode,
            temperature=self._extraction_temperature,
        )
        if result.success:
            self.context.extracted.merge(result.as_update())
        else:
            logger.warning("Extraction failed; continuing with known details", error=result.error)

    async def _response_stage(self) -> SuggestionResult:
        context = self.context
        extracted = context.extracted
        is_sales = context.mode is ConversationMode.SALES

        learnings = ""
        if context.mode is ConversationMode.VENDOR and self._learnings_provider is not None:
            try:
                learnings = await self._learnings_provider()
            except Exception as e:
                logger.warning("Vendor learnings unavailable", error=str(e))

        tax_rate = unit_cost = None
        if is_sales:
            rate, _ = self._pricing.tax_rate_for(extracted.location or None)
            tax_rate = float(rate)
            unit_cost = float(self._pricing.estimated_unit_cost(extracted.event_type))

        messages = response_messages(
            transcript=context.render_transcript(),
            recent=context.render_transcript(last=self._history_lines),
            extracted=extracted.to_dict(),
            mode=context.mode,
            tax_rate=tax_rate,
            unit_cost=unit_cost,
            minimum_margin=float(self._pricing.minimum_margin) if is_sales else None,
            learnings=learnings,
            guidance=self._guidance,
        )
        draft: ResponseDraft = await self._reasoner.complete(
            messages,
            ResponseDraft,
            temperature=self._response_temperature,
            max_tokens=self._response_max_tokens,
            stage="response",
        )

        quote = self._build_quote(draft) if is_sales else None
        if quote is not None:
            context.last_quote = quote

        logger.info(
            "Suggestion generated",
            mode=context.mode.value,
            confidence=draft.confidence,
            has_quote=quote is not None,
            grand_total=str(quote.grand_total) if quote else None,
        )
        return SuggestionResult(
            response=draft.response,
            quote=quote,
            next_action=draft.next_action,
            confidence=draft.confidence,
            extracted=extracted.copy(),
        )

    def _build_quote(self, draft: ResponseDraft) -> Optional[PriceQuote]:
        extracted = self.context.extracted
        pricing = draft.pricing
        quantity = extracted.quantity
        if pricing is not None and pricing.units.quantity:
            quantity = pricing.units.quantity
        if not quantity:
            return None

        return self._pricing.build_quote(
            quantity,
            event_type=extracted.event_type,
            location=extracted.location or None,
            price_per_unit=pricing.units.price_per_unit if pricing else None,
            delivery=pricing.delivery if pricing else None,
            fuel_surcharge=pricing.fuel_surcharge if pricing else None,
            rationale=pricing.rationale if pricing else "",
        )
