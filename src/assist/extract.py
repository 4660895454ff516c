"""
Structured extraction models and the stage calls that produce them.

- ConversationExtraction: stage 1 of the suggestion pipeline (facts so far)
- ResponseDraft: stage 2 (what the operator should say, proposed pricing)
- VendorLearnings: background review of a finished vendor call

Stage 1 never raises; a failed extraction is returned as an unsuccessful
`ExtractionResult` so the response stage can still run.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Protocol, Type, TypeVar

import structlog
from pydantic import BaseModel, Field

from src.assist.errors import ReasoningError
from src.assist.prompts import extraction_messages, learning_messages
from src.assist.roles import ConversationMode

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


class Reasoner(Protocol):
    """What the pipeline needs from the reasoning service."""

    async def complete(
        self,
        messages: List[Dict[str, str]],
        response_model: Type[T],
        *,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        stage: str = "response",
    ) -> T: ...


class LocationInfo(BaseModel):
    zip: Optional[str] = Field(default=None, description="5-digit ZIP code if mentioned")
    city: Optional[str] = Field(default=None, description="City name if mentioned")
    state: Optional[str] = Field(default=None, description="US state (2-letter code) if mentioned")


class ConversationExtraction(BaseModel):
    """Facts stated so far in the call."""

    intent: Optional[str] = Field(
        default=None,
        description="What the other party wants (rental, quote request, availability check...)",
    )
    location: LocationInfo = Field(default_factory=LocationInfo)
    event_type: Optional[str] = Field(
        default=None,
        description="Kind of event or job (construction, wedding, festival, party...)",
    )
    quantity: Optional[int] = Field(default=None, ge=1, description="Number of units needed")
    dates: List[str] = Field(default_factory=list, description="Dates or date ranges mentioned")
    questions: List[str] = Field(default_factory=list, description="Open questions asked")
    tone: Optional[str] = Field(default=None, description="Overall tone of the other party")
    summary: Optional[str] = Field(default=None, description="One-sentence summary of the call so far")


class UnitsDraft(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=1)
    price_per_unit: Optional[float] = Field(default=None, ge=0)


class PricingDraft(BaseModel):
    """Numbers proposed by the model; corrected by the pricing rules."""
    units: UnitsDraft = Field(default_factory=UnitsDraft)
    delivery: Optional[float] = Field(default=None, ge=0)
    fuel_surcharge: Optional[float] = Field(default=None, ge=0)
    rationale: str = Field(default="", description="Short explanation of the pricing")


class ResponseDraft(BaseModel):
    response: str = Field(description="Exactly what the operator should say next")
    pricing: Optional[PricingDraft] = Field(default=None, description="Pricing proposal (sales calls only)")
    next_action: str = Field(default="", description="What the operator should do next")
    confidence: Literal["high", "medium", "low"] = "medium"


class VendorLearnings(BaseModel):
    effective_phrases: List[str] = Field(default_factory=list)
    negotiation_tactics: List[str] = Field(default_factory=list)
    pricing_strategies: List[str] = Field(default_factory=list)
    objection_handling: List[str] = Field(default_factory=list)
    closing_techniques: List[str] = Field(default_factory=list)
    tone_notes: Optional[str] = None


@dataclass
class ExtractionResult:
    """Result of an extraction attempt."""
    success: bool
    extraction: Optional[ConversationExtraction] = None
    error: Optional[str] = None
    latency_ms: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_update(self) -> Dict[str, Any]:
        """Snake_case dict for `ExtractedInfo.merge`; empty when unsuccessful."""
        if not self.success or self.extraction is None:
            return {}
        return self.extraction.model_dump()


async def extract_conversation(
    reasoner: Reasoner,
    transcript: str,
    mode: ConversationMode,
    *,
    temperature: float = 0.3,
) -> ExtractionResult:
    """
    Extract structured facts from the transcript so far.

    Never raises for reasoning failures.
    """
    loop = asyncio.get_running_loop()
    start_time = loop.time()

    try:
        extraction = await reasoner.complete(
            extraction_messages(transcript, mode),
            ConversationExtraction,
            temperature=temperature,
            stage="extraction",
        )
    except ReasoningError as e:
        return ExtractionResult(
            success=False,
            error=e.message,
            latency_ms=(loop.time() - start_time) * 1000,
        )

    latency_ms = (loop.time() - start_time) * 1000
    logger.info(
        "Extraction completed",
        mode=mode.value,
        intent=extraction.intent,
        quantity=extraction.quantity,
        has_zip=extraction.location.zip is not None,
        latency_ms=round(latency_ms, 2),
    )
    return ExtractionResult(success=True, extraction=extraction, latency_ms=latency_ms)


async def extract_vendor_learnings(reasoner: Reasoner, transcript: str) -> VendorLearnings:
    """
    Review a finished vendor call for reusable phrases and tactics.

    Raises:
        ReasoningError: the review call failed.
    """
    return await reasoner.complete(
        learning_messages(transcript),
        VendorLearnings,
        temperature=0.3,
        stage="learning",
    )
