"""
Tests for the throttled, single-flight suggestion pipeline.
"""

import asyncio
from decimal import Decimal

import pytest

from src.assist.context import ConversationContext
from src.assist.errors import ReasoningError
from src.assist.extract import (
    ConversationExtraction,
    LocationInfo,
    PricingDraft,
    ResponseDraft,
    UnitsDraft,
)
from src.assist.pricing import PricingTable
from src.assist.roles import ConversationMode, Role
from src.assist.suggestion import SuggestionPipeline, ThrottleGate

from conftest import FakeReasoner


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def _context(mode=ConversationMode.SALES) -> ConversationContext:
    context = ConversationContext(mode, started_at=0.0)
    context.append_final(Role.COUNTERPARTY, "Hi, I need three units in Dallas 75201 for a job site.", timestamp=1.0)
    return context


def _pipeline(context, reasoner, clock, **kwargs):
    return SuggestionPipeline(
        context,
        reasoner,
        PricingTable(),
        gate=ThrottleGate(min_interval=1.5, max_interval=6.0, clock=clock),
        clock=clock,
        **kwargs,
    )


class TestThrottleGate:

    def test_first_trigger_is_ready(self, clock):
        assert ThrottleGate(clock=clock).ready()

    def test_interval_must_pass(self, clock):
        gate = ThrottleGate(min_interval=1.5, clock=clock)
        gate.mark()

        clock.advance(1.0)
        assert not gate.ready()
        clock.advance(0.5)
        assert gate.ready()

    @pytest.mark.parametrize("latency,expected", [(0.2, 1.5), (3.0, 3.0), (20.0, 6.0)])
    def test_latency_is_clamped(self, clock, latency, expected):
        gate = ThrottleGate(min_interval=1.5, max_interval=6.0, clock=clock)
        gate.observe_latency(latency)
        assert gate.interval == expected


class TestSingleFlight:

    def test_second_begin_while_in_flight_is_skipped(self, fake_reasoner, clock):
        pipeline = _pipeline(_context(), fake_reasoner, clock)

        assert pipeline.try_begin()
        clock.advance(10)
        assert not pipeline.try_begin()
        assert not pipeline.try_begin(manual=True)
        assert pipeline.skipped == 2

    def test_throttle_skips_automatic_but_not_manual(self, fake_reasoner, clock):
        pipeline = _pipeline(_context(), fake_reasoner, clock)
        pipeline.gate.mark()

        assert not pipeline.try_begin()
        assert pipeline.try_begin(manual=True)

    @pytest.mark.asyncio
    async def test_concurrent_triggers_run_once(self, clock):
        reasoner = FakeReasoner(delay=0.02)
        pipeline = _pipeline(_context(), reasoner, clock)

        results = await asyncio.gather(*(pipeline.maybe_run() for _ in range(5)))

        assert len([r for r in results if r is not None]) == 1
        assert reasoner.stages() == ["extraction", "response"]
        assert not pipeline.in_flight

    @pytest.mark.asyncio
    async def test_failure_releases_guard(self, clock):
        reasoner = FakeReasoner({"response": ReasoningError("timeout", code="RESPONSE_FAILED")})
        pipeline = _pipeline(_context(), reasoner, clock)

        assert pipeline.try_begin()
        with pytest.raises(ReasoningError):
            await pipeline.run()

        assert not pipeline.in_flight
        clock.advance(2.0)
        assert pipeline.try_begin()

    @pytest.mark.asyncio
    async def test_run_adapts_interval_to_latency(self, clock):
        class SlowClockReasoner(FakeReasoner):
            async def complete(self, *args, **kwargs):
                clock.advance(2.5)
                return await super().complete(*args, **kwargs)

        pipeline = _pipeline(_context(), SlowClockReasoner(), clock)
        await pipeline.maybe_run()

        assert pipeline.gate.interval == 5.0


class TestStages:

    @pytest.mark.asyncio
    async def test_sales_quote_follows_pricing_rules(self, clock):
        reasoner = FakeReasoner({
            "extraction": ConversationExtraction(
                intent="rental",
                location=LocationInfo(zip="75201", city="Dallas"),
                event_type="construction",
                quantity=3,
            ),
            "response": ResponseDraft(
                response="For three units that comes to a great rate.",
                pricing=PricingDraft(
                    units=UnitsDraft(quantity=3, price_per_unit=120.0),
                    delivery=90,
                    fuel_surcharge=12,
                    rationale="Local delivery.",
                ),
                next_action="Confirm delivery date",
                confidence="high",
            ),
        })
        context = _context()
        pipeline = _pipeline(context, reasoner, clock)

        result = await pipeline.maybe_run()

        quote = result.quote
        assert quote.tax_rate == Decimal("8.25")
        assert quote.region == "TX"
        assert quote.units.quantity == 3
        assert quote.unit_rate >= quote.estimated_unit_cost + 50
        assert quote.grand_total == quote.subtotal + quote.tax_amount
        assert "raised" in quote.rationale
        assert context.last_quote is quote

        payload = result.to_payload()
        assert payload["nextAction"] == "Confirm delivery date"
        assert payload["confidence"] == "high"
        assert payload["extractedInfo"]["quantity"] == 3
        assert payload["pricingBreakdown"]["taxRate"] == 8.25

    @pytest.mark.asyncio
    async def test_response_prompt_carries_tax_and_cost(self, clock):
        reasoner = FakeReasoner({
            "extraction": ConversationExtraction(location=LocationInfo(zip="75201"), event_type="wedding"),
        })
        await _pipeline(_context(), reasoner, clock).maybe_run()

        system = reasoner.calls[1]["messages"][0]["content"]
        assert "8.25%" in system
        assert "$180.00" in system

    @pytest.mark.asyncio
    async def test_extraction_failure_still_responds(self, clock):
        reasoner = FakeReasoner({
            "extraction": ReasoningError("bad json", code="EXTRACTION_FAILED"),
        })
        context = _context()
        result = await _pipeline(context, reasoner, clock).maybe_run()

        assert result.response == "How many units do you need?"
        assert result.quote is None
        assert context.extracted.quantity is None

    @pytest.mark.asyncio
    async def test_quantity_falls_back_to_extraction(self, clock):
        reasoner = FakeReasoner({
            "extraction": ConversationExtraction(quantity=2),
            "response": ResponseDraft(response="Two units, got it.", pricing=PricingDraft()),
        })
        result = await _pipeline(_context(), reasoner, clock).maybe_run()

        assert result.quote.units.quantity == 2
        assert result.quote.tax_rate == Decimal("7.0")

    @pytest.mark.asyncio
    async def test_vendor_mode_has_no_quote_and_uses_learnings(self, clock):
        reasoner = FakeReasoner({
            "extraction": ConversationExtraction(quantity=4),
            "response": ResponseDraft(
                response="Could you do better on the weekly rate?",
                pricing=PricingDraft(units=UnitsDraft(quantity=4, price_per_unit=100)),
            ),
        })

        async def learnings():
            return "Style notes from earlier vendor calls"

        result = await _pipeline(
            _context(ConversationMode.VENDOR), reasoner, clock, learnings_provider=learnings
        ).maybe_run()

        assert result.quote is None
        assert result.to_payload()["pricingBreakdown"] is None
        system = reasoner.calls[1]["messages"][0]["content"]
        assert "Style notes from earlier vendor calls" in system
        assert "Vendor Rep" in reasoner.calls[1]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_learnings_failure_is_tolerated(self, clock):
        async def broken():
            raise OSError("disk gone")

        result = await _pipeline(
            _context(ConversationMode.VENDOR), FakeReasoner(), clock, learnings_provider=broken
        ).maybe_run()

        assert result.response
