"""
Tests for the reasoning service wrapper.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.assist.errors import ReasoningError
from src.assist.extract import ConversationExtraction, extract_conversation
from src.assist.llm import GROQ_BASE_URL, OPENAI_BASE_URL, ReasoningService
from src.assist.roles import ConversationMode


def _service_with(create: AsyncMock) -> ReasoningService:
    service = ReasoningService()
    structured = MagicMock()
    structured.chat.completions.create = create
    service._structured = structured
    return service


def test_groq_is_default_provider():
    service = ReasoningService()
    assert service.provider == "groq"
    assert service.model == "llama-3.3-70b-versatile"
    assert service._base_url == GROQ_BASE_URL


def test_openai_provider(monkeypatch):
    from src.assist.config import get_config

    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "test_openai_key")
    get_config.cache_clear()

    service = ReasoningService()
    assert service.model == "gpt-4o-mini"
    assert service._base_url == OPENAI_BASE_URL


@pytest.mark.asyncio
async def test_complete_returns_model_without_retries():
    expected = ConversationExtraction(quantity=2)
    create = AsyncMock(return_value=expected)
    service = _service_with(create)

    result = await service.complete([{"role": "user", "content": "hi"}], ConversationExtraction, max_tokens=50)

    assert result is expected
    kwargs = create.await_args.kwargs
    assert kwargs["max_retries"] == 0
    assert kwargs["max_tokens"] == 50
    assert kwargs["response_model"] is ConversationExtraction
    assert service.metrics.calls == 1
    assert service.metrics.failures == 0


@pytest.mark.asyncio
async def test_failure_becomes_reasoning_error():
    service = _service_with(AsyncMock(side_effect=RuntimeError("rate limited")))

    with pytest.raises(ReasoningError) as exc:
        await service.complete([], ConversationExtraction, stage="extraction")

    assert exc.value.code == "EXTRACTION_FAILED"
    assert "RuntimeError: rate limited" in exc.value.details[0]
    assert service.metrics.failures == 1


@pytest.mark.asyncio
async def test_extraction_never_raises():
    service = _service_with(AsyncMock(side_effect=ValueError("invalid json")))

    result = await extract_conversation(service, "[Lead]: hi", ConversationMode.SALES)

    assert result.success is False
    assert result.as_update() == {}
