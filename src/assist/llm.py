"""
Reasoning service: structured LLM calls over an OpenAI-compatible API.

Provides:
- Startup model validation
- Groq (default) or OpenAI provider selection
- Pydantic-typed responses via Instructor (JSON mode)
- Call latency metrics (used to adapt the suggestion throttle)

Calls are never retried here; a failure surfaces as `ReasoningError`.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type, TypeVar
import time

import httpx
import instructor
import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel

from src.assist.config import get_config
from src.assist.errors import ReasoningError

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
OPENAI_BASE_URL = "https://api.openai.com/v1"

T = TypeVar("T", bound=BaseModel)


@dataclass
class ReasoningMetrics:
    """Latency and failure counts for reasoning calls."""
    calls: int = 0
    failures: int = 0
    avg_latency_ms: float = 0.0
    last_latency_ms: float = 0.0

    def record(self, latency_ms: float, ok: bool) -> None:
        self.calls += 1
        if not ok:
            self.failures += 1
        self.last_latency_ms = latency_ms
        self.avg_latency_ms = (self.avg_latency_ms * (self.calls - 1) + latency_ms) / self.calls

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calls": self.calls,
            "failures": self.failures,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "last_latency_ms": round(self.last_latency_ms, 2),
        }


async def validate_model(api_key: str, model_name: str, base_url: str = GROQ_BASE_URL) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating LLM model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )

            if response.status_code != 200:
                logger.error(
                    "Failed to fetch models",
                    status_code=response.status_code,
                    response=response.text[:200],
                )
                raise SystemExit(
                    f"Failed to validate LLM model. API returned status {response.status_code}. "
                    "Check your API key."
                )

            data = response.json()
            model_ids = [m.get("id") for m in data.get("data", [])]

            if model_name not in model_ids:
                available = ", ".join(sorted(str(m) for m in model_ids)[:10])
                logger.error(
                    "LLM model not found",
                    requested_model=model_name,
                    available_models=available,
                )
                raise SystemExit(
                    f"Model '{model_name}' not found in available models.\n"
                    f"Available models include: {available}\n"
                    "Please update GROQ_MODEL / OPENAI_MODEL in your .env file."
                )

            logger.info("LLM model validated successfully", model=model_name)
            return True

        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(
                f"Failed to connect to LLM API: {e}\n"
                "Check your network connection and API key."
            )


class ReasoningService:
    """
    Structured completion client.

    Uses the OpenAI client (pointed at Groq unless LLM_PROVIDER=openai),
    patched by Instructor so every call returns a validated pydantic model.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.provider = (config.llm_provider or "groq").strip().lower()
        if self.provider == "openai":
            self.model = config.openai_model
            self._api_key = config.openai_api_key
            self._base_url = OPENAI_BASE_URL
        else:
            self.model = config.groq_model
            self._api_key = config.groq_api_key
            self._base_url = GROQ_BASE_URL

        self._client = client or AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        self._structured = instructor.from_openai(self._client, mode=instructor.Mode.JSON)
        self._metrics = ReasoningMetrics()

    @property
    def metrics(self) -> ReasoningMetrics:
        return self._metrics

    async def validate_model(self) -> bool:
        return await validate_model(self._api_key, self.model, base_url=self._base_url)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        response_model: Type[T],
        *,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        stage: str = "response",
    ) -> T:
        """
        Run one structured completion.

        Raises:
            ReasoningError: the call failed or the output did not validate.
        """
        start = time.perf_counter()
        kwargs: Dict[str, Any] = {}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        try:
            result = await self._structured.chat.completions.create(
                model=self.model,
                messages=messages,
                response_model=response_model,
                max_retries=0,  # no synchronous retries
                temperature=temperature,
                **kwargs,
            )
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            self._metrics.record(latency_ms, ok=False)
            logger.warning(
                "Reasoning call failed",
                stage=stage,
                model=self.model,
                error_type=type(e).__name__,
                error=str(e)[:300],
                latency_ms=round(latency_ms, 2),
            )
            raise ReasoningError(
                f"Reasoning service failed during {stage}",
                code=f"{stage.upper()}_FAILED",
                details=[f"{type(e).__name__}: {str(e)[:200]}"],
            ) from e

        latency_ms = (time.perf_counter() - start) * 1000
        self._metrics.record(latency_ms, ok=True)
        logger.debug("Reasoning call completed", stage=stage, latency_ms=round(latency_ms, 2))
        return result


async def initialize_reasoning(config: Optional[Any] = None) -> ReasoningService:
    """
    Create the reasoning service and validate its model at startup.
    """
    if config is None:
        config = get_config()
    service = ReasoningService(config)
    if config.validate_llm_model:
        await service.validate_model()
    return service
