"""
Configuration management for the call assist service.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

from src.assist.audio import ChannelAssignment
from src.assist.errors import ConfigurationError

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 7860
    log_level: str = "INFO"

    # Auth (JWT issued by the main application)
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    deepgram_language: str = "en-US"

    # LLM Provider (Groq/OpenAI)
    # - Set LLM_PROVIDER=openai + OPENAI_API_KEY/OPENAI_MODEL to use ChatGPT.
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    validate_llm_model: bool = True
    extraction_temperature: float = 0.3
    response_temperature: float = 0.7
    response_max_tokens: int = 500

    # Aggregate capture device
    # - Channel numbers are 1-based in the environment and stored 0-based here.
    use_backend_audio_capture: bool = True
    aggregate_audio_device: str = "Aggregate Device"
    operator_audio_channel: int = 0
    counterparty_audio_channel: int = 1
    audio_channels: int = 2
    sample_rate: int = 16000
    capture_block_ms: int = 100
    capture_watchdog_seconds: float = 5.0
    capture_queue_max_chunks: int = 50

    # Recognition sessions
    recognition_max_session_seconds: float = 290.0
    restart_delay_seconds: float = 0.1

    # Suggestions
    suggestion_min_interval_seconds: float = 1.5
    suggestion_max_interval_seconds: float = 6.0
    suggestion_history_lines: int = 10

    # Conversation logs
    min_transcript_chars_to_save: int = 20
    auto_save_on_disconnect: bool = True
    conversation_log_dir: str = "data/conversations"
    operator_label: str = "Sales Rep"

    # Extra prompt guidance (inline text wins over file)
    sales_prompt: str = ""
    sales_prompt_file: str = ""
    vendor_prompt: str = ""
    vendor_prompt_file: str = ""

    @property
    def channel_assignment(self) -> ChannelAssignment:
        return ChannelAssignment(
            operator=self.operator_audio_channel,
            counterparty=self.counterparty_audio_channel,
        )

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.jwt_secret:
            missing.append("JWT_SECRET")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in ("groq", "openai"):
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        try:
            self.channel_assignment.validate(device_channels=self.audio_channels)
        except ConfigurationError as e:
            raise ConfigError(f"{e.message}: {'; '.join(e.details)}") from e

        if self.suggestion_max_interval_seconds < self.suggestion_min_interval_seconds:
            raise ConfigError(
                "SUGGESTION_MAX_INTERVAL_SECONDS must be >= SUGGESTION_MIN_INTERVAL_SECONDS"
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            deepgram_model=self.deepgram_model,
            deepgram_language=self.deepgram_language,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            use_backend_audio_capture=self.use_backend_audio_capture,
            aggregate_audio_device=self.aggregate_audio_device,
            operator_audio_channel=self.operator_audio_channel + 1,
            counterparty_audio_channel=self.counterparty_audio_channel + 1,
            audio_channels=self.audio_channels,
            recognition_max_session_seconds=self.recognition_max_session_seconds,
            suggestion_min_interval_seconds=self.suggestion_min_interval_seconds,
            suggestion_max_interval_seconds=self.suggestion_max_interval_seconds,
            min_transcript_chars_to_save=self.min_transcript_chars_to_save,
            conversation_log_dir=self.conversation_log_dir,
            jwt_secret_set=bool(self.jwt_secret),
            deepgram_key_set=bool(self.deepgram_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_channel_index(key: str, default_one_based: int) -> int:
    """Read a 1-based channel number and return the 0-based index."""
    return _get_int(key, default_one_based) - 1


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    device = os.getenv("AGGREGATE_AUDIO_DEVICE") or os.getenv("SYSTEM_AUDIO_DEVICE") or "Aggregate Device"

    config = Config(
        # Server
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Auth
        jwt_secret=os.getenv("JWT_SECRET", ""),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),

        # LLM Provider
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        validate_llm_model=_get_bool("VALIDATE_LLM_MODEL", True),
        extraction_temperature=_get_float("EXTRACTION_TEMPERATURE", 0.3),
        response_temperature=_get_float("RESPONSE_TEMPERATURE", 0.7),
        response_max_tokens=_get_int("RESPONSE_MAX_TOKENS", 500),

        # Capture
        use_backend_audio_capture=_get_bool("USE_BACKEND_AUDIO_CAPTURE", True),
        aggregate_audio_device=device,
        operator_audio_channel=_get_channel_index("OPERATOR_AUDIO_CHANNEL", 1),
        counterparty_audio_channel=_get_channel_index("CUSTOMER_AUDIO_CHANNEL", 2),
        audio_channels=_get_int("AUDIO_CHANNELS", 2),
        capture_block_ms=_get_int("CAPTURE_BLOCK_MS", 100),
        capture_watchdog_seconds=_get_float("CAPTURE_WATCHDOG_SECONDS", 5.0),
        capture_queue_max_chunks=_get_int("CAPTURE_QUEUE_MAX_CHUNKS", 50),

        # Recognition
        recognition_max_session_seconds=_get_float("RECOGNITION_MAX_SESSION_SECONDS", 290.0),
        restart_delay_seconds=_get_float("RESTART_DELAY_SECONDS", 0.1),

        # Suggestions
        suggestion_min_interval_seconds=_get_float("SUGGESTION_MIN_INTERVAL_SECONDS", 1.5),
        suggestion_max_interval_seconds=_get_float("SUGGESTION_MAX_INTERVAL_SECONDS", 6.0),
        suggestion_history_lines=_get_int("SUGGESTION_HISTORY_LINES", 10),

        # Conversation logs
        min_transcript_chars_to_save=_get_int("MIN_TRANSCRIPT_CHARS_TO_SAVE", 20),
        auto_save_on_disconnect=_get_bool("AUTO_SAVE_ON_DISCONNECT", True),
        conversation_log_dir=os.getenv("CONVERSATION_LOG_DIR", "data/conversations"),
        operator_label=os.getenv("OPERATOR_LABEL", "Sales Rep"),

        # Prompts
        sales_prompt=os.getenv("SALES_PROMPT", ""),
        sales_prompt_file=os.getenv("SALES_PROMPT_FILE", ""),
        vendor_prompt=os.getenv("VENDOR_PROMPT", ""),
        vendor_prompt_file=os.getenv("VENDOR_PROMPT_FILE", ""),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
