"""
Relay configuration.

Loaded from environment variables; .env_local / .env.local at the
repository root are read first for local development and never override
variables that are already set.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


DEFAULT_REALTIME_URL = "wss://api.openai.com/v1/realtime"
DEFAULT_REALTIME_MODEL = "gpt-4o-realtime-preview-2024-10-01"


def load_local_env() -> None:
    """Best-effort load of local env files."""
    root = Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _clean_env(key: str) -> Optional[str]:
    """Return the variable with any trailing "# comment" and whitespace stripped."""
    value = os.environ.get(key)
    if not value:
        return None
    if "#" in value:
        value = value.split("#")[0]
    value = value.strip()
    return value or None


def _parse_int_env(key: str, default: Optional[int]) -> Optional[int]:
    """
    Parse integer environment variable.

    "300  # comment" -> 300, unset or garbage -> default.
    """
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = _clean_env(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class RelayConfig:
    """Voice relay configuration."""

    # Realtime dialogue service
    openai_api_key: str
    realtime_url: str = DEFAULT_REALTIME_URL
    realtime_model: str = DEFAULT_REALTIME_MODEL
    realtime_voice: str = "alloy"
    transcription_model: str = "whisper-1"
    upstream_ready_timeout_seconds: float = 10.0

    # Project/tool collaborator service
    tools_service_url: Optional[str] = None

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    # Prompt file under relay/prompts
    prompt_name: str = "default"

    # Session policies
    rollback_window_seconds: float = 5.0
    content_dedup_window_seconds: float = 5.0
    max_processed_call_ids: Optional[int] = None  # None = unbounded
    snapshot_interval_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Load configuration from environment variables."""
        return cls(
            openai_api_key=os.environ["OPENAI_API_KEY"],
            realtime_url=os.environ.get("REALTIME_URL", DEFAULT_REALTIME_URL),
            realtime_model=os.environ.get("REALTIME_MODEL", DEFAULT_REALTIME_MODEL),
            realtime_voice=os.environ.get("REALTIME_VOICE", "alloy"),
            transcription_model=os.environ.get("REALTIME_TRANSCRIPTION_MODEL", "whisper-1"),
            upstream_ready_timeout_seconds=_parse_float_env("UPSTREAM_READY_TIMEOUT_SECONDS", 10.0),
            tools_service_url=os.environ.get("TOOLS_SERVICE_URL") or None,
            host=os.environ.get("RELAY_HOST", "0.0.0.0"),
            port=_parse_int_env("RELAY_PORT", 8000),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            prompt_name=os.environ.get("RELAY_PROMPT", "default"),
            rollback_window_seconds=_parse_float_env("ROLLBACK_WINDOW_SECONDS", 5.0),
            content_dedup_window_seconds=_parse_float_env("CONTENT_DEDUP_WINDOW_SECONDS", 5.0),
            max_processed_call_ids=_parse_int_env("MAX_PROCESSED_CALL_IDS", None),
            snapshot_interval_seconds=_parse_float_env("SNAPSHOT_INTERVAL_SECONDS", 300.0),
        )


def get_config() -> RelayConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        load_local_env()
        _config = RelayConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[RelayConfig] = None
