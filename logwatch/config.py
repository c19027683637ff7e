import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so PROVIDER and API keys are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    provider_name: str
    openai_api_key: Optional[str]
    openai_base_url: Optional[str]
    openrouter_api_key: Optional[str]
    model: Optional[str]
    stream: bool = False
    max_step: int = 10

    watcher_name: str = "default"
    poll_delay: str = "10:minutes"
    tail_amount: int = 10
    cors_origins: str = "*"

    http_port: int = 4281


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    NOTE: We intentionally *do not* cache environment values that may change
    between tests – `get_settings` below re-creates Settings each time from
    the current environment. This helper only stores defaults.
    """

    return Settings(
        provider_name="stub",
        openai_api_key=None,
        openai_base_url=None,
        openrouter_api_key=None,
        model=None,
    )


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime, so we must read directly from the
    environment on each call instead of caching.
    """

    base = _base_settings()
    return Settings(
        provider_name=(os.getenv("PROVIDER") or base.provider_name).lower(),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY") or None,
        model=os.getenv("LOGWATCH_MODEL") or None,
        stream=_env_flag("LOGWATCH_STREAM", base.stream),
        max_step=_env_int("LOGWATCH_MAX_STEP", base.max_step),
        watcher_name=os.getenv("LOGWATCH_NAME") or base.watcher_name,
        poll_delay=os.getenv("LOGWATCH_POLL_DELAY") or base.poll_delay,
        tail_amount=_env_int("LOGWATCH_TAIL_AMOUNT", base.tail_amount),
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        http_port=_env_int("PORT", base.http_port),
    )
