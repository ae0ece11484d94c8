"""Environment-driven configuration.

Every getter reads the environment lazily so that ``load_dotenv()`` has run by
the time a value is needed (tests can also patch ``os.environ`` freely).
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()


class ConfigurationError(RuntimeError):
    """A required credential or setting is missing or invalid."""


_LLM_DEFAULTS = {
    "openai":    "gpt-4o-mini",
    "gemini":    "gemini-2.0-flash",
    "anthropic": "claude-sonnet-4-20250514",
}

_LLM_KEY_NAMES = {
    "openai":    "OPENAI_API_KEY",
    "gemini":    "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

DEFAULT_USER_AGENT = "GroundedItinerary/1.0 (+https://github.com/grounded-itinerary)"


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default).strip()


def _env_float(key: str, default: float) -> float:
    raw = _env(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")


def get_llm_provider() -> str:
    provider = _env("LLM_PROVIDER", "openai").lower() or "openai"
    if provider not in _LLM_DEFAULTS:
        raise ConfigurationError(
            f"Unsupported LLM_PROVIDER {provider!r}. "
            f"Must be one of: {', '.join(sorted(_LLM_DEFAULTS))}"
        )
    return provider


def get_llm_model() -> str:
    """Return the litellm model string (provider/model format)."""
    provider = get_llm_provider()
    model = _env("LLM_MODEL") or _LLM_DEFAULTS[provider]
    if provider == "openai":
        return model  # litellm uses bare model name for OpenAI
    return f"{provider}/{model}"


def require_llm_credentials() -> str:
    """Raise ConfigurationError unless the active provider has an API key."""
    key_name = _LLM_KEY_NAMES[get_llm_provider()]
    api_key = _env(key_name)
    if not api_key:
        raise ConfigurationError(f"{key_name} is not set.")
    return api_key


def get_opentripmap_key() -> str:
    return _env("OPENTRIPMAP_API_KEY")


def get_tripadvisor_key() -> str:
    return _env("TRIPADVISOR_API_KEY")


def get_openweather_key() -> str:
    return _env("OPENWEATHER_API_KEY")


def get_user_agent() -> str:
    return _env("NOMINATIM_USER_AGENT") or DEFAULT_USER_AGENT


def get_http_timeout() -> float:
    """Timeout for live-data sources (seconds)."""
    return _env_float("HTTP_TIMEOUT_SECONDS", 12.0)


def get_geocode_timeout() -> float:
    return _env_float("GEOCODE_TIMEOUT_SECONDS", 10.0)


def get_llm_timeout() -> float:
    return _env_float("LLM_TIMEOUT_SECONDS", 60.0)


def configure_logging() -> None:
    logging.basicConfig(
        level=_env("LOG_LEVEL", "INFO").upper() or "INFO",
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
