from __future__ import annotations

import os
from typing import List, Optional

_TRUTHY = ("1", "true", "yes", "on")


def get_str_env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def get_bool_env(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY


def get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def get_list_env(name: str, default: str = "") -> List[str]:
    raw = get_str_env(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def optional_timeout(seconds: float) -> Optional[float]:
    """Zero or negative disables the timeout."""
    return seconds if seconds > 0 else None


# -----------------------------
# Relay
# -----------------------------
DEFAULT_AGENT_API_BASE_URL = "https://api.salesforce.com/einstein/ai-agent/v1"
DEFAULT_PLATFORM_API_VERSION = "v64.0"
DEFAULT_OAUTH_TOKEN_URL = "https://login.salesforce.com/services/oauth2/token"

LOG_LEVEL = get_str_env("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = get_list_env("CORS_ORIGINS", "*")


def configured_agent_base_url() -> str:
    return get_str_env("AGENT_API_BASE_URL").rstrip("/")


def agent_base_url() -> str:
    base = configured_agent_base_url() or get_str_env("AGENT_API_DEFAULT_BASE_URL", DEFAULT_AGENT_API_BASE_URL)
    return base.rstrip("/")


def should_use_agent_family() -> bool:
    return bool(configured_agent_base_url()) or not get_bool_env("AGENT_API_DISABLE_DEFAULT", False)


def default_assistant_id() -> str:
    return get_str_env("AGENT_ASSISTANT_ID")


def platform_api_version() -> str:
    return get_str_env("AGENT_PLATFORM_API_VERSION", DEFAULT_PLATFORM_API_VERSION)


def platform_instance_url() -> str:
    return get_str_env("AGENT_PLATFORM_INSTANCE_URL").rstrip("/")


def oauth_token_url() -> str:
    return get_str_env("AGENT_OAUTH_TOKEN_URL", DEFAULT_OAUTH_TOKEN_URL)


def upstream_timeout() -> float:
    return get_float_env("AGENT_UPSTREAM_TIMEOUT", 30.0)


def stream_idle_timeout() -> Optional[float]:
    return optional_timeout(get_float_env("AGENT_STREAM_IDLE_TIMEOUT", 120.0))


# -----------------------------
# Client
# -----------------------------
DEFAULT_RELAY_BASE_URL = "http://127.0.0.1:8000/api/agent"
FALLBACK_INSTANCE_ENDPOINT = "https://deltaloyalty-demo.my.salesforce.com"


def relay_base_url() -> str:
    return get_str_env("AGENT_RELAY_BASE_URL", DEFAULT_RELAY_BASE_URL).rstrip("/")


def instance_endpoint() -> str:
    return get_str_env("AGENT_INSTANCE_URL") or FALLBACK_INSTANCE_ENDPOINT


def client_idle_timeout() -> Optional[float]:
    return optional_timeout(get_float_env("AGENT_CLIENT_IDLE_TIMEOUT", 120.0))
