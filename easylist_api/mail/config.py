"""Email configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class EmailConfig:
    """Configuration for outbound email delivery."""

    provider_name: str
    from_email: str
    smtp_host: str
    smtp_port: int
    smtp_username: Optional[str]
    smtp_password: Optional[str]
    smtp_use_tls: bool
    resend_api_key: Optional[str]
    app_base_url: str
    send_interval: float


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _get(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(name)
    if value is None:
        value = env.get(f"VITE_{name}")
    return default if value is None else value


def load_email_config(env: Optional[Mapping[str, str]] = None) -> EmailConfig:
    """Load :class:`EmailConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    provider_name = (_get(env_mapping, "EMAIL_PROVIDER") or "dev").strip().lower() or "dev"
    from_email = _get(env_mapping, "FROM_EMAIL", "EasyList <notifications@easylist.app>")

    smtp_host = _get(env_mapping, "SMTP_HOST", "localhost")
    smtp_port = _to_int(_get(env_mapping, "SMTP_PORT"), default=587)
    smtp_username = _get(env_mapping, "SMTP_USER") or None
    smtp_password = _get(env_mapping, "SMTP_PASS") or None
    smtp_use_tls = _to_bool(_get(env_mapping, "SMTP_USE_TLS"), default=True)

    resend_api_key = _get(env_mapping, "RESEND_API_KEY") or None
    app_base_url = _get(env_mapping, "APP_URL", "http://localhost:5173")

    # Resend allows two requests per second on the default plan.
    send_interval = max(0.0, _to_float(_get(env_mapping, "EMAIL_SEND_INTERVAL"), default=0.6))

    return EmailConfig(
        provider_name=provider_name,
        from_email=from_email,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_username=smtp_username,
        smtp_password=smtp_password,
        smtp_use_tls=smtp_use_tls,
        resend_api_key=resend_api_key,
        app_base_url=app_base_url.rstrip("/"),
        send_interval=send_interval,
    )
