"""Email provider configuration utilities."""

from .config import EmailConfig, load_email_config
from .providers import (
    DevPrintProvider,
    EmailDeliveryError,
    EmailProvider,
    ResendProvider,
    SMTPProvider,
    create_email_provider,
)
from .renderer import render_trial_expired, render_trial_will_end

__all__ = [
    "DevPrintProvider",
    "EmailConfig",
    "EmailDeliveryError",
    "EmailProvider",
    "ResendProvider",
    "SMTPProvider",
    "create_email_provider",
    "load_email_config",
    "render_trial_expired",
    "render_trial_will_end",
]
