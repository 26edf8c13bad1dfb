"""Policy governing email-based matching of payment events to users.

Matching a processor-reported email against stored records crosses a trust
boundary: the email a customer types into the payment page is not verified
by the platform. The policy is therefore explicit and configurable per
deployment, and every match it allows is reported as an audit event.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EmailMatchMode(str, Enum):
    DISABLED = "disabled"
    STRIPE_EMAIL = "stripe_email"
    PLATFORM_EMAIL = "platform_email"


@dataclass(frozen=True)
class EmailMatchPolicy:
    """Decides which stored email columns an event email may be matched on.

    ``stripe_email`` only matches records whose processor email was linked
    earlier by a token, session or operator. ``platform_email`` additionally
    matches the platform account email, which links identities from two
    different providers.
    """

    mode: EmailMatchMode = EmailMatchMode.STRIPE_EMAIL

    @classmethod
    def from_setting(cls, value: Optional[str]) -> "EmailMatchPolicy":
        normalized = (value or EmailMatchMode.STRIPE_EMAIL.value).strip().lower()
        try:
            return cls(EmailMatchMode(normalized))
        except ValueError as exc:
            raise ValueError(f"Unknown EMAIL_MATCH_POLICY {value!r}") from exc

    @property
    def enabled(self) -> bool:
        return self.mode != EmailMatchMode.DISABLED

    @property
    def matches_stripe_email(self) -> bool:
        return self.mode in {EmailMatchMode.STRIPE_EMAIL, EmailMatchMode.PLATFORM_EMAIL}

    @property
    def matches_platform_email(self) -> bool:
        return self.mode == EmailMatchMode.PLATFORM_EMAIL


def normalize_email(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    stripped = value.strip().lower()
    return stripped or None


__all__ = ["EmailMatchMode", "EmailMatchPolicy", "normalize_email"]
