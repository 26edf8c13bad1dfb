"""Errors raised by the billing layer and surfaced to API callers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Represents an actionable billing failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class _CodedBillingError(BillingError):
    error_code: ClassVar[str] = "billing_error"
    default_status: ClassVar[int] = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Mapping[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            code=self.error_code,
            message=message,
            status_code=status_code or self.default_status,
            detail=detail,
        )


class ValidationError(_CodedBillingError):
    """A request field is missing or malformed."""

    error_code = "validation_error"


class NotFound(_CodedBillingError):
    error_code = "not_found"
    default_status = status.HTTP_404_NOT_FOUND


class UserNotFound(NotFound):
    """The platform account referenced by a request does not exist."""

    error_code = "user_not_found"
    default_status = status.HTTP_400_BAD_REQUEST


class TokenInvalid(_CodedBillingError):
    """A payment token was already used or has expired."""

    error_code = "token_invalid"


class UpstreamError(_CodedBillingError):
    """The payment processor or the data store failed."""

    error_code = "upstream_error"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR


class SignatureVerificationFailed(_CodedBillingError):
    error_code = "signature_verification_failed"


class OperatorAuthRequired(_CodedBillingError):
    error_code = "operator_auth_required"
    default_status = status.HTTP_401_UNAUTHORIZED


__all__ = [
    "BillingError",
    "NotFound",
    "OperatorAuthRequired",
    "SignatureVerificationFailed",
    "TokenInvalid",
    "UpstreamError",
    "UserNotFound",
    "ValidationError",
]
