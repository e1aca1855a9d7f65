"""Billing domain exceptions.

Provider failures are split by whether retrying can help:
ProviderUnavailableError (network, timeouts, 5xx) is retryable,
InvalidTransitionError (4xx or a local state-machine refusal) is not.
"""

from collections.abc import Iterable


class BillingError(Exception):
    """Base class for all billing errors."""


class CredentialsMissingError(BillingError):
    """Provider client id/secret are not configured."""


class AuthFailureError(BillingError):
    """Provider rejected the credentials when issuing an access token."""


class ProviderUnavailableError(BillingError):
    """Provider could not be reached or answered with a server error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidTransitionError(BillingError):
    """Requested action is not allowed from the current state.

    Raised both for provider 4xx answers (remote subscription in the wrong
    state) and for local refusals by the subscription state machine.
    """

    def __init__(
        self,
        message: str,
        current_status: str | None = None,
        eligible_statuses: Iterable[str] = (),
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.current_status = current_status
        self.eligible_statuses = tuple(eligible_statuses)
        self.code = code

    def to_detail(self) -> dict:
        """Actionable error payload for API responses."""
        detail: dict = {"error": str(self)}
        if self.current_status is not None:
            detail["current_status"] = self.current_status
        if self.eligible_statuses:
            detail["eligible_statuses"] = list(self.eligible_statuses)
        if self.code:
            detail["code"] = self.code
        return detail


class NotFoundError(BillingError):
    """Local entity does not exist."""


class RemoteNotFoundError(NotFoundError):
    """Remote subscription or transaction does not exist at the provider."""


class ConflictError(BillingError):
    """Uniqueness violation or a lost compare-and-set."""


class RefundWindowExpiredError(BillingError):
    """Refund requested after the provider refund window closed."""


class CouponUnavailableError(BillingError):
    """Coupon cannot be redeemed (missing, inactive, expired or exhausted)."""
