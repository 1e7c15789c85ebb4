from typing import Any

from fastapi import HTTPException, status


class EscrowHouseException(HTTPException):
    def __init__(self, detail: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR):
        super().__init__(status_code=status_code, detail=detail)


class PermissionDeniedError(EscrowHouseException):
    def __init__(self, detail: str = "You do not have permission to perform this action"):
        super().__init__(detail=detail, status_code=status.HTTP_403_FORBIDDEN)


class BadRequestError(EscrowHouseException):
    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=status.HTTP_400_BAD_REQUEST)


# ---------------------------------------------------------------------------
# Engine errors
#
# Raised inside the engine and mapped onto HTTP responses by the handler in
# ``escrowhouse.main``. Each carries a reason code and a next action.
# ---------------------------------------------------------------------------


class EscrowError(Exception):
    code = "escrow_error"
    next_action = "contact_support"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        next_action: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        if code:
            self.code = code
        if next_action:
            self.next_action = next_action
        self.message = message or self.code.replace("_", " ")
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, "next_action": self.next_action}


class TransientProviderError(EscrowError):
    code = "provider_unavailable"
    next_action = "retry"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class ProviderUnavailable(TransientProviderError):
    pass


class ProviderTimeout(TransientProviderError):
    """The provider call may or may not have been applied."""

    code = "provider_timeout"


class EntityBusy(TransientProviderError):
    code = "entity_busy"
    status_code = status.HTTP_409_CONFLICT


class ValidationError(EscrowError):
    code = "validation_error"
    next_action = "fix_request"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class EntityNotFound(ValidationError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str, resource_id: Any = None):
        detail = f"{resource} not found"
        if resource_id:
            detail = f"{resource} '{resource_id}' not found"
        super().__init__(detail)


class IllegalTransition(ValidationError):
    code = "illegal_transition"
    next_action = "refresh_status"
    status_code = status.HTTP_409_CONFLICT


class InvalidSplit(ValidationError):
    code = "invalid_split"


class HoldNotActive(ValidationError):
    code = "hold_not_active"
    next_action = "refresh_status"
    status_code = status.HTTP_409_CONFLICT


class HoldFrozen(HoldNotActive):
    code = "hold_frozen"


class DeadlineExpired(EscrowError):
    code = "deadline_expired"
    next_action = "refresh_status"
    status_code = status.HTTP_409_CONFLICT


class DisputeWindowClosed(ValidationError):
    code = "dispute_window_closed"
    next_action = "contact_support"
    status_code = status.HTTP_409_CONFLICT


class ProviderRejected(EscrowError):
    """The provider permanently refused the operation."""

    code = "provider_rejected"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class InsufficientFunds(ProviderRejected):
    code = "insufficient_funds"
    next_action = "retry_funding"


class PayerMethodInvalid(ProviderRejected):
    code = "payer_method_invalid"
    next_action = "update_payment_method"


class PayoutDestinationInvalid(ProviderRejected):
    code = "payout_destination_invalid"
    next_action = "contact_support"


class FundingFailed(EscrowError):
    code = "funding_failed"
    next_action = "retry_funding"
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, cause: EscrowError, attempts: int):
        super().__init__(
            f"Funding failed after {attempts} attempt(s): {cause.message}",
            code=cause.code,
            next_action=cause.next_action,
            context={"attempts": attempts},
        )
        self.cause = cause
        self.attempts = attempts


class InvariantViolation(EscrowError):
    code = "invariant_violation"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class OverReleaseAttempt(InvariantViolation):
    code = "over_release_attempt"


class ManualInterventionRequired(EscrowError):
    code = "manual_intervention_required"
    status_code = status.HTTP_409_CONFLICT
