"""
Error taxonomy for the engagement core.

NotFound and Blocked are expected outcomes: logged, never retried. Blocked
comes from the opt-out guard and the scheduler turns it into a
blocked_by_optout ledger row. Dispatch failures are caught by the scheduler
and turned into ledger entries plus a state-machine outcome. MalformedEvent
never leaves the normalizer: it becomes an unrecognized event that is
acknowledged to the provider and investigated through logs.
"""
from typing import Optional


class EngagementError(Exception):
    """Base class for all engagement-core errors."""
    pass


class NotFound(EngagementError):
    """Tenant or lead could not be resolved."""
    pass


class TenantNotFound(NotFound):
    pass


class LeadNotFound(NotFound):
    pass


class Blocked(EngagementError):
    """Phone number is on the opt-out list."""
    pass


class InvalidPhoneNumber(EngagementError):
    pass


class InvalidTransition(EngagementError):
    """Raised when a lead status change is not allowed by the state machine."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid lead transition {current} -> {target}")


class MalformedEvent(EngagementError):
    """Webhook payload could not be parsed into a canonical event."""
    pass


class DispatchError(EngagementError):
    """
    An outbound channel could not be invoked.
    Carries enough provider detail for the ledger entry.
    """

    permanent = False

    def __init__(
        self,
        message: str,
        provider: str = "unknown",
        status_code: Optional[int | str] = None,
        opt_out: bool = False,
    ):
        self.message = message
        self.provider = provider
        self.status_code = status_code
        self.opt_out = opt_out
        super().__init__(message)

    @property
    def detail(self) -> str:
        if self.status_code is not None:
            return f"{self.provider} error {self.status_code}: {self.message}"
        return f"{self.provider} error: {self.message}"


class TransientDispatchFailure(DispatchError):
    """Provider error or timeout - retried per backoff up to max_attempts."""
    permanent = False


class PermanentDispatchFailure(DispatchError):
    """Retrying cannot help (invalid number, landline, carrier opt-out)."""
    permanent = True
