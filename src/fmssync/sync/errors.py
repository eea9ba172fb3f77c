"""
Error taxonomy for the FMS sync engine.

Adapter-level errors (ProviderError subclasses) come from the provider
layer. ProviderConnectionError, ProviderAuthError and RateLimited are
retried by the orchestrator; MalformedResponse is not.

ApplyError is per-change and never aborts sibling changes. AlreadyRunning
is a synchronous caller error. A sync waiting for human review is a state
(review_needed), not an exception.
"""
from typing import Any, Optional


class FMSSyncError(RuntimeError):
    """Base class for every error raised by the sync engine."""


# ── Adapter errors ────────────────────────────────────────────────────────────

class ProviderError(FMSSyncError):
    """Raised by a provider adapter while talking to the FMS."""

    retryable = True


class ProviderConnectionError(ProviderError):
    """The FMS could not be reached (network failure, 5xx, missing fixture)."""


class ProviderAuthError(ProviderError):
    """The FMS rejected our credentials."""


class RateLimited(ProviderError):
    """The FMS asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponse(ProviderError):
    """The FMS answered with a payload we cannot interpret. Not retried."""

    retryable = False

    def __init__(self, message: str, raw_payload: Any = None):
        super().__init__(message)
        self.raw_payload = raw_payload


class FetchTimeout(FMSSyncError):
    """The fetch step exceeded its hard timeout."""


class UnknownProviderError(FMSSyncError):
    """No adapter is registered for the configured provider type."""


# ── Apply errors ──────────────────────────────────────────────────────────────

class ApplyError(FMSSyncError):
    """A single change could not be applied. Isolated to that change."""


# ── Caller errors ─────────────────────────────────────────────────────────────

class AlreadyRunning(FMSSyncError):
    """A sync session already exists for this facility."""

    def __init__(self, facility_id: str):
        super().__init__(f"A sync is already running for facility {facility_id}")
        self.facility_id = facility_id


class SyncConfigNotFound(FMSSyncError):
    """No FMS configuration exists for the facility."""


class SyncDisabled(FMSSyncError):
    """The facility's FMS configuration is disabled."""


class ChangeNotFound(FMSSyncError):
    """No change with the given id exists."""


class ChangeAlreadyReviewed(FMSSyncError):
    """The change already carries a decision."""


class SyncNotAwaitingReview(FMSSyncError):
    """The change belongs to a sync that is no longer waiting for review."""


class InvalidTransition(FMSSyncError):
    """A sync session was asked to move to a step not reachable from its current one."""
