"""Error taxonomy for turn resolution.

Every failure the pipeline can report carries a stable ``code`` so the HTTP
layer and callers can branch on it without parsing messages.
"""

from __future__ import annotations


class ChronicleError(Exception):
    """Base class for all pipeline errors."""

    code = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidRequest(ChronicleError):
    """Missing or malformed request fields. Rejected before any work."""

    code = "validation_error"


class ConfigurationError(ChronicleError):
    """No usable provider credential for a required role."""

    code = "configuration_error"


class ProviderFailure(ChronicleError):
    """Upstream model call failed or returned no content."""

    code = "provider_failure"


class InvalidResponse(ChronicleError):
    """Model output could not be recovered into a structured object."""

    code = "invalid_response"


class BrainFailure(ChronicleError):
    code = "brain_failure"


class InsufficientBalance(ChronicleError):
    code = "insufficient_balance"

    def __init__(self, balance: int, cost: int) -> None:
        super().__init__(
            f"Insufficient turns: {balance} remaining, {cost} required"
        )
        self.balance = balance
        self.cost = cost


class PersistenceFailure(ChronicleError):
    code = "persistence_failure"

    def __init__(self, message: str = "") -> None:
        super().__init__(
            message or "Failed to save game progress. Your turn was NOT charged."
        )


class ReviewerFailure(ChronicleError):
    """Consistency review failed. Always recovered locally."""

    code = "reviewer_failure"


class TurnInProgress(ChronicleError):
    code = "turn_in_progress"

    def __init__(self, campaign_id: str) -> None:
        super().__init__(f"A turn is already in progress for campaign {campaign_id}")
        self.campaign_id = campaign_id
