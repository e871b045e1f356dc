class BidOptError(Exception):
    """Base class for all decision-engine errors."""


class InsufficientDataError(BidOptError):
    """Too few qualifying samples to fit or train."""

    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(message)
        self.available = available
        self.required = required


class ModelNotFoundError(BidOptError):
    """No active tree or curve model exists for the requested key."""


class BoundaryViolationError(BidOptError):
    """A change exceeds a configured safety boundary. Recorded as `blocked`."""

    def __init__(self, message: str, change_percent: float = 0.0, limit_percent: float = 0.0):
        super().__init__(message)
        self.change_percent = change_percent
        self.limit_percent = limit_percent


class ApplyFailureError(BidOptError):
    """The ad platform rejected or failed to apply a change. Recorded as `failed`."""


class ConfigurationError(BidOptError):
    """An admin config update is invalid."""


class InvalidTransitionError(BidOptError):
    """A status change would move an audit record or suggestion backwards."""
