from typing import Optional


class PosError(Exception):
    status_code = 500

    def __init__(self, message: str, violations: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.violations = violations or []


class ValidationError(PosError):
    """Blocks the operation; ``violations`` lists every problem found, not just the first."""

    status_code = 400

    @classmethod
    def from_violations(cls, summary: str, violations: list[str]) -> "ValidationError":
        return cls(f"{summary}: " + "; ".join(violations), violations)


class NotFoundError(PosError):
    status_code = 404


class ConflictError(PosError):
    status_code = 409


class RoutingError(PosError):
    """Soft failure while turning an order item into prep tickets."""


class DeductionError(PosError):
    """Soft failure while writing a stock movement for a paid order."""
