# arbloop/exceptions.py
"""Error taxonomy for the detection, risk and execution pipeline."""
from typing import List, Optional


class ArbLoopError(Exception):
    """Base class for every error raised by arbloop."""


class ConfigError(ArbLoopError):
    """Raised when config.yaml is missing values or holds out-of-range settings."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("Configuration validation failed:\n" + "\n".join(self.problems))


class DataQualityError(ArbLoopError):
    """Sample-level problems. Absorbed locally, they never halt the loop."""


class StaleDataError(DataQualityError):
    """Sample age exceeds the configured staleness bound."""


class MalformedSampleError(DataQualityError):
    """Sample carries a non-positive (or non-finite) price."""

    def __init__(self, sample, reason: str):
        self.sample = sample
        self.reason = reason
        super().__init__(f"Malformed sample {sample.symbol}@{sample.venue}: {reason}")


class InsufficientDataError(DataQualityError):
    """No asset is quoted on at least two venues."""


class DetectionError(ArbLoopError):
    """Bug-level failure inside the cycle detector."""


class CycleReconstructionError(DetectionError):
    """Predecessor walk did not close a cycle within |V| steps."""


class RiskRejected(ArbLoopError):
    """Risk gate veto. Carries every violated constraint."""

    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons))


class ExecutionError(ArbLoopError):
    """Base class for leg execution problems."""


class LegExecutionFailure(ExecutionError):
    """A leg could not be submitted or confirmed within its retry budget."""

    def __init__(self, leg_index: int, reason: str, fee_cost: float = 0.0):
        self.leg_index = leg_index
        self.reason = reason
        self.fee_cost = fee_cost
        super().__init__(f"Leg {leg_index + 1} failed: {reason}")


class UnbalancedPositionError(ExecutionError):
    """An earlier leg settled but a later one failed, leaving residual exposure."""

    def __init__(self, confirmed_legs: int, reason: str):
        self.confirmed_legs = confirmed_legs
        self.reason = reason
        super().__init__(f"Unbalanced position after {confirmed_legs} confirmed leg(s): {reason}")


class EmergencyStopError(ArbLoopError):
    """Gate-level halt on new executions."""


class VenueError(ArbLoopError):
    """Venue connectivity or order API failure."""

    def __init__(self, venue: str, message: str, cause: Optional[BaseException] = None):
        self.venue = venue
        self.cause = cause
        super().__init__(f"{venue}: {message}")
