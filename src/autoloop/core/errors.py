# src/autoloop/core/errors.py
"""
Domain error kinds.

Oracle transport errors live beside the client (autoloop.api.client); these
are the failure kinds of the engines built on top of it.
"""


class AutoloopError(Exception):
    """Base exception for engine-level failures."""
    pass


class InvalidRequest(AutoloopError):
    """Raised when a generation request cannot be worked on at all."""
    pass


class PlanningFailure(AutoloopError):
    """Raised when query decomposition fails. Recovered with a fallback plan."""
    pass


class QueryExecutionFailure(AutoloopError):
    """Raised when a single sub-query fails. Recovered with an empty result."""
    pass


class GenerationFailure(AutoloopError):
    """Raised when test, code or UI generation fails."""
    pass


class EvaluationFailure(AutoloopError):
    """Raised when a principle evaluation fails. Recovered with a neutral score."""
    pass


class NoTelemetryData(AutoloopError):
    """Raised when telemetry analysis is requested with an empty buffer."""
    pass


class NoAnalysisAvailable(AutoloopError):
    """Raised when optimization is requested before any telemetry analysis."""
    pass


class HealingExhausted(AutoloopError):
    """The self-healing bound ran out with failing tests remaining."""

    def __init__(self, iterations: int, failing: int):
        self.iterations = iterations
        self.failing = failing
        super().__init__(f"{failing} test(s) still failing after {iterations} healing iterations")


class IterationFailure(AutoloopError):
    """Raised when one closed-loop iteration fails."""

    def __init__(self, iteration: int, cause: Exception):
        self.iteration = iteration
        self.cause = cause
        super().__init__(f"Loop iteration {iteration} failed: {cause}")


class NotInitialized(AutoloopError):
    """Raised when an engine operation requires a prior initialize()."""
    pass
