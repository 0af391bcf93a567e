"""
Error Taxonomy
==============
Typed failures raised by the engine and its collaborators.

Risk denials are not errors: they are returned as RiskDecision values.
"""


class TradingEngineError(Exception):
    """Base class for every engine failure."""


class InsufficientDataError(TradingEngineError):
    """Fewer bars than an analysis pass requires."""

    def __init__(self, required: int, received: int, context: str = ""):
        self.required = required
        self.received = received
        where = f" for {context}" if context else ""
        super().__init__(f"Minimum {required} bars required{where}, got {received}")


class DetectorEvaluationError(TradingEngineError):
    """A single detector raised while scoring a feature bundle."""

    def __init__(self, detector: str, cause: Exception):
        self.detector = detector
        self.cause = cause
        super().__init__(f"Detector {detector} failed: {cause}")


class ProviderError(TradingEngineError):
    """An external collaborator (market data, broker, sentiment) failed."""


class ProviderTimeoutError(ProviderError):
    """An external call did not finish within its timeout."""


class InsufficientBalanceError(ProviderError):
    """The broker cannot fund the requested order."""


class OrderRejectedError(ProviderError):
    """The broker refused the order."""


class ConfigurationError(TradingEngineError):
    """Missing or invalid configuration. Fatal at startup."""


class EngineStateError(TradingEngineError):
    """An operation is not valid in the engine's current state."""
