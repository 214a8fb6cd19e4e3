"""Error taxonomy for alertpipe.

Only ConfigError and RegistrationError are fatal, and only at startup.
Everything else is raised for a single operation (one series write, one rule
evaluation, one notification) and handled by the caller at that scope.
"""


class AlertpipeError(Exception):
    """Base class for all alertpipe errors."""


class ConfigError(AlertpipeError):
    """A rule file or router configuration could not be loaded."""


class ExpressionSyntaxError(ConfigError):
    """An alerting expression could not be parsed.

    Attributes:
        position: Character offset in the expression where parsing failed.
    """

    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__(message)
        self.position = position


class RegistrationError(AlertpipeError):
    """A metric definition is invalid."""


class DuplicateMetric(RegistrationError):
    """A metric name is already registered with a different definition."""


class LabelMismatch(AlertpipeError, ValueError):
    """Label values supplied at a call site do not fit the metric's labels."""


class UnknownSeries(AlertpipeError, LookupError):
    """No metric of the requested kind is registered under the given name."""


class EvaluationError(AlertpipeError):
    """An expression could not be evaluated against the current samples."""


class DeliveryError(AlertpipeError):
    """A notification could not be delivered to its receiver.

    Attributes:
        retryable: False when retrying cannot succeed (e.g. a 4xx rejection).
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable
