"""Error types raised by the VerifyStream engine.

Parsing problems (bad stream lines, bad status JSON) are never raised: they
are logged and skipped by the component that met them. Only conditions that
end a run or reject a request before it starts surface as exceptions.
"""


class VerifyStreamError(Exception):
    """Base class for engine errors."""


class VerifierApiError(VerifyStreamError, RuntimeError):
    """Raised when the verification API returns a non-2xx response."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"verifier_api_error status={status_code} {message}")
        self.status_code = status_code


class TransportError(VerifyStreamError, ConnectionError):
    """The connection failed or closed before the batch completed."""


class EmptySubmissionError(VerifyStreamError, ValueError):
    """No email addresses could be extracted from the submission."""


class InvalidTransitionError(VerifyStreamError, RuntimeError):
    """A run state machine was asked to move along an undefined edge."""

    def __init__(self, current: str, target: str):
        super().__init__(f"invalid transition {current} -> {target}")
        self.current = current
        self.target = target
