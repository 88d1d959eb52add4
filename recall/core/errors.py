"""
Failure taxonomy shared by the pipeline stages and the API layer.
"""

from typing import Optional


class RecallError(Exception):
    """Base class for all pipeline failures."""


class ProviderUnavailable(RecallError):
    """An embedding or generation provider call failed, timed out or answered badly."""

    def __init__(self, message: str, status_code: Optional[int] = None, provider: str = None, user_message: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
        self.user_message = user_message or "The AI service is temporarily unavailable. Please try again."


class Disabled(RecallError):
    """A feature is turned off by configuration. Callers treat this as a skip."""


class MalformedInput(RecallError):
    """Structured model output could not be parsed."""


class StorageFailure(RecallError):
    """A memory store read or write failed."""


class StreamTransportFailure(RecallError):
    """The streaming generation call failed before or while relaying deltas."""

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or "Something went wrong. Please try again or contact support if the issue persists."
