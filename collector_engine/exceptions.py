"""
Exception hierarchy for collector-engine.

Expected, routine failures (download errors, validation failures) are not
exceptions: they are returned as messages and recorded in the error file.
These exceptions cover the conditions a caller must act on.
"""


class CollectorError(Exception):
    """Base class for collector-engine errors."""


class AuthenticationError(CollectorError):
    """The control plane rejected the collector secret (HTTP 401/403).

    Retrying will not help; the process must terminate so an operator
    can fix the secret.
    """

    def __init__(self, endpoint: str, status_code: int):
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(
            f"{endpoint} failed: unauthorized (HTTP {status_code}). "
            "Please check your COLLECTOR_SECRET."
        )


class ConfigurationError(CollectorError):
    """Local configuration is missing or invalid."""


class PromotionError(CollectorError):
    """A configuration generation could not be assembled or promoted."""
