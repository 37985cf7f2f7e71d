"""
Exception hierarchy for the relay.

Each family maps to one failure domain. Only `UpstreamSubscriptionError` is
allowed to take the process down; everything else stays with the single
connection, message or index call that caused it.
"""


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class AuthenticationError(RelayError):
    """A connection attempt could not be admitted."""


class MissingToken(AuthenticationError):
    def __init__(self, message: str = "No token provided") -> None:
        super().__init__(message)


class MalformedClaims(AuthenticationError):
    def __init__(self, message: str = "Invalid token payload") -> None:
        super().__init__(message)


class AdmissionClosed(AuthenticationError):
    """The relay is draining and no longer admits subscribers."""

    def __init__(self, message: str = "Server shutting down") -> None:
        super().__init__(message)


class PayloadDecodeError(RelayError):
    """A message (upstream or inbound) is not well-formed JSON."""


class MalformedPayload(PayloadDecodeError):
    def __init__(self, channel: str, raw: str) -> None:
        super().__init__(f"Malformed payload on channel {channel!r}")
        self.channel = channel
        self.raw = raw


class InvalidFormat(PayloadDecodeError):
    def __init__(self, message: str = "Invalid message format") -> None:
        super().__init__(message)


class DeliveryError(RelayError):
    """A frame could not be handed to one connection."""


class IndexSyncError(RelayError):
    """The search index rejected or never received a sync call."""


class UpstreamSubscriptionError(RelayError):
    """The PostgreSQL notification connection could not be established or was lost."""
