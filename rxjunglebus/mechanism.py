"""Core error types for :mod:`rxjunglebus`."""


class JungleBusError(Exception):
    """Base class for all rxjunglebus exceptions."""

    def __init__(self, exception: Exception, source: str = "Unknown", note: str = ""):
        super().__init__(f"<{source}> {note}: {exception}")
        self.exception = exception
        self.source = source
        self.note = note

    def __str__(self):
        return f"<{self.source}> {self.note}: {self.exception}"


class DecodeError(JungleBusError):
    """A publication payload could not be decoded into a canonical record."""


class TransportError(JungleBusError):
    """The pub/sub transport or the REST endpoint could not be reached."""


class FetchError(JungleBusError):
    """An out-of-band transaction body fetch failed."""


class AuthenticationError(JungleBusError):
    """The server refused to issue a token."""
