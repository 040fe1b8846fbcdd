"""Error kinds raised by the Steam client, the store and the sync engine."""


class OverachieverError(Exception):
    """Base class for every error the sync core raises."""


class TransportError(OverachieverError):
    """Network failure, timeout or undecodable response from the Steam Web API."""


class DataUnavailable(OverachieverError):
    """Well-formed answer saying the requested resource does not exist."""


class StoreError(OverachieverError):
    """A read or write against the persistent store failed."""


class AuthRequired(OverachieverError):
    NOT_CONFIGURED = "not_configured"
    NOT_AUTHENTICATED = "not_authenticated"

    _MESSAGES = {
        NOT_CONFIGURED: "Steam API key is not configured",
        NOT_AUTHENTICATED: "Not authenticated: no Steam ID for this session",
    }

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(self._MESSAGES.get(reason, reason))
