class RelayError(Exception):
    """Base class for errors raised by the relay services."""


class SessionAlreadyExists(RelayError):
    def __init__(self, username: str):
        super().__init__(f"session already exists for {username}")
        self.username = username


class SessionNotFound(RelayError):
    def __init__(self, username: str):
        super().__init__(f"no session for {username}")
        self.username = username


class RenderError(RelayError):
    """Text-to-speech rendering failed."""


class LedgerDisabled(RelayError):
    """Gift ledger requested but GIFT_LEDGER_URL is not configured."""
