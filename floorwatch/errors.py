from __future__ import annotations


class FloorwatchError(Exception):
    """Base class for watcher failures."""


class TransientError(FloorwatchError):
    """Network, timeout or upstream 5xx failure. Retried with backoff."""


class InvalidRangeError(FloorwatchError, ValueError):
    pass


class DecodeError(FloorwatchError):
    """Malformed event payload. Never escapes the decoder."""


class MatchError(FloorwatchError):
    """Event refers to no tracked listing."""


class PersistenceError(FloorwatchError):
    """Listing store write or read failure."""


class LedgerRequestError(FloorwatchError):
    """Ledger rejected the request itself (4xx other than 429). Not retried."""
