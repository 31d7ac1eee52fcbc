# ======================================================================
#  File......: errors.py
#  Purpose...: Exception taxonomy (fetch / store / input errors).
#  Version...: 0.1.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

from typing import Optional


class MonitorError(Exception):
    """Base class for every error raised by the job monitor."""


class FetchError(MonitorError):
    """A call to the Immich server did not produce usable data."""

    kind = "fetch"


class TransportError(FetchError):
    """No route to the server, connection refused or timed out."""

    kind = "transport"


class ProtocolError(FetchError):
    """Server answered with a non-2xx status."""

    kind = "protocol"

    def __init__(self, status_code: int, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        detail = (body or "").strip() or "Unknown error"
        super().__init__(f"HTTP error {status_code}: {detail}")


class DecodeError(FetchError):
    """Response did not match the expected shape."""

    kind = "decode"


class StoreError(MonitorError):
    """Local persistence failure (disk, corruption, lock contention, integrity)."""


class InputError(MonitorError, ValueError):
    """Caller passed an invalid queue name or job id to a control operation."""
