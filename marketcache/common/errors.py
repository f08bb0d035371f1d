from __future__ import annotations


class NetworkError(RuntimeError):
    """Upstream unreachable or returned a non-2xx response after all retries."""


class LocalIOError(OSError):
    """Cache directory could not be read or written (disk full, permissions)."""


class ParseError(ValueError):
    """A cached row or upstream record could not be decoded."""


class GapPersistenceError(RuntimeError):
    """Attempt to persist a bucket as COMPLETE that does not satisfy the completeness check."""
