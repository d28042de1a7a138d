"""
Error types raised by the CFI engine.

Convention (same as the sync clients this package grew out of):
- Malformed input is a caller bug and always raises.
- Lookups on empty/not-yet-built structures return sentinels, never raise.
"""
from typing import Optional


class CfiError(Exception):
    """Base class for all address errors."""

    def __init__(self, message: str, cfi: Optional[str] = None):
        self.message = message
        self.cfi = cfi
        super().__init__(f"{message}: '{cfi}'" if cfi else message)


class InvalidAddressFormat(CfiError, ValueError):
    """The string is not an epubcfi(...) we can parse or emit."""


class AddressNotFound(CfiError, LookupError):
    """A well-formed address cannot be resolved against the live document."""


class RangeConstructionError(CfiError):
    """The start/end pair cannot form a range (end sorts before start)."""
