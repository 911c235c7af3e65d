"""Exception types used inside the identity sync engine.

None of these escape the public engine API: the owning component catches
them and falls back to the best-known value.
"""

from __future__ import annotations


class IdentitySyncError(Exception):
    """Base class for engine errors."""


class ProviderError(IdentitySyncError):
    """The analytics provider rejected or failed a call."""


class ProviderTimeout(ProviderError):
    """A provider call exceeded the enforced timeout."""


class StorageError(IdentitySyncError):
    """Local storage is full, disabled, or unreadable."""


class ProfileStoreError(IdentitySyncError):
    """The profile store could not be queried."""


class InvalidSessionToken(IdentitySyncError):
    """An access token could not be decoded into a session."""
