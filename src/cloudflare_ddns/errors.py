"""Exception hierarchy for cloudflare-ddns.

DdnsError
 ├─ ConfigError          settings or desired-state file unreadable
 ├─ ValidationError      malformed input, never reaches the scheduler
 ├─ AuthError            missing or rejected provider credential
 ├─ ResolutionError      public IP discovery failed (transient)
 ├─ StaleConfigError     config changed since the writer read it
 └─ ProviderError        DNS provider failure
     ├─ NotFoundError    zone or record no longer exists
     ├─ ConflictError    record/config already exists
     └─ RateLimitError   provider asked us to back off
"""

from __future__ import annotations

from typing import Optional


class DdnsError(Exception):
    """Root exception for all cloudflare-ddns errors."""


class ConfigError(DdnsError):
    """Settings or desired-state file could not be loaded."""


class ValidationError(DdnsError):
    """Input failed validation."""


class AuthError(DdnsError):
    """Provider credential missing or rejected."""


class ResolutionError(DdnsError):
    """Public IP could not be determined."""


class StaleConfigError(DdnsError):
    """A conditional store write found the config changed under it."""


class ProviderError(DdnsError):
    """DNS provider request failed."""


class NotFoundError(ProviderError):
    """Zone or record not found on the provider."""


class ConflictError(ProviderError):
    """Resource already exists."""


class RateLimitError(ProviderError):
    """Provider rate limit hit; no calls until retry_after has passed."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after
