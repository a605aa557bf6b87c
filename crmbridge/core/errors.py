from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base error for crmbridge."""


class PlatformConfigError(BridgeError):
    """Missing or invalid platform client configuration."""


class PlatformError(BridgeError):
    """Platform API request failure carrying the upstream status and body."""

    # Structured bodies the platform returns for deleted records with non-404 statuses.
    _NOT_FOUND_MARKERS = ("not found", "not_found", "does not exist")

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def is_not_found(self) -> bool:
        if self.status_code == 404:
            return True
        if not isinstance(self.body, dict):
            return False
        for key in ("message", "error", "code", "msg"):
            value = self.body.get(key)
            if isinstance(value, list):
                value = " ".join(str(item) for item in value)
            if isinstance(value, str) and any(m in value.lower() for m in self._NOT_FOUND_MARKERS):
                return True
        return False


class TokenUnavailableError(BridgeError):
    """No usable token after the full fallback chain; the sub-account must be reconnected."""

    code = "TOKEN_UNAVAILABLE"

    def __init__(self, sub_account_id: str, reason: str) -> None:
        super().__init__(f"No usable token for sub-account {sub_account_id}: {reason}")
        self.sub_account_id = sub_account_id
        self.reason = reason


class InstallExchangeError(BridgeError):
    """Authorization code exchange failed; nothing was persisted."""


class ReconcileAttemptError(BridgeError):
    """A reconcile attempt could not establish ground truth and should be retried."""


class InvalidStateError(BridgeError):
    """OAuth state parameter missing or not matching the browser nonce."""
