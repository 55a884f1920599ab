from __future__ import annotations


class RosterSyncError(Exception):
    """Base error for rostersync."""


class ProviderConfigError(RosterSyncError):
    """Missing or invalid roster provider configuration."""


class IntegrationNotFoundError(RosterSyncError):
    """Integration row no longer exists."""


class MappingNotFoundError(RosterSyncError):
    """Group mapping does not exist for the integration."""


class GroupNotFoundError(RosterSyncError):
    """Internal group does not exist in the integration's organization."""


class InvalidSyncSettingsError(RosterSyncError):
    """Requested sync settings are not valid."""


class InvalidOAuthStateError(RosterSyncError):
    """OAuth state parameter is malformed, tampered with, or expired."""


class AuthExchangeError(RosterSyncError):
    """Authorization code exchange with the provider failed."""


class ReauthorizationRequiredError(RosterSyncError):
    """Token refresh failed; an operator must re-authorize the integration."""


class DecryptionError(RosterSyncError):
    """Stored credential ciphertext could not be decrypted."""


class ExternalFetchError(RosterSyncError):
    """A resource or page fetch from the provider failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReconciliationError(RosterSyncError):
    """Internal store failure while applying reconciliation changes."""


_TERMINAL_SYNC_ERRORS = (
    DecryptionError,
    ReauthorizationRequiredError,
    IntegrationNotFoundError,
    ProviderConfigError,
)


def is_retryable_sync_error(exc: BaseException) -> bool:
    # Retrying cannot fix corrupt ciphertext or revoked grants.
    return not isinstance(exc, _TERMINAL_SYNC_ERRORS)
