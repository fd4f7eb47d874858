"""
Typed failures raised by the email integration engine.

Every failure carries a remediation hint so callers can show the user what to
do next instead of a generic "connection failed" message.
"""

from typing import Optional


class EmailIntegrationError(Exception):
    """Base class for all email integration failures."""

    error_type = "error"
    remediation = "An unexpected error occurred. Please try again."
    retryable = False

    def __init__(self, message: str = "", provider: Optional[str] = None):
        super().__init__(message or self.remediation)
        self.provider = provider

    def to_dict(self):
        return {
            'error': str(self),
            'error_type': self.error_type,
            'remediation': self.remediation,
            'retryable': self.retryable,
            'provider': self.provider,
        }


class NotConfigured(EmailIntegrationError):
    """No OAuth client credentials are provisioned for the provider."""

    error_type = "not_configured"
    remediation = (
        "The email provider is not configured. Add the OAuth client "
        "credentials to config.ini or the environment and restart the service."
    )


class UserCancelled(EmailIntegrationError):
    """The consent flow was abandoned before it completed."""

    error_type = "user_cancelled"
    remediation = (
        "Authentication was cancelled. The sign-in window was closed before "
        "completion. Start the connection again and finish the sign-in."
    )
    retryable = True


class ConfigurationMismatch(EmailIntegrationError):
    """The redirect URI / origin is not authorized for the OAuth client."""

    error_type = "configuration_mismatch"
    remediation = (
        "OAuth configuration error: the redirect URI of this deployment is not "
        "authorized for the OAuth client. Add it to the authorized redirect "
        "URIs in the provider's developer console."
    )


class Unauthorized(EmailIntegrationError):
    """The access token was rejected or lacks the required permission."""

    error_type = "unauthorized"
    remediation = "Access to the mailbox was denied. Please reconnect the account."
    retryable = True


class NetworkOrProviderError(EmailIntegrationError):
    """Transient transport or provider-side failure."""

    error_type = "network_error"
    remediation = "The email provider could not be reached. Please try again shortly."
    retryable = True


class NotConnected(EmailIntegrationError):
    """The operation needs a signed-in session."""

    error_type = "not_connected"
    remediation = "The account is not connected. Connect the provider first."


class AdapterNotReady(EmailIntegrationError):
    """Provider client objects could not be initialized in time."""

    error_type = "adapter_not_ready"
    remediation = (
        "The provider client library could not be initialized. Check network "
        "access to the provider and try again."
    )
    retryable = True


class RoomNotFound(EmailIntegrationError):
    error_type = "room_not_found"
    remediation = "The requested room does not exist."


class SyncInProgress(EmailIntegrationError):
    error_type = "sync_in_progress"
    remediation = "A sync for this room is already running. Wait for it to finish."
    retryable = True


_CANCELLED_MARKERS = (
    'access_denied', 'popup_closed', 'authentication_canceled',
    'user_canceled', 'user_cancelled', 'consent_required',
)
_MISMATCH_MARKERS = (
    'redirect_uri_mismatch', 'origin_mismatch', 'aadsts50011', 'aadsts9002326',
)
_NOT_CONFIGURED_MARKERS = (
    'invalid_client', 'unauthorized_client', 'aadsts700016',
)


def classify_auth_failure(detail: str, provider: Optional[str] = None) -> EmailIntegrationError:
    """Map an OAuth error code or message onto the error taxonomy."""
    text = (detail or "").lower()
    if any(marker in text for marker in _MISMATCH_MARKERS):
        return ConfigurationMismatch(detail, provider)
    if any(marker in text for marker in _CANCELLED_MARKERS):
        return UserCancelled(detail, provider)
    if any(marker in text for marker in _NOT_CONFIGURED_MARKERS):
        return NotConfigured(detail, provider)
    return NetworkOrProviderError(detail, provider)
