"""
Email providers for different email services.
"""

import logging
from typing import Any, Dict, Optional

from ..credentials import CredentialSession
from .base import (
    EmailAddress,
    EmailBody,
    EmailFilter,
    EmailMessage,
    EmailProvider,
    ProviderType,
    UserInfo,
)
from .fixture import FixtureProvider
from .gmail import GmailProvider, GoogleTokenSource
from .microsoft import MicrosoftProvider, MsalTokenSource

logger = logging.getLogger(__name__)

_LIVE_PROVIDERS = {
    ProviderType.GMAIL: GmailProvider,
    ProviderType.OUTLOOK: MicrosoftProvider,
}


def create_provider(
    provider_type: ProviderType,
    session: Optional[CredentialSession] = None,
    demo_mode: str = "auto",
    config: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> EmailProvider:
    """
    Choose the live or fixture implementation once, at construction.

    Args:
        provider_type: Which mailbox kind to build
        session: Credential session for the live provider
        demo_mode: "true" forces fixtures, "false" forces live, "auto" uses
            fixtures only when no OAuth client is configured
        config: Provider configuration
        kwargs: Passed to the live provider (transport overrides)
    """
    provider_type = ProviderType(provider_type)
    demo_mode = str(demo_mode).lower()

    use_fixture = demo_mode == "true"
    if demo_mode == "auto":
        use_fixture = session is None or not session.is_configured

    if use_fixture:
        logger.warning(f"{provider_type.value} not configured, using demo fixture data")
        return FixtureProvider(provider_type, config=config)

    return _LIVE_PROVIDERS[provider_type](session=session, config=config, **kwargs)


__all__ = [
    'EmailAddress',
    'EmailBody',
    'EmailFilter',
    'EmailMessage',
    'EmailProvider',
    'ProviderType',
    'UserInfo',
    'FixtureProvider',
    'GmailProvider',
    'GoogleTokenSource',
    'MicrosoftProvider',
    'MsalTokenSource',
    'create_provider',
]
