"""
Provider-agnostic mailbox interface.

Each provider (Gmail, Outlook) implements MailboxAdapter. The scan
orchestrator only talks to this interface and picks the implementation from
ScanConfig.provider.
"""

from abc import ABC, abstractmethod
from typing import Dict, List

from .config import Config
from .models import EmailProvider, EmailStub, NormalizedEmail, OAuthTokens


class MailboxAdapter(ABC):
    provider: EmailProvider

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """URL of the provider's consent screen for this app."""

    @abstractmethod
    def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens and the mailbox address."""

    @abstractmethod
    def refresh(self, refresh_token: str) -> str:
        """Return a fresh access token."""

    @abstractmethod
    def list_recent(
        self,
        access_token: str,
        hours_back: int,
        max_results: int,
    ) -> List[EmailStub]:
        """List messages received in the last `hours_back` hours."""

    @abstractmethod
    def detail(self, access_token: str, message_id: str) -> NormalizedEmail:
        """Fetch and normalize one message."""

    def resolve(self, access_token: str, stub: EmailStub) -> NormalizedEmail:
        """Return the stub's email, fetching detail only when the list call did not include it."""
        if stub.email is not None:
            return stub.email
        return self.detail(access_token, stub.id)

    def close(self) -> None:
        """Release network resources held by the adapter."""


def get_mailbox_adapter(provider: EmailProvider, config: Config) -> MailboxAdapter:
    provider = EmailProvider(provider)
    if provider == EmailProvider.OUTLOOK:
        from .outlook_client import OutlookMailbox

        return OutlookMailbox(config)

    from .gmail_client import GmailMailbox

    return GmailMailbox(config)


def build_mailbox_adapters(config: Config) -> Dict[EmailProvider, MailboxAdapter]:
    return {p: get_mailbox_adapter(p, config) for p in EmailProvider}
