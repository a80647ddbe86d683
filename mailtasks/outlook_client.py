"""
Outlook / Microsoft 365 mailbox adapter backed by the Microsoft Graph REST API.

Unlike Gmail, the Graph list call returns full message bodies, so the stubs
returned by list_recent() already carry the normalized email.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .config import Config
from .errors import MailboxError
from .mailbox import MailboxAdapter
from .models import EmailProvider, EmailStub, NormalizedEmail, OAuthTokens

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
OAUTH_BASE = "https://login.microsoftonline.com/common/oauth2/v2.0"
SCOPES = "openid email Mail.Read offline_access"
MESSAGE_FIELDS = "id,subject,from,receivedDateTime,body,bodyPreview"


def normalize_outlook_message(message: Dict[str, Any]) -> NormalizedEmail:
    """Convert a Graph message resource into a NormalizedEmail."""
    email_address = (message.get("from") or {}).get("emailAddress")
    sender = ""
    if email_address:
        sender = f"{email_address.get('name') or ''} <{email_address.get('address') or ''}>"

    body = message.get("body") or {}

    return NormalizedEmail(
        id=str(message.get("id", "")),
        subject=message.get("subject") or "(No subject)",
        sender=sender,
        date=message.get("receivedDateTime") or "",
        body=body.get("content") or "",
        snippet=message.get("bodyPreview") or "",
    )


class OutlookMailbox(MailboxAdapter):
    provider = EmailProvider.OUTLOOK

    def __init__(
        self,
        config: Config,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self.config = config
        self._owns_http = http_client is None
        self.http = http_client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    # -- HTTP helpers --------------------------------------------------------

    def _token_request(self, form: Dict[str, str], action: str) -> Dict[str, Any]:
        try:
            resp = self.http.post(f"{OAUTH_BASE}/token", data=form)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise MailboxError(f"Failed to {action}: {e.response.text}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise MailboxError(f"Failed to {action}: {e}") from e

    def _graph_get(
        self,
        access_token: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        action: str = "call Microsoft Graph",
    ) -> Dict[str, Any]:
        try:
            resp = self.http.get(
                f"{GRAPH_API_BASE}{path}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            raise MailboxError(f"Failed to {action}: {e.response.text}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise MailboxError(f"Failed to {action}: {e}") from e

    # -- OAuth ---------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        client_id, _, redirect_uri = self.config.microsoft_credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SCOPES,
            "response_mode": "query",
            "state": state,
        }
        return f"{OAUTH_BASE}/authorize?{urlencode(params)}"

    def exchange_code(self, code: str) -> OAuthTokens:
        client_id, client_secret, redirect_uri = self.config.microsoft_credentials()
        tokens = self._token_request(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
                "scope": SCOPES,
            },
            action="exchange code",
        )
        access_token = tokens.get("access_token", "")
        profile = self._graph_get(access_token, "/me", action="fetch Microsoft profile")

        return OAuthTokens(
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_in=tokens.get("expires_in"),
            email_address=profile.get("mail") or profile.get("userPrincipalName") or "",
        )

    def refresh(self, refresh_token: str) -> str:
        client_id, client_secret, _ = self.config.microsoft_credentials()
        tokens = self._token_request(
            {
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
                "scope": SCOPES,
            },
            action="refresh token",
        )
        access_token = tokens.get("access_token")
        if not access_token:
            raise MailboxError("Failed to refresh token: no access_token in response")
        return access_token

    # -- Messages ------------------------------------------------------------

    def list_recent(
        self,
        access_token: str,
        hours_back: int = 3,
        max_results: int = 20,
    ) -> List[EmailStub]:
        after = datetime.now(timezone.utc) - timedelta(hours=hours_back)
        after_iso = after.strftime("%Y-%m-%dT%H:%M:%SZ")
        params = {
            "$filter": f"receivedDateTime ge {after_iso}",
            "$top": str(max_results),
            "$orderby": "receivedDateTime desc",
            "$select": MESSAGE_FIELDS,
        }
        logger.info("Listing Outlook messages since %s max_results=%d", after_iso, max_results)

        data = self._graph_get(access_token, "/me/messages", params=params, action="fetch emails")
        stubs: List[EmailStub] = []
        for message in data.get("value", []) or []:
            email = normalize_outlook_message(message)
            if not email.id:
                continue
            stubs.append(EmailStub(id=email.id, email=email))
        return stubs

    def detail(self, access_token: str, message_id: str) -> NormalizedEmail:
        message = self._graph_get(
            access_token,
            f"/me/messages/{message_id}",
            params={"$select": MESSAGE_FIELDS},
            action="fetch email detail",
        )
        return normalize_outlook_message(message)
