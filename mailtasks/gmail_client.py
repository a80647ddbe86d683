"""
Gmail mailbox adapter.

Provides:
- GmailMailbox.authorization_url / exchange_code / refresh: OAuth2 web flow
- GmailMailbox.list_recent: message stubs (id + thread id) for recent INBOX mail
- GmailMailbox.detail: full message, normalized to NormalizedEmail

Gmail's list call only returns ids, so every new message costs a second
round-trip through detail().
"""

import base64
import logging
import time
from typing import Callable, List, Optional

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import Config
from .errors import MailboxError
from .mailbox import MailboxAdapter
from .models import EmailProvider, EmailStub, NormalizedEmail, OAuthTokens

logger = logging.getLogger(__name__)

# For now we only need read-only access
SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def _default_service_factory(access_token: str):
    creds = Credentials(token=access_token)
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


# ---------------------------------------------------------------------------
# Helpers for parsing Gmail message payloads
# ---------------------------------------------------------------------------


def _parse_header(headers: List[dict], name: str) -> Optional[str]:
    """Extract a header value (case-insensitive) from Gmail message headers."""
    for h in headers:
        if h.get("name", "").lower() == name.lower():
            return h.get("value")
    return None


def _decode_body(body: dict) -> str:
    data = body.get("data")
    if not data:
        return ""
    try:
        # Gmail strips base64url padding
        padded = data + "=" * (-len(data) % 4)
        decoded_bytes = base64.urlsafe_b64decode(padded.encode("utf-8"))
        return decoded_bytes.decode("utf-8", errors="replace")
    except (ValueError, UnicodeError):
        logger.exception("Error decoding message body.")
        return ""


def _extract_bodies_from_payload(payload: dict) -> tuple[str, Optional[str]]:
    """
    Extract plain-text and HTML bodies from a Gmail message payload.

    Returns (body_text, body_html). Either may be empty/None.
    """
    mime_type = payload.get("mimeType", "")
    body_text = ""
    body_html = None

    if mime_type == "text/plain":
        body_text = _decode_body(payload.get("body", {}))
    elif mime_type == "text/html":
        body_html = _decode_body(payload.get("body", {}))
    elif mime_type.startswith("multipart/"):
        # Recursively search parts
        parts = payload.get("parts", []) or []
        text_chunks: List[str] = []
        html_chunks: List[str] = []
        for part in parts:
            part_text, part_html = _extract_bodies_from_payload(part)
            if part_text:
                text_chunks.append(part_text)
            if part_html:
                html_chunks.append(part_html)
        body_text = "\n".join(text_chunks).strip()
        if html_chunks:
            body_html = "\n".join(html_chunks).strip()
    else:
        # Fallback: try decoding the body directly
        body_text = _decode_body(payload.get("body", {}))

    return body_text, body_html


def normalize_gmail_message(message: dict) -> NormalizedEmail:
    """Convert a Gmail `format=full` message resource into a NormalizedEmail."""
    payload = message.get("payload", {}) or {}
    headers = payload.get("headers", []) or []

    body_text, body_html = _extract_bodies_from_payload(payload)

    return NormalizedEmail(
        id=str(message.get("id", "")),
        subject=_parse_header(headers, "Subject") or "(No subject)",
        sender=_parse_header(headers, "From") or "",
        date=_parse_header(headers, "Date") or "",
        # Prefer the plain-text part; fall back to HTML for HTML-only mail
        body=body_text or body_html or "",
        snippet=message.get("snippet", "") or "",
    )


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class GmailMailbox(MailboxAdapter):
    provider = EmailProvider.GMAIL

    def __init__(
        self,
        config: Config,
        service_factory: Optional[Callable[[str], object]] = None,
    ):
        self.config = config
        self._service_factory = service_factory or _default_service_factory

    # -- OAuth ---------------------------------------------------------------

    def _flow(self) -> Flow:
        client_id, client_secret, redirect_uri = self.config.google_credentials()
        client_config = {
            "web": {
                "client_id": client_id,
                "client_secret": client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [redirect_uri],
            }
        }
        # The consent redirect and the code exchange happen in different
        # processes, so no PKCE verifier can be carried between them.
        return Flow.from_client_config(
            client_config,
            scopes=SCOPES,
            redirect_uri=redirect_uri,
            autogenerate_code_verifier=False,
        )

    def authorization_url(self, state: str) -> str:
        url, _ = self._flow().authorization_url(
            access_type="offline",
            prompt="consent",
            state=state,
        )
        return url

    def exchange_code(self, code: str) -> OAuthTokens:
        flow = self._flow()
        try:
            token = flow.fetch_token(code=code)
        except Exception as e:
            # requests-oauthlib raises a zoo of OAuth2Error subclasses
            raise MailboxError(f"Failed to exchange code: {e}") from e

        access_token = token.get("access_token", "")
        service = self._service_factory(access_token)
        try:
            profile = service.users().getProfile(userId="me").execute()
        except HttpError as e:
            raise MailboxError("Failed to fetch Gmail profile") from e

        return OAuthTokens(
            access_token=access_token,
            refresh_token=token.get("refresh_token"),
            expires_in=token.get("expires_in"),
            email_address=profile.get("emailAddress", ""),
        )

    def refresh(self, refresh_token: str) -> str:
        client_id, client_secret, _ = self.config.google_credentials()
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=SCOPES,
        )
        try:
            creds.refresh(Request())
        except GoogleAuthError as e:
            raise MailboxError(f"Failed to refresh token: {e}") from e
        return creds.token

    # -- Messages ------------------------------------------------------------

    def list_recent(
        self,
        access_token: str,
        hours_back: int = 3,
        max_results: int = 20,
    ) -> List[EmailStub]:
        """
        Return stubs for INBOX messages received in the last `hours_back` hours.
        """
        after_ts = int(time.time() - hours_back * 3600)
        query = f"after:{after_ts} in:inbox"
        logger.info("Listing Gmail messages with query=%r max_results=%d", query, max_results)

        service = self._service_factory(access_token)
        try:
            response = (
                service.users()
                .messages()
                .list(userId="me", q=query, maxResults=max_results)
                .execute()
            )
        except HttpError as e:
            raise MailboxError(f"Failed to fetch emails: {e}") from e

        stubs: List[EmailStub] = []
        for msg_ref in response.get("messages", []) or []:
            msg_id = msg_ref.get("id")
            if not msg_id:
                continue
            stubs.append(EmailStub(id=msg_id, thread_id=msg_ref.get("threadId")))
        return stubs

    def detail(self, access_token: str, message_id: str) -> NormalizedEmail:
        service = self._service_factory(access_token)
        try:
            msg = (
                service.users()
                .messages()
                .get(userId="me", id=message_id, format="full")
                .execute()
            )
        except HttpError as e:
            raise MailboxError(f"Failed to fetch email detail: {e}") from e
        return normalize_gmail_message(msg)
