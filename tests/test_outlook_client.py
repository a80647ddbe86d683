import json
import unittest
from urllib.parse import parse_qs, urlparse

import httpx

from mailtasks.config import Config
from mailtasks.errors import ConfigError, MailboxError
from mailtasks.outlook_client import OutlookMailbox, normalize_outlook_message

GRAPH_MESSAGE = {
    "id": "AAMk1",
    "subject": "Contract review",
    "from": {"emailAddress": {"name": "Bob Smith", "address": "bob@example.com"}},
    "receivedDateTime": "2026-02-04T09:30:00Z",
    "body": {"contentType": "html", "content": "<p>Please review by Friday</p>"},
    "bodyPreview": "Please review by Friday",
}


def _config(**overrides) -> Config:
    values = dict(
        MICROSOFT_CLIENT_ID="ms-client",
        MICROSOFT_CLIENT_SECRET="ms-secret",
        MICROSOFT_REDIRECT_URI="https://app.example.com/api/auth/outlook/callback",
    )
    values.update(overrides)
    return Config(_env_file=None, **values)


class NormalizeOutlookMessageTests(unittest.TestCase):
    def test_sender_is_rendered_name_and_address(self):
        email = normalize_outlook_message(GRAPH_MESSAGE)
        self.assertEqual(email.id, "AAMk1")
        self.assertEqual(email.sender, "Bob Smith <bob@example.com>")
        self.assertEqual(email.subject, "Contract review")
        self.assertEqual(email.date, "2026-02-04T09:30:00Z")
        self.assertEqual(email.body, "<p>Please review by Friday</p>")
        self.assertEqual(email.snippet, "Please review by Friday")

    def test_missing_fields(self):
        email = normalize_outlook_message({"id": "x"})
        self.assertEqual(email.subject, "(No subject)")
        self.assertEqual(email.sender, "")
        self.assertEqual(email.body, "")


class OutlookMailboxTests(unittest.TestCase):
    def _mailbox(self, handler) -> OutlookMailbox:
        return OutlookMailbox(_config(), http_client=httpx.Client(transport=httpx.MockTransport(handler)))

    def test_list_recent_attaches_emails(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"value": [GRAPH_MESSAGE, {"subject": "no id"}]})

        stubs = self._mailbox(handler).list_recent("tok", hours_back=3, max_results=5)

        self.assertEqual(seen["path"], "/v1.0/me/messages")
        self.assertEqual(seen["auth"], "Bearer tok")
        self.assertEqual(seen["params"]["$top"], "5")
        self.assertTrue(seen["params"]["$filter"].startswith("receivedDateTime ge "))
        self.assertEqual(seen["params"]["$orderby"], "receivedDateTime desc")
        self.assertEqual([s.id for s in stubs], ["AAMk1"])
        self.assertEqual(stubs[0].email.sender, "Bob Smith <bob@example.com>")

    def test_list_recent_http_error(self):
        mailbox = self._mailbox(lambda request: httpx.Response(401, text="InvalidAuthenticationToken"))
        with self.assertRaises(MailboxError) as ctx:
            mailbox.list_recent("tok", 3, 20)
        self.assertIn("Failed to fetch emails", str(ctx.exception))

    def test_refresh(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3600})

        token = self._mailbox(handler).refresh("refresh-1")

        self.assertEqual(token, "new-access")
        self.assertTrue(seen["url"].endswith("/oauth2/v2.0/token"))
        self.assertEqual(seen["form"]["grant_type"], ["refresh_token"])
        self.assertEqual(seen["form"]["refresh_token"], ["refresh-1"])
        self.assertEqual(seen["form"]["client_secret"], ["ms-secret"])

    def test_refresh_failure(self):
        mailbox = self._mailbox(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        with self.assertRaises(MailboxError) as ctx:
            mailbox.refresh("refresh-1")
        self.assertIn("invalid_grant", str(ctx.exception))

    def test_exchange_code_fetches_profile(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/token"):
                return httpx.Response(
                    200,
                    json={"access_token": "a1", "refresh_token": "r1", "expires_in": 3600},
                )
            self.assertEqual(request.url.path, "/v1.0/me")
            return httpx.Response(200, json={"mail": None, "userPrincipalName": "bob@example.com"})

        tokens = self._mailbox(handler).exchange_code("code-1")

        self.assertEqual(tokens.access_token, "a1")
        self.assertEqual(tokens.refresh_token, "r1")
        self.assertEqual(tokens.email_address, "bob@example.com")

    def test_detail(self):
        def handler(request: httpx.Request) -> httpx.Response:
            self.assertEqual(request.url.path, "/v1.0/me/messages/AAMk1")
            return httpx.Response(200, content=json.dumps(GRAPH_MESSAGE))

        email = self._mailbox(handler).detail("tok", "AAMk1")
        self.assertEqual(email.subject, "Contract review")

    def test_authorization_url(self):
        url = self._mailbox(lambda request: httpx.Response(500)).authorization_url("state-123")
        query = parse_qs(urlparse(url).query)
        self.assertEqual(query["client_id"], ["ms-client"])
        self.assertEqual(query["state"], ["state-123"])
        self.assertIn("offline_access", query["scope"][0])

    def test_missing_credentials(self):
        mailbox = OutlookMailbox(
            _config(MICROSOFT_CLIENT_SECRET=""),
            http_client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500))),
        )
        with self.assertRaises(ConfigError):
            mailbox.refresh("r")

    def test_close_releases_only_its_own_client(self):
        owned = OutlookMailbox(_config())
        owned.close()
        self.assertTrue(owned.http.is_closed)

        shared = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        OutlookMailbox(_config(), http_client=shared).close()
        self.assertFalse(shared.is_closed)


if __name__ == "__main__":
    unittest.main()
