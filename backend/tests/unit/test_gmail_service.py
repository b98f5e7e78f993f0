"""Unit tests for Gmail service layer."""

import base64
import email
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from parley.integrations.gmail_service import (
    send_message,
    get_threading_headers,
    _as_html,
    _build_mime,
    _get_header_value,
    GmailAuthError,
    GmailServiceError,
    MessageNotFoundError,
)


def _response(status_code=200, payload=None, content=b"{}"):
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.json.return_value = payload or {}
    mock_response.content = content
    return mock_response


def _mock_client(get_response=None, post_response=None):
    mock_client = MagicMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client.get = AsyncMock(return_value=get_response or _response())
    mock_client.post = AsyncMock(return_value=post_response or _response())
    return mock_client


def _decode(raw: str):
    return email.message_from_bytes(base64.urlsafe_b64decode(raw))


ORIGINAL_HEADERS = {
    "id": "msg_original",
    "payload": {
        "headers": [
            {"name": "Message-ID", "value": "<reply-2@acme.example>"},
            {"name": "References", "value": "<proposal-1@ourco.example>"},
        ]
    },
}


class TestGetHeaderValue:
    """Test _get_header_value helper function."""

    def test_found(self):
        headers = [
            {"name": "From", "value": "dana@acme.example"},
            {"name": "Subject", "value": "Re: Intro call"},
        ]
        assert _get_header_value(headers, "Subject") == "Re: Intro call"

    def test_case_insensitive(self):
        """Gmail returns Message-Id on some messages and Message-ID on others."""
        headers = [{"name": "Message-Id", "value": "<abc@acme.example>"}]
        assert _get_header_value(headers, "MESSAGE-ID") == "<abc@acme.example>"

    def test_not_found(self):
        assert _get_header_value([{"name": "From", "value": "x"}], "References") is None
        assert _get_header_value([], "From") is None


class TestBuildMime:

    def test_new_message(self):
        message = _decode(_build_mime("dana@acme.example", "Intro call", "Hi Dana,\n\nDoes Monday work?"))

        assert message["To"] == "dana@acme.example"
        assert message["From"] == "me"
        assert message["Subject"] == "Intro call"
        assert message["In-Reply-To"] is None
        assert message["References"] is None
        assert message.get_content_type() == "multipart/alternative"
        plain, rich = message.get_payload()
        assert plain.get_content_type() == "text/plain"
        assert "Does Monday work?" in plain.get_payload(decode=True).decode("utf-8")
        assert rich.get_content_type() == "text/html"

    def test_reply_headers(self):
        raw = _build_mime(
            "dana@acme.example",
            "Re: Intro call",
            "Thanks!",
            in_reply_to="<reply-2@acme.example>",
            references="<proposal-1@ourco.example> <reply-2@acme.example>",
        )
        message = _decode(raw)

        assert message["In-Reply-To"] == "<reply-2@acme.example>"
        assert message["References"] == "<proposal-1@ourco.example> <reply-2@acme.example>"
        assert "=" not in raw.rstrip("=")
        assert "+" not in raw and "/" not in raw

    def test_html_body_escaped(self):
        assert _as_html("Tom & Jerry <team>\nline two\n\nnext") == (
            "<p>Tom &amp; Jerry &lt;team&gt;<br>line two</p><p>next</p>"
        )


@pytest.mark.asyncio
class TestGetThreadingHeaders:

    async def test_returns_message_id_and_references(self):
        mock_client = _mock_client(get_response=_response(payload=ORIGINAL_HEADERS))

        with patch("parley.integrations.gmail_service.httpx.AsyncClient", return_value=mock_client):
            result = await get_threading_headers("test_token", "msg_original")

        assert result == ("<reply-2@acme.example>", "<proposal-1@ourco.example>")
        url = mock_client.get.call_args.args[0]
        assert url.endswith("/messages/msg_original")
        assert mock_client.get.call_args.kwargs["params"]["format"] == "metadata"

    async def test_missing_message(self):
        mock_client = _mock_client(get_response=_response(status_code=404))

        with patch("parley.integrations.gmail_service.httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(MessageNotFoundError):
                await get_threading_headers("test_token", "msg_gone")


@pytest.mark.asyncio
class TestSendMessage:
    """Test send_message API calls."""

    async def test_new_thread(self):
        sent = {"id": "msg_1", "threadId": "thread_1", "labelIds": ["SENT"]}
        mock_client = _mock_client(post_response=_response(payload=sent))

        with patch("parley.integrations.gmail_service.httpx.AsyncClient", return_value=mock_client):
            result = await send_message("test_token", "dana@acme.example", "Intro call", "Hi Dana")

        assert result == sent
        mock_client.get.assert_not_called()
        url = mock_client.post.call_args.args[0]
        payload = mock_client.post.call_args.kwargs["json"]
        assert url.endswith("/messages/send")
        assert "threadId" not in payload
        assert _decode(payload["raw"])["To"] == "dana@acme.example"

    async def test_reply_threads_references(self):
        mock_client = _mock_client(
            get_response=_response(payload=ORIGINAL_HEADERS),
            post_response=_response(payload={"id": "msg_3", "threadId": "thread_1"}),
        )

        with patch("parley.integrations.gmail_service.httpx.AsyncClient", return_value=mock_client):
            result = await send_message(
                "test_token",
                "dana@acme.example",
                "Re: Intro call",
                "Booked for Monday.",
                thread_id="thread_1",
                reply_to_msg_id="msg_original",
            )

        assert result["id"] == "msg_3"
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["threadId"] == "thread_1"
        message = _decode(payload["raw"])
        assert message["In-Reply-To"] == "<reply-2@acme.example>"
        assert message["References"] == "<proposal-1@ourco.example> <reply-2@acme.example>"

    async def test_reply_reference_not_duplicated(self):
        original = {
            "payload": {
                "headers": [
                    {"name": "Message-ID", "value": "<reply-2@acme.example>"},
                    {"name": "References", "value": "<proposal-1@ourco.example> <reply-2@acme.example>"},
                ]
            }
        }
        mock_client = _mock_client(get_response=_response(payload=original))

        with patch("parley.integrations.gmail_service.httpx.AsyncClient", return_value=mock_client):
            await send_message("test_token", "dana@acme.example", "Re: Intro call", "Ok", reply_to_msg_id="msg_original")

        message = _decode(mock_client.post.call_args.kwargs["json"]["raw"])
        assert message["References"] == "<proposal-1@ourco.example> <reply-2@acme.example>"

    async def test_unauthorized(self):
        mock_client = _mock_client(
            post_response=_response(status_code=401, payload={"error": {"message": "Invalid Credentials"}})
        )

        with patch("parley.integrations.gmail_service.httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(GmailAuthError) as exc_info:
                await send_message("expired_token", "dana@acme.example", "Intro call", "Hi")

        assert exc_info.value.status_code == 401
        assert exc_info.value.error_code == "gmail_auth_error"

    async def test_rate_limited(self):
        mock_client = _mock_client(
            post_response=_response(status_code=429, payload={"error": {"message": "Rate Limit Exceeded"}})
        )

        with patch("parley.integrations.gmail_service.httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(GmailServiceError) as exc_info:
                await send_message("test_token", "dana@acme.example", "Intro call", "Hi")

        assert exc_info.value.status_code == 429
        assert exc_info.value.error_code == "send_message_error"
        assert "Rate Limit Exceeded" in exc_info.value.message

    async def test_timeout(self):
        mock_client = _mock_client()
        mock_client.post = AsyncMock(side_effect=httpx.TimeoutException("write timeout"))

        with patch("parley.integrations.gmail_service.httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(GmailServiceError) as exc_info:
                await send_message("test_token", "dana@acme.example", "Intro call", "Hi")

        assert exc_info.value.status_code == 504
        assert exc_info.value.error_code == "gmail_timeout"
