"""Gmail API service layer.

Sends scheduling emails through ``users.messages.send``. Replies are
threaded with In-Reply-To/References headers taken from the message being
answered, and the returned message and thread ids are handed back so the
caller can persist them immediately.
"""

import base64
import html
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any
import httpx

from parley.core.errors import ProviderError
from parley.core.tracing import get_tracer, safe_span_attributes
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"


class GmailServiceError(ProviderError):
    """Base exception for Gmail service errors."""

    def __init__(self, message: str, status_code: int = 502, error_code: str = "gmail_service_error"):
        super().__init__(message=message, status_code=status_code, error_code=error_code)


class MessageNotFoundError(GmailServiceError):
    """Raised when the message being replied to does not exist."""

    def __init__(self, message: str = "Message not found"):
        super().__init__(message=message, status_code=404, error_code="message_not_found")


class GmailAuthError(GmailServiceError):
    """Raised on 401/403: the stored Google token is expired or lacks scope."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message=message, status_code=status_code, error_code="gmail_auth_error")


def _error_message(response: httpx.Response) -> str:
    error_data = response.json() if response.content else {}
    return error_data.get("error", {}).get("message", "Unknown error")


def _check_response(response: httpx.Response, operation: str, span, **log_extra: Any) -> None:
    if response.status_code < 400:
        return
    if response.status_code == 404:
        logger.warning(f"Gmail {operation}: not found", extra=log_extra)
        span.set_status(Status(StatusCode.ERROR, "Not found"))
        raise MessageNotFoundError(f"Gmail {operation}: resource not found")
    if response.status_code in (401, 403):
        logger.warning(
            f"Gmail API returned {response.status_code} for {operation}",
            extra={**log_extra, "error_message": _error_message(response)},
        )
        span.set_status(Status(StatusCode.ERROR, "Unauthorized"))
        raise GmailAuthError(
            "Gmail authorization expired or insufficient. Reconnect the Google account.",
            status_code=response.status_code,
        )
    error_message = _error_message(response)
    logger.error(
        f"Gmail API error during {operation}",
        extra={**log_extra, "status_code": response.status_code, "error": error_message},
    )
    span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
    raise GmailServiceError(
        message=f"Gmail {operation} failed: {error_message}",
        status_code=response.status_code,
        error_code=f"{operation}_error",
    )


def _get_header_value(headers: list[dict], name: str) -> str | None:
    """Case-insensitive header lookup in a Gmail ``payload.headers`` list."""
    for header in headers:
        if header.get("name", "").lower() == name.lower():
            return header.get("value")
    return None


def _as_html(body: str) -> str:
    paragraphs = [html.escape(block).replace("\n", "<br>") for block in body.strip().split("\n\n")]
    return "".join(f"<p>{p}</p>" for p in paragraphs)


def _build_mime(
    to_address: str,
    subject: str,
    body: str,
    in_reply_to: str | None = None,
    references: str | None = None,
    from_address: str = "me",
) -> str:
    """Build a base64url-encoded multipart/alternative message for ``messages.send``."""
    message = MIMEMultipart("alternative")
    message.attach(MIMEText(body, "plain", "utf-8"))
    message.attach(MIMEText(_as_html(body), "html", "utf-8"))
    message["To"] = to_address
    message["From"] = from_address
    message["Subject"] = subject
    if in_reply_to:
        message["In-Reply-To"] = in_reply_to
    if references:
        message["References"] = references
    return base64.urlsafe_b64encode(message.as_string().encode("utf-8")).decode("utf-8")


async def get_threading_headers(user_token: str, message_id: str) -> tuple[str | None, str | None]:
    """Return ``(Message-ID, References)`` of the message we are replying to."""
    with tracer.start_as_current_span("gmail.get_threading_headers") as span:
        span.set_attributes(safe_span_attributes(reply_to_msg_id=message_id, operation="get_message"))
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(
                    f"{GMAIL_API_BASE}/messages/{message_id}",
                    headers={"Authorization": f"Bearer {user_token}", "Accept": "application/json"},
                    params={"format": "metadata", "metadataHeaders": ["Message-ID", "References"]},
                    timeout=15.0,
                )
        except httpx.TimeoutException:
            span.set_status(Status(StatusCode.ERROR, "Timeout"))
            raise GmailServiceError("Gmail API request timeout", status_code=504, error_code="gmail_timeout")
        except httpx.RequestError as e:
            span.set_status(Status(StatusCode.ERROR, "Network error"))
            raise GmailServiceError(f"Unable to reach Gmail API: {e}", status_code=503, error_code="gmail_unreachable")

        _check_response(response, "get_message", span, reply_to_msg_id=message_id)
        headers = response.json().get("payload", {}).get("headers", [])
        span.set_status(Status(StatusCode.OK))
        return _get_header_value(headers, "Message-ID"), _get_header_value(headers, "References")


async def send_message(
    user_token: str,
    to_address: str,
    subject: str,
    body: str,
    thread_id: str | None = None,
    reply_to_msg_id: str | None = None,
) -> dict[str, Any]:
    """Send an email, threading it under ``reply_to_msg_id`` when given.

    Returns:
        Gmail's response, e.g. ``{"id": "msg_789", "threadId": "thread_123", "labelIds": ["SENT"]}``

    Raises:
        MessageNotFoundError: the message being replied to is gone
        GmailAuthError: token expired or missing scope
        GmailServiceError: any other API or network failure
    """
    with tracer.start_as_current_span("gmail.send_message") as span:
        span.set_attributes(safe_span_attributes(
            thread_id=thread_id,
            reply_to_msg_id=reply_to_msg_id,
            recipient_email=to_address,
            body=body,
            operation="send_message",
        ))

        in_reply_to = references = None
        if reply_to_msg_id:
            in_reply_to, existing_references = await get_threading_headers(user_token, reply_to_msg_id)
            if in_reply_to:
                refs = [ref for ref in (existing_references or "").split() if ref]
                if in_reply_to not in refs:
                    refs.append(in_reply_to)
                references = " ".join(refs)

        payload: dict[str, Any] = {
            "raw": _build_mime(to_address, subject, body, in_reply_to=in_reply_to, references=references)
        }
        if thread_id:
            payload["threadId"] = thread_id

        logger.info("Sending Gmail message", extra={"thread_id": thread_id, "is_reply": bool(reply_to_msg_id)})

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{GMAIL_API_BASE}/messages/send",
                    headers={
                        "Authorization": f"Bearer {user_token}",
                        "Content-Type": "application/json",
                        "Accept": "application/json",
                    },
                    json=payload,
                    timeout=15.0,
                )
        except httpx.TimeoutException:
            logger.error("Gmail API timeout sending message", extra={"thread_id": thread_id})
            span.set_status(Status(StatusCode.ERROR, "Timeout"))
            raise GmailServiceError("Gmail API request timeout", status_code=504, error_code="gmail_timeout")
        except httpx.RequestError as e:
            logger.error("Gmail API network error sending message", extra={"thread_id": thread_id, "error": str(e)})
            span.set_status(Status(StatusCode.ERROR, "Network error"))
            raise GmailServiceError(f"Unable to reach Gmail API: {e}", status_code=503, error_code="gmail_unreachable")

        _check_response(response, "send_message", span, thread_id=thread_id)
        sent = response.json()

        logger.info(
            "Gmail message sent",
            extra={"message_id": sent.get("id"), "thread_id": sent.get("threadId")},
        )
        span.set_attribute("sent_message_id", sent.get("id", ""))
        span.set_status(Status(StatusCode.OK))
        return sent
