"""Unit tests for the Google provider adapter and the completion client."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from parley.core.errors import CompletionServiceError
from parley.integrations import calendar_service, gmail_service
from parley.integrations.completion_client import OpenAICompletionClient, parse_json_object
from parley.integrations.provider import GoogleWorkspaceProvider, _meeting_link

UTC = timezone.utc
START = datetime(2026, 1, 5, 15, 30, tzinfo=UTC)


@pytest.fixture
def google() -> GoogleWorkspaceProvider:
    return GoogleWorkspaceProvider("test_token", calendar_id="rep@ourco.example")


def test_meeting_link_sources():
    assert _meeting_link({"hangoutLink": "https://meet.google.com/a"}) == "https://meet.google.com/a"
    assert _meeting_link({
        "conferenceData": {"entryPoints": [
            {"entryPointType": "phone", "uri": "tel:+1-555-0100"},
            {"entryPointType": "video", "uri": "https://meet.google.com/b"},
        ]}
    }) == "https://meet.google.com/b"
    assert _meeting_link({}) is None


@pytest.mark.asyncio
class TestGoogleWorkspaceProvider:

    async def test_send_returns_ids(self, google):
        send = AsyncMock(return_value={"id": "msg_9", "threadId": "thread_4"})
        with patch.object(gmail_service, "send_message", send):
            result = await google.send("dana@acme.example", "Re: Intro call", "Hi", reply_to_id="msg_8", thread_id="thread_4")

        assert (result.message_id, result.thread_id) == ("msg_9", "thread_4")
        assert send.call_args.kwargs["reply_to_msg_id"] == "msg_8"

    async def test_send_new_thread_falls_back_to_message_id(self, google):
        with patch.object(gmail_service, "send_message", AsyncMock(return_value={"id": "msg_1"})):
            result = await google.send("dana@acme.example", "Intro call", "Hi")

        assert result.thread_id == "msg_1"

    async def test_book(self, google):
        create = AsyncMock(return_value={"id": "evt_1", "hangoutLink": "https://meet.google.com/abc"})
        with patch.object(calendar_service, "create_event", create):
            result = await google.book(START, 30, ["dana@acme.example"], "Intro call", timezone="America/New_York")

        assert result.event_id == "evt_1"
        assert result.meeting_link == "https://meet.google.com/abc"
        assert create.call_args.kwargs["calendar_id"] == "rep@ourco.example"

    async def test_check_availability(self, google):
        freebusy = {"calendars": {"dana@acme.example": {"busy": [
            {"start": "2026-01-05T15:00:00Z", "end": "2026-01-05T15:45:00Z"},
        ]}}}
        get_freebusy = AsyncMock(return_value=freebusy)
        with patch.object(calendar_service, "get_freebusy", get_freebusy):
            assert not await google.check_availability(START, 30, ["dana@acme.example"])
            assert await google.check_availability(datetime(2026, 1, 5, 16, 0, tzinfo=UTC), 30, ["dana@acme.example"])

        assert get_freebusy.call_args.kwargs["calendar_ids"] == ["rep@ourco.example", "dana@acme.example"]

    async def test_find_free_slots_returns_instants(self, google):
        busy = {"calendars": {"rep@ourco.example": {"busy": [
            {"start": "2026-01-05T14:00:00Z", "end": "2026-01-05T15:00:00Z"},
        ]}}}
        with patch.object(calendar_service, "get_freebusy", AsyncMock(return_value=busy)):
            slots = await google.find_free_slots(
                datetime(2026, 1, 5, 13, 0, tzinfo=UTC),
                datetime(2026, 1, 6, 13, 0, tzinfo=UTC),
                "America/New_York",
                30,
                max_slots=2,
            )

        # 10:00 and 11:15 New York time
        assert slots == [datetime(2026, 1, 5, 15, 0, tzinfo=UTC), datetime(2026, 1, 5, 16, 15, tzinfo=UTC)]

    async def test_cancel_event(self, google):
        delete = AsyncMock(return_value=None)
        with patch.object(calendar_service, "delete_event", delete):
            await google.cancel_event("evt_1")

        delete.assert_awaited_once_with("test_token", "evt_1", calendar_id="rep@ourco.example")


class TestParseJsonObject:

    def test_fenced(self):
        assert parse_json_object('```json\n{"intent": "accept"}\n```') == {"intent": "accept"}

    def test_not_an_object(self):
        assert parse_json_object('["accept"]') == {}
        assert parse_json_object("Sure! The intent is accept.") == {}


@pytest.mark.asyncio
class TestOpenAICompletionClient:

    async def test_classify(self):
        client = OpenAICompletionClient(api_key="sk-test")
        client._classifier = MagicMock()
        client._classifier.ainvoke = AsyncMock(return_value=MagicMock(content='{"intent": "decline", "confidence": "high"}'))

        assert await client.classify("Not interested") == {"intent": "decline", "confidence": "high"}
        system, human = client._classifier.ainvoke.call_args.args[0]
        assert human.content == "Not interested"

    async def test_unreachable(self):
        client = OpenAICompletionClient(api_key="sk-test")
        client._extractor = MagicMock()
        client._extractor.ainvoke = AsyncMock(side_effect=TimeoutError("read timed out"))

        with pytest.raises(CompletionServiceError) as exc_info:
            await client.extract("Tuesday at 3pm?")

        assert "extract call failed" in exc_info.value.message
