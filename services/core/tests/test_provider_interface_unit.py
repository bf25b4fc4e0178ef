"""Unit tests for the message source interface and DTOs."""

from datetime import datetime, timezone

import pytest

from callbridge_core.providers.base import (
    ExternalMessage,
    FetchPageRequest,
    MessageDirection,
    MessagePage,
    MessageSourceClient,
)


class TestExternalMessage:
    """Tests for ExternalMessage.from_dict."""

    def test_from_provider_payload(self):
        message = ExternalMessage.from_dict(
            {
                "id": "gv-123",
                "threadId": "t-9",
                "phoneNumber": "(555) 123-4567",
                "direction": "outbound",
                "body": "On our way",
                "timestamp": "2024-06-01T08:30:00+00:00",
                "type": "mms",
                "attachments": ["https://cdn.example.com/a.jpg"],
                "contactName": "Jane Doe",
            }
        )

        assert message.external_id == "gv-123"
        assert message.thread_id == "t-9"
        assert message.phone_number == "(555) 123-4567"
        assert message.direction == MessageDirection.OUTBOUND
        assert message.text == "On our way"
        assert message.timestamp == datetime(2024, 6, 1, 8, 30, tzinfo=timezone.utc)
        assert message.message_type == "mms"
        assert message.attachments == ["https://cdn.example.com/a.jpg"]
        assert message.contact_name == "Jane Doe"
        assert message.raw_data["id"] == "gv-123"

    def test_snake_case_payload_with_defaults(self):
        message = ExternalMessage.from_dict(
            {
                "external_id": "gv-1",
                "phone_number": "+15551234567",
                "text": "hello",
                "timestamp": datetime(2024, 6, 1, 8, 0),
            }
        )

        assert message.direction == MessageDirection.INBOUND
        assert message.message_type == "sms"
        assert message.attachments == []
        assert message.thread_id is None

    def test_missing_values_are_kept_empty(self):
        message = ExternalMessage.from_dict({"timestamp": "2024-06-01T08:00:00"})

        assert message.external_id == ""
        assert message.phone_number == ""
        assert message.text == ""

    @pytest.mark.parametrize(
        "payload",
        [
            {"id": "gv-1"},
            {"id": "gv-1", "timestamp": "2024-06-01T08:00:00", "direction": "sideways"},
        ],
    )
    def test_invalid_payload_raises(self, payload):
        with pytest.raises(ValueError):
            ExternalMessage.from_dict(payload)


class TestMessageSourceClient:
    """Tests for the abstract source client."""

    def test_cannot_instantiate_abstract_client(self):
        with pytest.raises(TypeError):
            MessageSourceClient()

    @pytest.mark.asyncio
    async def test_fake_client_serves_pages_by_cursor(self, fake_source):
        fake_source.add_page([], next_cursor="p2")

        page = await fake_source.fetch_page("acct-1", FetchPageRequest())
        last = await fake_source.fetch_page("acct-1", FetchPageRequest(cursor="p2"))

        assert page.next_cursor == "p2"
        assert isinstance(last, MessagePage)
        assert last.next_cursor is None
        assert len(fake_source.requests) == 2

    def test_request_defaults(self):
        request = FetchPageRequest()

        assert request.cursor is None
        assert request.page_size == 50
