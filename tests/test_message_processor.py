"""Tests for message normalization and label classification."""

import json
from datetime import datetime

import pytest

from app.models import MailSync
from app.services.db_service import SyncStateStore
from app.services.errors import CredentialInactive
from app.services.label_service import classify_labels, initialize_labels, parse_catalog
from app.services.message_processor import (
    MessageProcessor,
    decode_body_data,
    extract_body,
    extract_header,
    parse_received_date,
)

from conftest import (
    BASE_MS,
    FakeGmailClient,
    FakeMessageStore,
    FakeTokenProvider,
    b64,
    make_gmail_message,
)

CATALOG = {
    "Label_1": {"name": "Receipts", "type": "user"},
    "CATEGORY_PROMOTIONS": {"name": "CATEGORY_PROMOTIONS", "type": "system"},
}


def mail_sync(labels=None):
    return MailSync(id=1, user="user-1", provider="gmail", token_id=7,
                    labels=json.dumps(labels if labels is not None else CATALOG))


class TestBodyExtraction:
    """Body selection from Gmail payloads."""

    def test_simple_body(self):
        payload = {"mimeType": "text/plain", "body": {"data": b64("just text")}}

        assert extract_body(payload) == "just text"

    def test_html_preferred_over_plain(self):
        payload = {
            "mimeType": "multipart/alternative",
            "parts": [
                {"mimeType": "text/plain", "body": {"data": b64("plain")}},
                {"mimeType": "text/html", "body": {"data": b64("<b>html</b>")}},
            ],
        }

        assert extract_body(payload) == "<b>html</b>"

    def test_nested_multipart(self):
        payload = {
            "mimeType": "multipart/mixed",
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"mimeType": "text/plain", "body": {"data": b64("nested plain")}},
                    ],
                },
                {"mimeType": "application/pdf", "body": {"attachmentId": "att-1"}},
            ],
        }

        assert extract_body(payload) == "nested plain"

    def test_empty_payload(self):
        assert extract_body(None) == ""
        assert extract_body({"parts": []}) == ""

    def test_undecodable_data(self):
        assert decode_body_data("%%%") == ""


class TestHeaders:
    """Header lookup and Received date parsing."""

    def test_header_lookup_is_case_insensitive(self):
        headers = [{"name": "subject", "value": "Hello"}]

        assert extract_header(headers, "Subject") == "Hello"
        assert extract_header(headers, "From") == ""

    def test_received_date_is_naive_utc(self):
        headers = [{
            "name": "Received",
            "value": "from mx.example.com by mx.google.com; Tue, 2 Jan 2024 10:30:00 +0200",
        }]

        assert parse_received_date(headers) == datetime(2024, 1, 2, 8, 30, 0)

    @pytest.mark.parametrize("value", ["", "from somewhere without a date", "x; not a date"])
    def test_unparseable_received_header(self, value):
        assert parse_received_date([{"name": "Received", "value": value}]) is None


class TestLabels:
    """Label id classification."""

    def test_system_labels_set_flags(self):
        flags = classify_labels(["INBOX", "UNREAD", "STARRED"], CATALOG)

        assert flags.is_inbox and flags.is_unread and flags.is_starred
        assert not flags.is_spam
        assert flags.custom_labels == {}

    def test_custom_and_unknown_labels_kept(self):
        flags = classify_labels(["Label_1", "Label_99"], CATALOG)

        assert flags.custom_labels == {
            "Label_1": {"name": "Receipts", "type": "user"},
            "Label_99": {"name": "Label_99", "type": "unknown"},
        }
        assert json.loads(flags.as_columns()["custom_labels"]) == flags.custom_labels

    def test_invalid_catalog(self):
        assert parse_catalog("not json") == {}
        assert parse_catalog(None) == {}


class TestMessageProcessor:
    """Fetch, normalize and upsert."""

    def test_process_stores_normalized_message(self):
        message = make_gmail_message("m1", BASE_MS, labels=["INBOX", "Label_1"], history_id="4321")
        store = FakeMessageStore()
        processor = MessageProcessor(FakeGmailClient([message]), store, mail_sync())

        timestamp = processor.process("m1")

        row = store.rows["m1"]
        assert timestamp == datetime(2023, 11, 14, 22, 13, 20)
        assert row["internal_date"] == timestamp
        assert row["received_date"] == timestamp
        assert row["from_address"] == "alice@example.com"
        assert row["subject"] == "Subject m1"
        assert row["body"] == "<p>hello</p>"
        assert row["is_inbox"] is True
        assert row["is_unread"] is False
        assert json.loads(row["custom_labels"]) == {"Label_1": CATALOG["Label_1"]}
        assert json.loads(row["external_data"])["history_id"] == "4321"

    def test_reprocessing_replaces_row(self):
        message = make_gmail_message("m1", BASE_MS, subject="First")
        client = FakeGmailClient([message])
        store = FakeMessageStore()
        processor = MessageProcessor(client, store, mail_sync())

        processor.process("m1")
        client.messages["m1"] = make_gmail_message("m1", BASE_MS, subject="Second")
        processor.process("m1")

        assert store.count(1) == 1
        assert store.rows["m1"]["subject"] == "Second"

    def test_empty_message_id(self):
        processor = MessageProcessor(FakeGmailClient([]), FakeMessageStore(), mail_sync())

        with pytest.raises(ValueError):
            processor.process("")


class TestInitializeLabels:
    """Linking a token creates or refreshes its MailSync row."""

    def test_creates_row_with_catalog(self, session_factory, seeded_mail_sync):
        token_id, _ = seeded_mail_sync
        client = FakeGmailClient([], labels=CATALOG)
        state_store = SyncStateStore(session_factory)

        created = initialize_labels(FakeTokenProvider(client), state_store, token_id, "user-9")

        assert created.user == "user-9"
        assert created.sync_status == "ready"
        assert parse_catalog(created.labels) == CATALOG

    def test_token_failure_propagates(self, session_factory):
        provider = FakeTokenProvider(error=CredentialInactive("Token 7 is marked as inactive"))

        with pytest.raises(CredentialInactive):
            initialize_labels(provider, SyncStateStore(session_factory), 7, "user-9")
