"""Tests for nubo_imap.store."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from nubo_imap.config import StoreConfig
from nubo_imap.models import BodyPayload, EmailBody, HeaderEntry
from nubo_imap.parser import ParsedAttachment
from nubo_imap.store import BodyStore, _sanitize


@pytest.fixture
def store(store_config: StoreConfig) -> BodyStore:
    return BodyStore(store_config)


@pytest.fixture
def body() -> EmailBody:
    return EmailBody(
        id="email-1",
        thread_id="thread-1",
        snippet="Hello",
        payload=BodyPayload(headers=[HeaderEntry(name="Subject", value="Hi")], body="<p>Hello</p>"),
    )


class TestBodyStoreLifecycle:
    @pytest.mark.asyncio
    async def test_start_creates_r2_client(self, store: BodyStore):
        with patch("nubo_imap.store.boto3") as mock_boto3:
            mock_boto3.client.return_value = MagicMock()
            await store.start()
            mock_boto3.client.assert_called_once_with(
                "s3",
                region_name="auto",
                endpoint_url="https://acct123.r2.cloudflarestorage.com",
                aws_access_key_id="AKIDTEST",
                aws_secret_access_key="secret",
            )

    @pytest.mark.asyncio
    async def test_start_with_default_credentials(self):
        store = BodyStore(StoreConfig(bucket_name="b", endpoint_url="http://minio:9000"))
        with patch("nubo_imap.store.boto3") as mock_boto3:
            mock_boto3.client.return_value = MagicMock()
            await store.start()
            mock_boto3.client.assert_called_once_with(
                "s3", region_name="auto", endpoint_url="http://minio:9000"
            )

    @pytest.mark.asyncio
    async def test_stop(self, store: BodyStore):
        with patch("nubo_imap.store.boto3") as mock_boto3:
            mock_boto3.client.return_value = MagicMock()
            await store.start()
            await store.stop()
            assert store._client is None


class TestBodyStoreBodies:
    def test_body_key(self, store: BodyStore):
        assert store.body_key("conn-1", "INBOX", 77, 12) == "conn-1/INBOX/77-12.json"

    def test_body_key_sanitises_folder_and_prefix(self):
        store = BodyStore(StoreConfig(bucket_name="b", prefix="/emails/"))
        assert store.body_key("c", "[Gmail]/Sent Mail", 1, 2) == "emails/c/_Gmail__Sent_Mail/1-2.json"

    @pytest.mark.asyncio
    async def test_save_email_body(self, store: BodyStore, body: EmailBody):
        mock_client = MagicMock()
        with patch("nubo_imap.store.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()

            key = await store.save_email_body("conn-1", "INBOX", 77, 12, body)

            assert key == "conn-1/INBOX/77-12.json"
            kwargs = mock_client.put_object.call_args.kwargs
            assert kwargs["Bucket"] == "mail-bodies"
            assert kwargs["Key"] == key
            assert kwargs["ContentType"] == "application/json"
            document = json.loads(kwargs["Body"])
            assert document["threadId"] == "thread-1"
            assert document["payload"]["headers"] == [{"name": "Subject", "value": "Hi"}]
            assert document["payload"]["body"] == "<p>Hello</p>"

    @pytest.mark.asyncio
    async def test_load_email_body(self, store: BodyStore, body: EmailBody):
        mock_body = MagicMock()
        mock_body.read.return_value = body.model_dump_json(by_alias=True).encode()
        mock_client = MagicMock()
        mock_client.get_object.return_value = {"Body": mock_body}
        with patch("nubo_imap.store.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()

            loaded = await store.load_email_body("conn-1/INBOX/77-12.json")

            assert loaded == body
            mock_client.get_object.assert_called_once_with(
                Bucket="mail-bodies", Key="conn-1/INBOX/77-12.json"
            )

    @pytest.mark.asyncio
    async def test_put_errors_propagate(self, store: BodyStore, body: EmailBody):
        mock_client = MagicMock()
        mock_client.put_object.side_effect = OSError("connection reset")
        with patch("nubo_imap.store.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()
            with pytest.raises(OSError):
                await store.save_email_body("conn-1", "INBOX", 1, 1, body)


class TestBodyStoreAttachments:
    @pytest.mark.asyncio
    async def test_save_attachment(self, store: BodyStore):
        mock_client = MagicMock()
        attachment = ParsedAttachment(
            filename="my report.pdf",
            content_type="application/pdf",
            payload=b"%PDF-1.4",
        )
        with patch("nubo_imap.store.boto3") as mock_boto3:
            mock_boto3.client.return_value = mock_client
            await store.start()

            key = await store.save_attachment("conn-1", "email-1", attachment)

            assert key.startswith("conn-1/attachments/email-1/")
            assert key.endswith("_my_report.pdf")
            mock_client.put_object.assert_called_once_with(
                Bucket="mail-bodies",
                Key=key,
                Body=b"%PDF-1.4",
                ContentType="application/pdf",
            )


class TestSanitize:
    def test_keeps_safe_characters(self):
        assert _sanitize("report-v1.2_final.pdf") == "report-v1.2_final.pdf"

    def test_replaces_unsafe_characters(self):
        assert _sanitize("a/b c?.txt") == "a_b_c_.txt"
