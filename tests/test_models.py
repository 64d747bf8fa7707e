"""Tests for nubo_imap.models."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from nubo_imap.errors import ConnectionConfigError
from nubo_imap.models import (
    BodyPayload,
    ConnectionConfig,
    ConnectionSyncResult,
    EmailBody,
    HeaderEntry,
    MailboxConnection,
    SendEmailRequest,
    SendEmailResponse,
    SmtpSettings,
    SyncPassResult,
)


class TestConnectionConfig:
    def test_nested_shape(self, connection_config: dict):
        cfg = ConnectionConfig.model_validate(connection_config)
        assert cfg.imap.host == "imap.test.com"
        assert cfg.smtp.host == "smtp.test.com"
        assert cfg.auth.user == "testuser"
        assert cfg.auth.password.get_secret_value() == "testpass"
        assert cfg.folders == []

    def test_flat_smtp_keys(self):
        cfg = ConnectionConfig.model_validate(
            {"smtpHost": "smtp.flat.com", "smtpPort": 465, "auth": {"user": "u", "pass": "p"}}
        )
        assert cfg.smtp == SmtpSettings(host="smtp.flat.com", port=465)
        assert cfg.imap is None

    def test_flat_imap_keys(self):
        cfg = ConnectionConfig.model_validate(
            {"imapHost": "imap.flat.com", "imapSecure": False, "auth": {"user": "u", "pass": "p"}}
        )
        assert cfg.imap.host == "imap.flat.com"
        assert cfg.imap.port == 993
        assert cfg.imap.secure is False

    def test_nested_wins_over_flat(self):
        cfg = ConnectionConfig.model_validate(
            {
                "smtp": {"host": "nested.com", "port": 25},
                "smtpHost": "flat.com",
                "auth": {"user": "u", "pass": "p"},
            }
        )
        assert cfg.smtp.host == "nested.com"

    def test_auth_required(self):
        with pytest.raises(ValidationError):
            ConnectionConfig.model_validate({"imap": {"host": "h"}})


class TestSmtpSettings:
    @pytest.mark.parametrize(("port", "implicit"), [(465, True), (587, False), (25, False)])
    def test_implicit_tls_follows_port(self, port: int, implicit: bool):
        assert SmtpSettings(host="h", port=port).implicit_tls is implicit

    def test_secure_flag_ignored(self):
        settings = SmtpSettings.model_validate({"host": "h", "port": 587, "secure": True})
        assert settings.implicit_tls is False


class TestMailboxConnection:
    def test_parsed_config_from_json_string(self, connection_config: dict):
        conn = MailboxConnection(id="c", email="e", config=json.dumps(connection_config))
        assert conn.parsed_config().imap.host == "imap.test.com"

    def test_missing_config(self):
        conn = MailboxConnection(id="c", email="e", config=None)
        with pytest.raises(ConnectionConfigError, match="no config"):
            conn.parsed_config()

    def test_invalid_json(self):
        conn = MailboxConnection(id="c", email="e", config="{not json")
        with pytest.raises(ConnectionConfigError, match="not valid JSON"):
            conn.parsed_config()

    def test_invalid_fields_named(self):
        conn = MailboxConnection(id="c", email="e", config={"imap": {"host": "h"}})
        with pytest.raises(ConnectionConfigError) as exc_info:
            conn.parsed_config()
        assert exc_info.value.connection_id == "c"
        assert "auth" in exc_info.value.reason


class TestEmailBody:
    def test_serialises_camel_case(self):
        body = EmailBody(
            id="e1",
            thread_id="t1",
            snippet="hi",
            payload=BodyPayload(headers=[HeaderEntry(name="Subject", value="x")], body="<p>hi</p>"),
        )
        data = json.loads(body.model_dump_json(by_alias=True))
        assert data == {
            "id": "e1",
            "threadId": "t1",
            "snippet": "hi",
            "payload": {"headers": [{"name": "Subject", "value": "x"}], "body": "<p>hi</p>"},
        }

    def test_accepts_camel_case(self):
        body = EmailBody.model_validate(
            {"id": "e1", "threadId": "t1", "payload": {"headers": [], "body": None}}
        )
        assert body.thread_id == "t1"


class TestSendEmailRequest:
    def test_aliases(self):
        req = SendEmailRequest.model_validate(
            {
                "connectionId": "c1",
                "from": "me@test.com",
                "to": ["a@test.com"],
                "cc": ["b@test.com"],
                "bcc": ["c@test.com"],
                "subject": "Hi",
                "inReplyTo": "<x@test.com>",
                "attachments": [{"name": "a.txt", "type": "text/plain", "base64": "aGk="}],
            }
        )
        assert req.connection_id == "c1"
        assert req.sender == "me@test.com"
        assert req.in_reply_to == "<x@test.com>"
        assert req.recipients == ["a@test.com", "b@test.com", "c@test.com"]
        assert req.attachments[0].filename == "a.txt"

    def test_empty_to_rejected(self):
        with pytest.raises(ValidationError):
            SendEmailRequest.model_validate(
                {"connectionId": "c1", "from": "me@test.com", "to": [], "subject": "Hi"}
            )

    def test_response_alias(self):
        resp = SendEmailResponse(message_id="<m@test.com>")
        assert resp.model_dump(by_alias=True) == {"success": True, "messageId": "<m@test.com>"}


class TestSyncResults:
    def test_pass_aggregates(self):
        result = SyncPassResult(
            connections=[
                ConnectionSyncResult(connection_id="a", messages_synced=3),
                ConnectionSyncResult(connection_id="b", error="boom"),
                ConnectionSyncResult(connection_id="c", messages_synced=2),
            ]
        )
        assert result.messages_synced == 5
        assert result.failed_connections == ["b"]
        assert result.connections[0].ok
