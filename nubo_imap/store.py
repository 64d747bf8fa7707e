"""Object storage (Cloudflare R2, S3 API) for message bodies and attachments.

All boto3 calls are wrapped with ``asyncio.to_thread()`` to avoid blocking.
"""

from __future__ import annotations

import asyncio
import hashlib
import re

import boto3
import structlog

from .config import StoreConfig
from .models import EmailBody
from .parser import ParsedAttachment

logger = structlog.get_logger()


class BodyStore:
    """Write message body documents and attachment payloads to the bucket.

    Keys are derived from the message's position in the mailbox, so
    re-syncing a message overwrites the same object instead of leaving
    orphans behind.
    """

    def __init__(self, config: StoreConfig) -> None:
        self._config = config
        self._client = None  # type: ignore[assignment]

    async def start(self) -> None:
        """Create the boto3 S3 client pointed at R2."""
        kwargs: dict = {"region_name": self._config.region}
        endpoint_url = self._config.resolved_endpoint_url
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if self._config.access_key_id and self._config.secret_access_key:
            kwargs["aws_access_key_id"] = self._config.access_key_id
            kwargs["aws_secret_access_key"] = self._config.secret_access_key.get_secret_value()
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("body_store_started", bucket=self._config.bucket_name, endpoint=endpoint_url)

    async def stop(self) -> None:
        """Drop the boto3 client."""
        self._client = None
        logger.info("body_store_stopped")

    # ------------------------------------------------------------------
    # Message bodies
    # ------------------------------------------------------------------

    def body_key(self, connection_id: str, folder: str, uid_validity: int, uid: int) -> str:
        return self._key(connection_id, _sanitize(folder), f"{uid_validity}-{uid}.json")

    async def save_email_body(
        self,
        connection_id: str,
        folder: str,
        uid_validity: int,
        uid: int,
        body: EmailBody,
    ) -> str:
        """Upload the JSON body document.  Returns the object key."""
        assert self._client is not None, "Store not started"
        key = self.body_key(connection_id, folder, uid_validity, uid)
        data = body.model_dump_json(by_alias=True).encode("utf-8")
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self._config.bucket_name,
            Key=key,
            Body=data,
            ContentType="application/json",
        )
        logger.debug("email_body_saved", connection_id=connection_id, key=key, size=len(data))
        return key

    async def load_email_body(self, key: str) -> EmailBody:
        """Download and decode a body document by key."""
        assert self._client is not None, "Store not started"
        response = await asyncio.to_thread(
            self._client.get_object,
            Bucket=self._config.bucket_name,
            Key=key,
        )
        data: bytes = await asyncio.to_thread(response["Body"].read)
        return EmailBody.model_validate_json(data)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def save_attachment(
        self,
        connection_id: str,
        email_id: str,
        attachment: ParsedAttachment,
    ) -> str:
        """Upload a single attachment payload.  Returns the object key."""
        assert self._client is not None, "Store not started"
        content_hash = hashlib.sha256(attachment.payload).hexdigest()[:12]
        key = self._key(
            connection_id,
            "attachments",
            email_id,
            f"{content_hash}_{_sanitize(attachment.filename)}",
        )
        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self._config.bucket_name,
            Key=key,
            Body=attachment.payload,
            ContentType=attachment.content_type,
        )
        logger.debug(
            "attachment_saved",
            connection_id=connection_id,
            email_id=email_id,
            filename=attachment.filename,
            key=key,
        )
        return key

    def _key(self, *parts: str) -> str:
        prefix = self._config.prefix.strip("/")
        return "/".join([prefix, *parts] if prefix else parts)


def _sanitize(name: str) -> str:
    """Remove characters unsafe for object keys."""
    return re.sub(r"[^\w.\-]", "_", name)
