"""
Message gateway for the Meta Graph API.

Provides one channel implementation per messaging product (WhatsApp Cloud
API and Messenger Send API) behind a common ``send_text`` /
``send_document`` interface, plus verification of the
``x-hub-signature-256`` header on inbound webhooks.
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import settings
from ..exceptions import MessagingConfigurationError, MessagingError
from ..schemas import MessagingProduct
from ..utils.logging import get_logger, log_api_call

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_meta_signature(
    signature: Optional[str], payload: bytes, app_secret: Optional[str] = None
) -> bool:
    """
    Verify the HMAC-SHA256 signature Meta sends with every webhook.

    Args:
        signature: Value of the ``x-hub-signature-256`` header
        payload: Raw request body, exactly as received
        app_secret: Shared app secret; defaults to settings

    Returns:
        True only for a well-formed header matching the body. A missing
        header, a missing secret or a header without the ``sha256=``
        prefix all fail.
    """
    secret = settings.whatsapp_app_secret if app_secret is None else app_secret
    if not signature or not secret:
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        return False

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature.encode("utf-8"), f"{SIGNATURE_PREFIX}{expected}".encode("utf-8"))


class MessagingChannel:
    """
    Base class for an outbound Graph API channel.

    Subclasses set ``service`` and implement ``send_text`` and
    ``send_document``. Requests go through ``_request``, which retries
    network errors and timeouts with exponential backoff and raises
    ``MessagingError`` for error responses.
    """

    service = "graph"

    def __init__(
        self,
        access_token: str,
        api_version: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.access_token = access_token
        self.api_version = api_version or settings.whatsapp_api_version
        self.base_url = (base_url or settings.whatsapp_api_base_url).rstrip("/")
        self.http_client = http_client

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url, self.api_version, *parts])

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    @retry(
        retry=retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        before_sleep=before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    async def _request(self, operation: str, url: str, **kwargs: Any) -> Any:
        """
        POST to the Graph API and return the decoded JSON body.

        Raises:
            MessagingError: If the API answers with a 4xx/5xx status
            httpx.RequestError: If the network keeps failing after retries
        """
        started = time.monotonic()
        status_code = 0
        try:
            if self.http_client is not None:
                response = await self.http_client.post(url, headers=self._headers(), **kwargs)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
                    response = await client.post(url, headers=self._headers(), **kwargs)
            status_code = response.status_code
        except httpx.RequestError as e:
            log_api_call(
                self.service,
                url.removeprefix(self.base_url),
                "POST",
                status_code,
                (time.monotonic() - started) * 1000,
                error_type=type(e).__name__,
            )
            raise

        log_api_call(
            self.service,
            url.removeprefix(self.base_url),
            "POST",
            status_code,
            (time.monotonic() - started) * 1000,
        )

        if response.is_error:
            logger.error(
                "Graph API returned error status",
                extra={
                    "service": self.service,
                    "operation": operation,
                    "status_code": status_code,
                    "response": response.text[:500],
                },
            )
            raise MessagingError(operation, status_code, response.text[:500])

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def send_text(self, to: str, body: str) -> Any:
        raise NotImplementedError

    async def send_document(
        self,
        to: str,
        filename: str,
        data: bytes,
        mime_type: str = "application/pdf",
    ) -> Any:
        raise NotImplementedError


class WhatsAppChannel(MessagingChannel):
    """WhatsApp Cloud API channel bound to one business phone-number id."""

    service = "whatsapp"

    def __init__(
        self,
        phone_number_id: str,
        access_token: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        token = settings.whatsapp_access_token if access_token is None else access_token
        if not token:
            raise MessagingConfigurationError("WHATSAPP_ACCESS_TOKEN")
        if not phone_number_id:
            raise MessagingConfigurationError("phone_number_id")
        super().__init__(token, **kwargs)
        self.phone_number_id = phone_number_id

    async def send_text(self, to: str, body: str) -> Any:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        data = await self._request("send text", self._url(self.phone_number_id, "messages"), json=payload)
        logger.info(
            "WhatsApp text sent",
            extra={"message_length": len(body), "message_id": _first_message_id(data)},
        )
        return data

    async def send_document(
        self,
        to: str,
        filename: str,
        data: bytes,
        mime_type: str = "application/pdf",
    ) -> Any:
        """Upload the file as media, then send a document message referencing it."""
        upload = await self._request(
            "upload media",
            self._url(self.phone_number_id, "media"),
            data={"messaging_product": "whatsapp", "type": mime_type},
            files={"file": (filename, data, mime_type)},
        )
        media_id = upload.get("id") if isinstance(upload, dict) else None
        if not media_id:
            raise MessagingError("upload media", None, "Meta API upload did not return media ID")

        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "document",
            "document": {"id": media_id, "filename": filename},
        }
        result = await self._request("send document", self._url(self.phone_number_id, "messages"), json=payload)
        logger.info(
            "WhatsApp document sent",
            extra={"media_id": media_id, "size_bytes": len(data)},
        )
        return result


class MessengerChannel(MessagingChannel):
    """Messenger Send API channel for one page."""

    service = "messenger"

    def __init__(
        self,
        page_id: Optional[str] = None,
        access_token: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        token = settings.messenger_access_token if access_token is None else access_token
        if not token:
            raise MessagingConfigurationError("MESSENGER_ACCESS_TOKEN")
        super().__init__(token, **kwargs)
        self.page_id = page_id or settings.messenger_page_id or "me"

    async def send_text(self, to: str, body: str) -> Any:
        payload = {
            "messaging_type": "RESPONSE",
            "recipient": {"id": to},
            "message": {"text": body},
        }
        data = await self._request("send messenger text", self._url(self.page_id, "messages"), json=payload)
        logger.info("Messenger text sent", extra={"message_length": len(body)})
        return data

    async def send_document(
        self,
        to: str,
        filename: str,
        data: bytes,
        mime_type: str = "application/pdf",
    ) -> Any:
        """Upload the file as a reusable attachment, then send it by id."""
        upload = await self._request(
            "upload attachment",
            self._url(self.page_id, "message_attachments"),
            data={
                "message": json.dumps(
                    {"attachment": {"type": "file", "payload": {"is_reusable": True}}}
                )
            },
            files={"filedata": (filename, data, mime_type)},
        )
        attachment_id = upload.get("attachment_id") if isinstance(upload, dict) else None
        if not attachment_id:
            raise MessagingError("upload attachment", None, "Meta API upload did not return attachment ID")

        payload = {
            "messaging_type": "RESPONSE",
            "recipient": {"id": to},
            "message": {
                "attachment": {"type": "file", "payload": {"attachment_id": attachment_id}}
            },
        }
        result = await self._request("send messenger document", self._url(self.page_id, "messages"), json=payload)
        logger.info(
            "Messenger document sent",
            extra={"attachment_id": attachment_id, "size_bytes": len(data)},
        )
        return result


def get_channel(
    messaging_product: MessagingProduct | str,
    phone_number_id: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> MessagingChannel:
    """
    Build the channel that replies on ``messaging_product``.

    Raises:
        MessagingConfigurationError: If the channel's token (or, for
            WhatsApp, the phone-number id) is missing.
    """
    product = MessagingProduct(messaging_product)
    if product is MessagingProduct.MESSENGER:
        return MessengerChannel(http_client=http_client)
    return WhatsAppChannel(phone_number_id or "", http_client=http_client)


def _first_message_id(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        messages = data.get("messages") or [{}]
        return messages[0].get("id")
    return None
