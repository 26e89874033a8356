"""
Webhook dispatcher for inbound Meta messages.

Walks ``entry[].changes[].value.messages[]`` of a verified webhook payload,
resolves the owning organization, runs one conversation turn per text
message and delivers the replies (and any created invoice) back on the
channel the message came from. Errors are logged and never propagated:
the provider always gets a success acknowledgment.
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpx
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import MessagingError, OrganizationNotFound
from ..models import Invoice, Organization, utcnow
from ..schemas import CreatedInvoice, IncomingMessage, MessagingProduct, TurnResult
from ..utils.logging import get_logger, log_event
from ..utils.phone import normalize_sender
from ..utils.text import format_currency
from .conversation_flow import ConversationEngine
from .documents import DocumentStore
from .messaging import MessagingChannel, get_channel

logger = get_logger(__name__)

MSG_PROCESSING_FAILED = "❌ Došlo k chybě při zpracování zprávy. Zkus to prosím znovu."
MSG_DELIVERY_FAILED = (
    "⚠️ Faktura {invoice_number} byla vytvořena, ale nepodařilo se ji odeslat. "
    "Zkus to prosím později."
)
MSG_INVOICE_SENT = "✅ Faktura {invoice_number} byla vytvořena a odeslána. Celkem {total}."


def iter_changes(payload: Dict[str, Any]) -> Iterator[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """Yield ``(entry, change value)`` pairs, skipping malformed parts."""
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for change in entry.get("changes") or []:
            if not isinstance(change, dict):
                continue
            value = change.get("value")
            if isinstance(value, dict):
                yield entry, value


def extract_text(message: Dict[str, Any]) -> Optional[str]:
    """
    Return the text of an inbound message.

    WhatsApp sends ``{"text": {"body": "..."}}``; Messenger sends either the
    same shape or a plain ``"text"`` string.
    """
    text = message.get("text")
    if isinstance(text, dict):
        body = text.get("body")
        return body if isinstance(body, str) else None
    if isinstance(text, str):
        return text
    return None


def extract_sender(message: Dict[str, Any], product: MessagingProduct) -> Optional[str]:
    """Sender id: a normalized phone on WhatsApp, the PSID on Messenger."""
    sender = message.get("from")
    if isinstance(sender, dict):
        sender = sender.get("id")
    if not sender:
        return None
    sender = str(sender)
    if product is MessagingProduct.WHATSAPP:
        return normalize_sender(sender)
    return sender


class WebhookDispatcher:
    """
    Runs conversation turns for a webhook payload and sends the replies.

    Args:
        session_factory: Async session factory.
        engine: Conversation engine; built from ``session_factory`` if omitted.
        http_client: Shared httpx client for outbound Graph API calls.
        document_store: Where invoice PDFs are read back for delivery;
            defaults to the engine's store.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: Optional[ConversationEngine] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        document_store: Optional[DocumentStore] = None,
    ) -> None:
        self.session_factory = session_factory
        self.engine = engine or ConversationEngine(session_factory)
        self.http_client = http_client
        self.document_store = document_store or self.engine.document_store

    async def dispatch(self, payload: Dict[str, Any]) -> int:
        """
        Process every text message in ``payload``.

        Returns:
            Number of messages handed to the conversation engine.
        """
        processed = 0
        organizations: Dict[Tuple[Optional[str], Optional[str]], int] = {}
        for entry, value in iter_changes(payload):
            messages = value.get("messages") or []
            if not messages:
                continue

            try:
                product = MessagingProduct(value.get("messaging_product") or "whatsapp")
            except ValueError:
                logger.warning(
                    "Unsupported messaging product",
                    extra={"messaging_product": value.get("messaging_product")},
                )
                continue

            phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
            try:
                organization_id = await self._resolve_organization(
                    organizations, phone_number_id, entry.get("id")
                )
            except OrganizationNotFound as e:
                logger.warning(
                    "Webhook for unknown organization skipped",
                    extra={
                        "phone_number_id": e.phone_number_id,
                        "business_account_id": e.business_account_id,
                    },
                )
                continue

            for raw in messages:
                if not isinstance(raw, dict):
                    continue
                message = self._build_message(raw, organization_id, product, phone_number_id)
                if message is None:
                    continue
                try:
                    await self.handle(message)
                except Exception as e:
                    logger.error(
                        "Message handling failed",
                        extra={
                            "message_id": message.message_id,
                            "organization_id": organization_id,
                            "error_type": type(e).__name__,
                            "error": str(e),
                        },
                        exc_info=True,
                    )
                processed += 1

        return processed

    def _build_message(
        self,
        raw: Dict[str, Any],
        organization_id: int,
        product: MessagingProduct,
        phone_number_id: Optional[str],
    ) -> Optional[IncomingMessage]:
        text = extract_text(raw)
        sender = extract_sender(raw, product)
        message_id = raw.get("id") or raw.get("mid")
        if text is None or not sender or not message_id:
            logger.debug(
                "Non-text or incomplete message ignored",
                extra={"message_type": raw.get("type"), "has_id": bool(message_id)},
            )
            return None

        return IncomingMessage(
            organization_id=organization_id,
            message_id=str(message_id),
            sender=sender,
            text=text,
            timestamp=str(raw["timestamp"]) if raw.get("timestamp") is not None else None,
            messaging_product=product,
            phone_number_id=phone_number_id,
        )

    async def _resolve_organization(
        self,
        cache: Dict[Tuple[Optional[str], Optional[str]], int],
        phone_number_id: Optional[str],
        business_account_id: Optional[str],
    ) -> int:
        """
        Find the organization by phone-number id, then by business account id.

        ``cache`` lives for one payload, so repeated changes for the same
        identifiers cost a single lookup.
        """
        key = (phone_number_id, business_account_id)
        if key in cache:
            return cache[key]

        conditions = []
        if phone_number_id:
            conditions.append(Organization.whatsapp_phone_id == str(phone_number_id))
        if business_account_id:
            conditions.append(Organization.whatsapp_business_account_id == str(business_account_id))
        if not conditions:
            raise OrganizationNotFound(phone_number_id, business_account_id)

        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(Organization.id, Organization.whatsapp_phone_id).where(or_(*conditions))
                )
            ).all()

        if not rows:
            raise OrganizationNotFound(phone_number_id, business_account_id)

        # Prefer the phone-number match when both identifiers hit
        organization_id = next(
            (row.id for row in rows if phone_number_id and row.whatsapp_phone_id == str(phone_number_id)),
            rows[0].id,
        )
        cache[key] = organization_id
        return organization_id

    async def handle(self, message: IncomingMessage) -> Optional[TurnResult]:
        """Run one turn and deliver its output; a failed turn gets a generic error reply."""
        try:
            result = await self.engine.handle_message(message)
        except Exception as e:
            logger.error(
                "Conversation turn failed",
                extra={
                    "message_id": message.message_id,
                    "organization_id": message.organization_id,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
                exc_info=True,
            )
            await self._send_texts(message, [MSG_PROCESSING_FAILED])
            return None

        await self._send_texts(message, result.replies)
        if result.invoice is not None:
            await self.deliver_invoice(message, result.invoice)
        return result

    def _channel(self, message: IncomingMessage) -> MessagingChannel:
        return get_channel(
            message.messaging_product,
            phone_number_id=message.phone_number_id,
            http_client=self.http_client,
        )

    async def _send_texts(self, message: IncomingMessage, replies: List[str]) -> None:
        if not replies:
            return
        try:
            channel = self._channel(message)
            for reply in replies:
                await channel.send_text(message.sender, reply)
        except (MessagingError, httpx.HTTPError) as e:
            logger.error(
                "Failed to send reply",
                extra={
                    "message_id": message.message_id,
                    "channel": message.messaging_product.value,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )

    async def deliver_invoice(self, message: IncomingMessage, invoice: CreatedInvoice) -> bool:
        """
        Read the stored invoice document, send it, then mark the invoice sent.

        On a delivery failure the invoice stays a draft and the sender is
        told the invoice exists but was not delivered.

        Returns:
            True when the document was delivered.
        """
        filename = f"{invoice.invoice_number.replace('/', '-')}.pdf"
        try:
            document = await self.document_store.load(invoice.document_path)
            channel = self._channel(message)
            await channel.send_document(message.sender, filename, document)
            await channel.send_text(
                message.sender,
                MSG_INVOICE_SENT.format(
                    invoice_number=invoice.invoice_number,
                    total=format_currency(invoice.total, invoice.currency),
                ),
            )
        except (MessagingError, httpx.HTTPError, OSError) as e:
            logger.error(
                "Invoice delivery failed",
                extra={
                    "invoice_id": invoice.id,
                    "channel": message.messaging_product.value,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            await self._set_status(invoice.id, "draft", sent_at=None)
            await self._send_texts(
                message, [MSG_DELIVERY_FAILED.format(invoice_number=invoice.invoice_number)]
            )
            return False

        await self._set_status(invoice.id, "sent", sent_at=utcnow())
        log_event(
            "Invoice delivered",
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            channel=message.messaging_product.value,
        )
        return True

    async def _set_status(self, invoice_id: int, status: str, sent_at) -> bool:
        """Persist the delivery status; a database failure is logged, not raised."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(Invoice)
                        .where(Invoice.id == invoice_id)
                        .values(status=status, sent_at=sent_at, updated_at=utcnow())
                    )
        except SQLAlchemyError as e:
            logger.error(
                "Invoice status update failed",
                extra={
                    "invoice_id": invoice_id,
                    "status": status,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
                exc_info=True,
            )
            return False
        logger.info("Invoice status updated", extra={"invoice_id": invoice_id, "status": status})
        return True
