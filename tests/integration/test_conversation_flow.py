"""
Integration tests for the conversation engine.

Each test drives the invoice wizard message by message against a fresh
SQLite database and checks both the replies and what was persisted.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from itertools import count

import pytest
from sqlalchemy import func, select

from src.invoicebot.models import (
    AuditLog,
    Client,
    Conversation,
    Invoice,
    InvoiceItem,
    Organization,
    ProcessedMessage,
)
from src.invoicebot.schemas import (
    ConfirmContext,
    ConversationState,
    DraftLineItem,
    IncomingMessage,
    MessagingProduct,
)
from src.invoicebot.services.conversation_flow import (
    MSG_BACK_TO_ITEMS,
    MSG_CANCELLED,
    MSG_CONFIRM_REPROMPT,
    MSG_DATE_FORMAT,
    MSG_DATE_INVALID,
    MSG_DUE_BEFORE_ISSUE,
    MSG_GREETING,
    MSG_HANDLER_ERROR,
    MSG_ITEM_FORMAT,
    MSG_ITEMS_REQUIRED,
    MSG_NEW_CLIENT_FORMAT,
    MSG_PRICE_INVALID,
    MSG_PRICE_TOO_LARGE,
    MSG_QUANTITY_INVALID,
    MSG_QUANTITY_TOO_LARGE,
    MSG_THROTTLED,
    MSG_TOTAL_TOO_LARGE,
    MSG_UNKNOWN_STATE,
    ConversationEngine,
)
from src.invoicebot.services.rate_limit import RateLimiter
from src.invoicebot.utils.invoice_calculations import calculate_invoice_totals

SENDER = "420777123456"
NBSP = "\xa0"

_ids = count(1)


def make_message(organization, text, message_id=None, product=MessagingProduct.WHATSAPP):
    return IncomingMessage(
        organization_id=organization.id,
        message_id=message_id or f"wamid.{next(_ids)}",
        sender=SENDER,
        text=text,
        messaging_product=product,
        phone_number_id="PHONE123",
    )


async def send(engine, organization, text, message_id=None):
    return await engine.handle_message(make_message(organization, text, message_id))


async def load_conversation(session_factory, organization):
    async with session_factory() as session:
        return (
            await session.execute(
                select(Conversation).where(
                    Conversation.organization_id == organization.id,
                    Conversation.whatsapp_phone == SENDER,
                )
            )
        ).scalar_one_or_none()


async def count_rows(session_factory, model):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def walk_to_items(engine, organization):
    await send(engine, organization, "faktura")
    await send(engine, organization, "12345678")


async def walk_to_confirm(engine, organization):
    await walk_to_items(engine, organization)
    await send(engine, organization, "Konzultace|2|500")
    await send(engine, organization, "hotovo")
    await send(engine, organization, "2025-01-15")


class TestEndToEnd:
    """The complete happy path from 'faktura' to a created invoice."""

    @pytest.mark.asyncio
    async def test_full_flow_creates_invoice(
        self, conversation_engine, session_factory, organization, renderer, document_store
    ):
        result = await send(conversation_engine, organization, "faktura")
        assert result.state == ConversationState.AWAITING_CLIENT
        assert "IČO" in result.replies[0]

        result = await send(conversation_engine, organization, "12345678")
        assert result.state == ConversationState.AWAITING_ITEMS
        assert "Klient 12345678" in result.replies[0]

        result = await send(conversation_engine, organization, "Konzultace|2|500")
        assert result.state == ConversationState.AWAITING_ITEMS
        assert f"1. Konzultace — 2 × 500,00{NBSP}Kč" in result.replies[0]

        result = await send(conversation_engine, organization, "hotovo")
        assert result.state == ConversationState.AWAITING_DATES

        result = await send(conversation_engine, organization, "2025-01-15")
        assert result.state == ConversationState.CONFIRM
        summary = result.replies[0]
        assert "Datum vystavení: 2025-01-15" in summary
        assert "Splatnost: 2025-01-29" in summary
        assert f"Celkem: 1{NBSP}210,00{NBSP}Kč" in summary

        result = await send(conversation_engine, organization, "ano")
        assert result.state == ConversationState.IDLE
        invoice = result.invoice
        assert invoice is not None
        assert invoice.invoice_number == "2025-00001"
        assert invoice.variable_symbol == "0202500001"
        assert invoice.total == Decimal("1210.00")
        assert invoice.document_path == f"{organization.id}/2025/2025-00001.pdf"

        async with session_factory() as session:
            stored = (await session.execute(select(Invoice))).scalar_one()
            items = (await session.execute(select(InvoiceItem))).scalars().all()
            audit = (await session.execute(select(AuditLog))).scalar_one()

        assert stored.status == "draft"
        assert stored.created_via == "whatsapp"
        assert stored.issue_date == date(2025, 1, 15)
        assert stored.due_date == date(2025, 1, 29)
        assert stored.subtotal == Decimal("1000.00")
        assert stored.vat_amount == Decimal("210.00")
        assert stored.total == Decimal("1210.00")
        assert stored.pdf_path == invoice.document_path
        assert [(i.description, i.total) for i in items] == [("Konzultace", Decimal("1210.00"))]
        assert audit.entity_type == "invoice"
        assert audit.action == "created"
        assert audit.changes == {
            "invoiceNumber": "2025-00001",
            "total": "1210.00",
            "createdVia": "whatsapp",
            "whatsappPhone": SENDER,
        }

        assert (await document_store.load(invoice.document_path)).startswith(b"%PDF")
        assert renderer.rendered[0].client_name == "Klient 12345678"

        conversation = await load_conversation(session_factory, organization)
        assert conversation.state == "idle"
        assert conversation.context == {}

    @pytest.mark.asyncio
    async def test_second_invoice_gets_next_number(self, conversation_engine, organization):
        await walk_to_confirm(conversation_engine, organization)
        first = await send(conversation_engine, organization, "ano")
        await walk_to_confirm(conversation_engine, organization)
        second = await send(conversation_engine, organization, "ano")

        assert first.invoice.invoice_number == "2025-00001"
        assert second.invoice.invoice_number == "2025-00002"
        assert second.invoice.variable_symbol == "0202500002"

    @pytest.mark.asyncio
    async def test_existing_client_is_reused(self, conversation_engine, session_factory, organization):
        await walk_to_confirm(conversation_engine, organization)
        await send(conversation_engine, organization, "ano")
        await walk_to_items(conversation_engine, organization)

        assert await count_rows(session_factory, Client) == 1

    @pytest.mark.asyncio
    async def test_messenger_channel_recorded(self, conversation_engine, session_factory, organization):
        for text in ["faktura", "12345678", "Konzultace|2|500", "hotovo", "2025-01-15", "ano"]:
            await conversation_engine.handle_message(
                make_message(organization, text, product=MessagingProduct.MESSENGER)
            )

        async with session_factory() as session:
            stored = (await session.execute(select(Invoice))).scalar_one()
        assert stored.created_via == "messenger"


class TestIdempotency:
    """Redelivered message ids have no second effect."""

    @pytest.mark.asyncio
    async def test_duplicate_message_is_ignored(self, conversation_engine, session_factory, organization):
        first = await send(conversation_engine, organization, "faktura", message_id="wamid.DUP")
        second = await send(conversation_engine, organization, "faktura", message_id="wamid.DUP")

        assert first.replies
        assert second.replies == []
        conversation = await load_conversation(session_factory, organization)
        assert conversation.state == "awaiting_client"
        assert conversation.last_message_id == "wamid.DUP"

    @pytest.mark.asyncio
    async def test_duplicate_confirmation_creates_one_invoice(
        self, conversation_engine, session_factory, organization
    ):
        await walk_to_confirm(conversation_engine, organization)

        first = await send(conversation_engine, organization, "ano", message_id="wamid.YES")
        second = await send(conversation_engine, organization, "ano", message_id="wamid.YES")

        assert first.invoice is not None
        assert second.invoice is None
        assert await count_rows(session_factory, Invoice) == 1

    @pytest.mark.asyncio
    async def test_empty_text_is_a_no_op(self, conversation_engine, session_factory, organization):
        result = await send(conversation_engine, organization, "   ")

        assert result.replies == []
        assert await count_rows(session_factory, ProcessedMessage) == 0
        assert await load_conversation(session_factory, organization) is None


class TestRateLimit:
    """Per-sender throttling."""

    @pytest.mark.asyncio
    async def test_message_over_limit_is_throttled(
        self, session_factory, organization, renderer, document_store
    ):
        fixed = datetime(2025, 1, 15, 10, 0, 30, tzinfo=timezone.utc)
        engine = ConversationEngine(
            session_factory,
            renderer=renderer,
            document_store=document_store,
            rate_limiter=RateLimiter(max_per_minute=3, clock=lambda: fixed),
        )

        await send(engine, organization, "ahoj")
        await send(engine, organization, "ahoj")
        await send(engine, organization, "ahoj")
        result = await send(engine, organization, "faktura")

        assert result.replies == [MSG_THROTTLED]
        conversation = await load_conversation(session_factory, organization)
        assert conversation.state == "idle"
        # the throttled message still counts as processed
        assert await count_rows(session_factory, ProcessedMessage) == 4

    @pytest.mark.asyncio
    async def test_previous_minute_counts_towards_window(
        self, session_factory, organization, renderer, document_store
    ):
        now = {"value": datetime(2025, 1, 15, 10, 0, 50, tzinfo=timezone.utc)}
        limiter = RateLimiter(max_per_minute=2, clock=lambda: now["value"])
        engine = ConversationEngine(
            session_factory, renderer=renderer, document_store=document_store, rate_limiter=limiter
        )

        await send(engine, organization, "ahoj")
        await send(engine, organization, "ahoj")
        now["value"] = datetime(2025, 1, 15, 10, 1, 5, tzinfo=timezone.utc)
        result = await send(engine, organization, "faktura")

        assert result.replies == [MSG_THROTTLED]

    @pytest.mark.asyncio
    async def test_window_expires(self, session_factory, organization, renderer, document_store):
        now = {"value": datetime(2025, 1, 15, 10, 0, 50, tzinfo=timezone.utc)}
        limiter = RateLimiter(max_per_minute=2, clock=lambda: now["value"])
        engine = ConversationEngine(
            session_factory, renderer=renderer, document_store=document_store, rate_limiter=limiter
        )

        await send(engine, organization, "ahoj")
        await send(engine, organization, "ahoj")
        now["value"] = datetime(2025, 1, 15, 10, 3, 0, tzinfo=timezone.utc)
        result = await send(engine, organization, "faktura")

        assert result.state == ConversationState.AWAITING_CLIENT


class TestCancel:
    """The cancel keyword resets from any state."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("keyword", ["zrušit", "ZRUSIT", "cancel", " Zrušit "])
    async def test_cancel_from_items_clears_draft(
        self, conversation_engine, session_factory, organization, keyword
    ):
        await walk_to_items(conversation_engine, organization)
        await send(conversation_engine, organization, "Konzultace|2|500")

        result = await send(conversation_engine, organization, keyword)

        assert result.replies == [MSG_CANCELLED]
        conversation = await load_conversation(session_factory, organization)
        assert conversation.state == "idle"
        assert conversation.context == {}
        assert conversation.timeout_at is None

    @pytest.mark.asyncio
    async def test_cancel_from_confirm(self, conversation_engine, session_factory, organization):
        await walk_to_confirm(conversation_engine, organization)

        result = await send(conversation_engine, organization, "zrušit")

        assert result.state == ConversationState.IDLE
        assert await count_rows(session_factory, Invoice) == 0


class TestIdle:
    """Idle state behavior."""

    @pytest.mark.asyncio
    async def test_greeting_without_trigger(self, conversation_engine, organization):
        result = await send(conversation_engine, organization, "ahoj")

        assert result.replies == [MSG_GREETING]
        assert result.state == ConversationState.IDLE

    @pytest.mark.asyncio
    async def test_trigger_inside_sentence(self, conversation_engine, organization):
        result = await send(conversation_engine, organization, "Nová FAKTURA prosím")

        assert result.state == ConversationState.AWAITING_CLIENT


class TestAwaitingClient:
    """Client selection."""

    @pytest.mark.asyncio
    async def test_new_client_directive(self, conversation_engine, session_factory, organization):
        await send(conversation_engine, organization, "faktura")

        result = await send(conversation_engine, organization, "nový\nJan Novák\nBrno")

        assert result.state == ConversationState.AWAITING_ITEMS
        async with session_factory() as session:
            client = (await session.execute(select(Client))).scalar_one()
        assert (client.name, client.address_city, client.ico) == ("Jan Novák", "Brno", None)

    @pytest.mark.asyncio
    async def test_incomplete_new_client_directive(self, conversation_engine, session_factory, organization):
        await send(conversation_engine, organization, "faktura")

        result = await send(conversation_engine, organization, "novy\nJan Novák")

        assert result.replies == [MSG_NEW_CLIENT_FORMAT]
        assert result.state == ConversationState.AWAITING_CLIENT
        assert await count_rows(session_factory, Client) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["1234567", "123456789", "abc"])
    async def test_malformed_client_input(self, conversation_engine, organization, text):
        await send(conversation_engine, organization, "faktura")

        result = await send(conversation_engine, organization, text)

        assert result.state == ConversationState.AWAITING_CLIENT

    @pytest.mark.asyncio
    async def test_unexpected_handler_error_keeps_state_and_commits_dedup(
        self, conversation_engine, session_factory, organization, monkeypatch
    ):
        async def failing_lookup(session, organization_id, ico):
            raise RuntimeError("registry unavailable")

        monkeypatch.setattr(
            "src.invoicebot.services.conversation_flow.get_or_create_client_by_ico", failing_lookup
        )
        await send(conversation_engine, organization, "faktura")

        result = await send(conversation_engine, organization, "12345678", message_id="wamid.LOOKUP")

        assert result.replies == [MSG_HANDLER_ERROR]
        assert result.state == ConversationState.AWAITING_CLIENT
        conversation = await load_conversation(session_factory, organization)
        assert conversation.state == "awaiting_client"
        assert conversation.last_message_id == "wamid.LOOKUP"
        async with session_factory() as session:
            assert await session.get(ProcessedMessage, "wamid.LOOKUP") is not None

        again = await send(conversation_engine, organization, "12345678", message_id="wamid.LOOKUP")
        assert again.replies == []


class TestAwaitingItems:
    """Item entry."""

    @pytest.mark.asyncio
    async def test_three_items_then_done_reaches_confirm_with_matching_total(
        self, conversation_engine, session_factory, organization
    ):
        await walk_to_items(conversation_engine, organization)
        await send(conversation_engine, organization, "Konzultace|2|500")
        await send(conversation_engine, organization, "Analýza|1,5|1200,50\nDoprava|1|99.99")
        await send(conversation_engine, organization, "hotovo")

        result = await send(conversation_engine, organization, "2025-03-01|2025-03-31")

        assert result.state == ConversationState.CONFIRM
        conversation = await load_conversation(session_factory, organization)
        assert len(conversation.context["items"]) == 3

        expected = calculate_invoice_totals(
            [
                DraftLineItem(description="Konzultace", quantity=Decimal("2"), unit_price=Decimal("500")),
                DraftLineItem(description="Analýza", quantity=Decimal("1.5"), unit_price=Decimal("1200.50")),
                DraftLineItem(description="Doprava", quantity=Decimal("1"), unit_price=Decimal("99.99")),
            ]
        )
        # 1210.00 + 2178.91 + 120.99
        assert expected.total == Decimal("3509.90")
        assert f"Celkem: 3{NBSP}509,90{NBSP}Kč" in result.replies[0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text,error",
        [
            ("Konzultace|2", MSG_ITEM_FORMAT),
            ("Konzultace|2|500|21", MSG_ITEM_FORMAT),
            ("|2|500", "Popis položky je povinný"),
            ("Konzultace|0|500", MSG_QUANTITY_INVALID),
            ("Konzultace|dva|500", MSG_QUANTITY_INVALID),
            ("Konzultace|2|-5", MSG_PRICE_INVALID),
            ("Konzultace|1000000|1", MSG_QUANTITY_TOO_LARGE),
            ("Konzultace|1|10000000", MSG_PRICE_TOO_LARGE),
        ],
    )
    async def test_bad_line_rejects_batch(
        self, conversation_engine, session_factory, organization, text, error
    ):
        await walk_to_items(conversation_engine, organization)
        await send(conversation_engine, organization, "Konzultace|2|500")

        result = await send(conversation_engine, organization, f"Doprava|1|100\n{text}")

        assert result.replies == [error]
        assert result.state == ConversationState.AWAITING_ITEMS
        conversation = await load_conversation(session_factory, organization)
        assert [i["description"] for i in conversation.context["items"]] == ["Konzultace"]

    @pytest.mark.asyncio
    async def test_oversized_price_rejected_and_flow_continues(
        self, conversation_engine, session_factory, organization
    ):
        await walk_to_items(conversation_engine, organization)

        result = await send(conversation_engine, organization, "X|1|100000000000000000000000000")

        assert result.replies == [MSG_PRICE_TOO_LARGE]
        assert result.state == ConversationState.AWAITING_ITEMS
        conversation = await load_conversation(session_factory, organization)
        assert conversation.state == "awaiting_items"
        assert conversation.context.get("items", []) == []

        await send(conversation_engine, organization, "X|1|100")
        await send(conversation_engine, organization, "hotovo")
        dates = await send(conversation_engine, organization, "2025-01-15")

        assert dates.state == ConversationState.CONFIRM
        invoice = (await send(conversation_engine, organization, "ano")).invoice
        assert invoice.total == Decimal("121.00")

    @pytest.mark.asyncio
    async def test_invoice_total_above_storable_amount_rejected(
        self, conversation_engine, session_factory, organization
    ):
        await walk_to_items(conversation_engine, organization)
        await send(conversation_engine, organization, "Stroj|1000|5000000")

        result = await send(conversation_engine, organization, "Stroj|1000|5000000")

        assert result.replies == [MSG_TOTAL_TOO_LARGE]
        assert result.state == ConversationState.AWAITING_ITEMS
        conversation = await load_conversation(session_factory, organization)
        assert len(conversation.context["items"]) == 1

    @pytest.mark.asyncio
    async def test_done_without_items(self, conversation_engine, organization):
        await walk_to_items(conversation_engine, organization)

        result = await send(conversation_engine, organization, "Hotovo")

        assert result.replies == [MSG_ITEMS_REQUIRED]
        assert result.state == ConversationState.AWAITING_ITEMS

    @pytest.mark.asyncio
    async def test_items_use_organization_vat_rate(self, conversation_engine, session_factory, organization):
        async with session_factory() as session:
            async with session.begin():
                org = await session.get(Organization, organization.id)
                org.default_vat_rate = Decimal("12")

        await walk_to_items(conversation_engine, organization)
        await send(conversation_engine, organization, "Kniha|1|100")

        conversation = await load_conversation(session_factory, organization)
        assert Decimal(conversation.context["items"][0]["vat_rate"]) == Decimal("12")
        assert conversation.context["items"][0]["unit"] == "ks"


class TestAwaitingDates:
    """Date entry."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "text,error",
        [
            ("15.01.2025", MSG_DATE_FORMAT),
            ("2025-02-30", MSG_DATE_INVALID),
            ("2025-01-15|2025-01-10", MSG_DUE_BEFORE_ISSUE),
        ],
    )
    async def test_bad_dates_keep_state(self, conversation_engine, organization, text, error):
        await walk_to_items(conversation_engine, organization)
        await send(conversation_engine, organization, "Konzultace|2|500")
        await send(conversation_engine, organization, "hotovo")

        result = await send(conversation_engine, organization, text)

        assert result.replies == [error]
        assert result.state == ConversationState.AWAITING_DATES

    @pytest.mark.asyncio
    async def test_same_day_due_date_allowed(self, conversation_engine, session_factory, organization):
        await walk_to_items(conversation_engine, organization)
        await send(conversation_engine, organization, "Konzultace|2|500")
        await send(conversation_engine, organization, "hotovo")

        result = await send(conversation_engine, organization, "2025-01-15|2025-01-15")

        assert result.state == ConversationState.CONFIRM
        conversation = await load_conversation(session_factory, organization)
        assert conversation.context["due_date"] == "2025-01-15"


class TestConfirm:
    """Confirmation step."""

    @pytest.mark.asyncio
    async def test_no_returns_to_items_keeping_them(self, conversation_engine, session_factory, organization):
        await walk_to_confirm(conversation_engine, organization)

        result = await send(conversation_engine, organization, "ne")

        assert result.replies == [MSG_BACK_TO_ITEMS]
        assert result.state == ConversationState.AWAITING_ITEMS
        conversation = await load_conversation(session_factory, organization)
        assert len(conversation.context["items"]) == 1

    @pytest.mark.asyncio
    async def test_other_input_reprompts(self, conversation_engine, organization):
        await walk_to_confirm(conversation_engine, organization)

        result = await send(conversation_engine, organization, "možná")

        assert result.replies == [MSG_CONFIRM_REPROMPT]
        assert result.state == ConversationState.CONFIRM

    @pytest.mark.asyncio
    async def test_non_vat_payer_invoice_has_no_vat(self, conversation_engine, session_factory, organization):
        async with session_factory() as session:
            async with session.begin():
                org = await session.get(Organization, organization.id)
                org.is_vat_payer = False
                org.dic = None

        await walk_to_confirm(conversation_engine, organization)
        result = await send(conversation_engine, organization, "ano")

        assert result.invoice.total == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_failed_creation_rolls_back_turn(
        self, session_factory, organization, document_store
    ):
        class BrokenRenderer:
            async def render(self, data):
                raise RuntimeError("renderer crashed")

        engine = ConversationEngine(
            session_factory,
            renderer=BrokenRenderer(),
            document_store=document_store,
            rate_limiter=RateLimiter(max_per_minute=100),
        )
        await walk_to_confirm(engine, organization)

        with pytest.raises(RuntimeError):
            await send(engine, organization, "ano", message_id="wamid.FAIL")

        assert await count_rows(session_factory, Invoice) == 0
        assert await count_rows(session_factory, InvoiceItem) == 0
        assert await count_rows(session_factory, AuditLog) == 0
        conversation = await load_conversation(session_factory, organization)
        assert conversation.state == "confirm"
        async with session_factory() as session:
            assert await session.get(ProcessedMessage, "wamid.FAIL") is None


class TestStoredStateRecovery:
    """Rows with unexpected stored state."""

    @pytest.mark.asyncio
    async def test_unknown_state_replies_with_help(self, conversation_engine, session_factory, organization):
        await send(conversation_engine, organization, "ahoj")
        async with session_factory() as session:
            async with session.begin():
                conversation = (await session.execute(select(Conversation))).scalar_one()
                conversation.state = "sending"

        result = await send(conversation_engine, organization, "faktura")

        assert result.replies == [MSG_UNKNOWN_STATE]
        conversation = await load_conversation(session_factory, organization)
        assert conversation.state == "sending"

    @pytest.mark.asyncio
    async def test_corrupt_context_restarts_from_idle(
        self, conversation_engine, session_factory, organization
    ):
        await walk_to_items(conversation_engine, organization)
        async with session_factory() as session:
            async with session.begin():
                conversation = (await session.execute(select(Conversation))).scalar_one()
                conversation.context = {"client": "not-a-client"}

        result = await send(conversation_engine, organization, "faktura")

        assert result.state == ConversationState.AWAITING_CLIENT

    @pytest.mark.asyncio
    async def test_confirm_context_is_typed(self, conversation_engine, session_factory, organization):
        await walk_to_confirm(conversation_engine, organization)

        conversation = await load_conversation(session_factory, organization)
        context = ConfirmContext.model_validate({**conversation.context, "state": "confirm"})

        assert context.issue_date == date(2025, 1, 15)
        assert context.client.name == "Klient 12345678"
