"""
Conversational invoice creation over WhatsApp and Messenger.

This module provides the ConversationEngine, the state machine that turns
free-text chat messages into invoices:

    idle → awaiting_client → awaiting_items → awaiting_dates → confirm → idle

Each inbound message is one turn. A turn runs in a single database
transaction that holds the conversation row lock; the dedup marker, the
rate-limit counter, the conversation update and, on confirmation, the
invoice with its items and audit entry all commit together or not at all.
"""

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import settings
from ..exceptions import FlowInputError, OrganizationNotFound
from ..models import AuditLog, Conversation, Invoice, InvoiceItem, Organization
from ..schemas import (
    AwaitingClientContext,
    AwaitingDatesContext,
    AwaitingItemsContext,
    ClientRef,
    ConfirmContext,
    ConversationContext,
    ConversationState,
    CreatedInvoice,
    DraftLineItem,
    IdleContext,
    IncomingMessage,
    TurnResult,
)
from ..utils.invoice_calculations import (
    MAX_DESCRIPTION_LENGTH,
    MAX_INVOICE_TOTAL,
    MAX_QUANTITY,
    MAX_UNIT_PRICE,
    calculate_invoice_totals,
)
from ..utils.logging import get_logger, log_event
from ..utils.text import fold, format_currency, format_quantity
from .clients import create_ad_hoc_client, get_or_create_client_by_ico
from .conversations import lock_conversation, mark_processed, read_context, write_context
from .documents import DocumentStore, InvoiceDocumentData, InvoiceRenderer, get_document_store
from .numbering import format_invoice_number, generate_variable_symbol, next_sequence
from .rate_limit import RateLimiter

logger = get_logger(__name__)

# Keywords are compared after fold(): lower-case, no diacritics
CANCEL_KEYWORDS = frozenset({"zrusit", "cancel"})
TRIGGER_KEYWORD = "faktura"
DONE_KEYWORD = "hotovo"
NEW_CLIENT_PREFIX = "nov"
AFFIRMATIVE = frozenset({"ano", "a", "jo", "ok", "yes", "y"})
NEGATIVE = frozenset({"ne", "n", "no"})

TAX_ID_PATTERN = re.compile(r"^\d{8}$")
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

DEFAULT_UNIT = "ks"

# Replies
MSG_THROTTLED = "⚠️ Příliš mnoho zpráv. Zkus to za chvíli."
MSG_CANCELLED = '❌ Proces zrušen. Napiš "faktura" pro začátek.'
MSG_GREETING = "👋 Vítej! Napiš 'faktura' pro zahájení."
MSG_UNKNOWN_STATE = 'Nerozumím. Napiš "faktura" pro začátek.'
MSG_ASK_CLIENT = (
    "Skvěle! Zadej IČO klienta (8 číslic) nebo napiš 'nový' a na další řádky "
    "jméno a město:\n`nový\nJan Novák\nPraha`"
)
MSG_CLIENT_FORMAT = "Neznámý formát. Zadej IČO (8 číslic) nebo použij formát `nový\\nJméno\\nMěsto`."
MSG_NEW_CLIENT_FORMAT = "Formát: `nový` + jméno + město na nových řádcích. Např. `nový\\nJan Novák\\nPraha`"
MSG_ITEMS_PROMPT = "Pošli položky ve formátu `popis|množství|cena` nebo napiš 'hotovo'."
MSG_ITEMS_REQUIRED = "Přidej alespoň jednu položku před dokončením."
MSG_ITEM_FORMAT = "Formát položek: popis|množství|cena"
MSG_DESCRIPTION_REQUIRED = "Popis položky je povinný"
MSG_DESCRIPTION_TOO_LONG = "Popis položky je příliš dlouhý (max 500 znaků)"
MSG_QUANTITY_INVALID = "Množství musí být kladné číslo"
MSG_PRICE_INVALID = "Cena musí být kladné číslo"
MSG_QUANTITY_TOO_LARGE = "Množství je příliš velké (max 999 999)"
MSG_PRICE_TOO_LARGE = "Cena je příliš vysoká (max 9 999 999)"
MSG_TOTAL_TOO_LARGE = "Celková částka faktury je příliš vysoká. Uprav položky nebo napiš 'zrušit'."
MSG_DATES_PROMPT = (
    "Skvělé! Zadej datum vystavení nebo vystavení a splatnost.\n"
    "Příklad: `2025-01-15` nebo `2025-01-15|2025-01-30`."
)
MSG_DATE_FORMAT = "Datum musí být ve formátu YYYY-MM-DD"
MSG_DATE_INVALID = "Datum je neplatné"
MSG_DUE_BEFORE_ISSUE = "Datum splatnosti musí být po datu vystavení"
MSG_DATE_USAGE = 'Zadej datum nebo "datum|splatnost" ve formátu YYYY-MM-DD'
MSG_CONFIRM_REPROMPT = "Odpověz 'ano' pro odeslání faktury nebo 'ne' pro úpravu položek."
MSG_BACK_TO_ITEMS = 'OK, můžeš upravit položky. Přidej další nebo napiš znovu "hotovo".'
MSG_STORAGE_ERROR = "⚠️ Nepodařilo se uložit data. Zkus to prosím znovu."
MSG_HANDLER_ERROR = "❌ Došlo k chybě. Zkus to prosím znovu nebo napiš 'zrušit'."


@dataclass
class _Step:
    """What a state handler decided: the next context and the replies."""

    context: ConversationContext
    replies: List[str] = field(default_factory=list)
    invoice: Optional[CreatedInvoice] = None


Handler = Callable[
    [AsyncSession, Organization, ConversationContext, str, IncomingMessage],
    Awaitable[_Step],
]


def parse_items(text: str, vat_rate: Decimal, unit: str = DEFAULT_UNIT) -> List[DraftLineItem]:
    """
    Parse ``description|quantity|price`` lines.

    Blank lines are skipped; a comma is accepted as the decimal separator.
    Any bad line rejects the whole batch.

    Raises:
        FlowInputError: Naming the first constraint that failed.
    """
    lines = [line.strip() for line in text.split("\n")]
    items: List[DraftLineItem] = []

    for line in lines:
        if not line:
            continue

        parts = [part.strip() for part in line.split("|")]
        if len(parts) != 3:
            raise FlowInputError(MSG_ITEM_FORMAT)

        description, quantity_str, price_str = parts
        if not description:
            raise FlowInputError(MSG_DESCRIPTION_REQUIRED)
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise FlowInputError(MSG_DESCRIPTION_TOO_LONG)

        quantity = _parse_positive_decimal(quantity_str)
        if quantity is None:
            raise FlowInputError(MSG_QUANTITY_INVALID)
        if quantity > MAX_QUANTITY:
            raise FlowInputError(MSG_QUANTITY_TOO_LARGE)
        unit_price = _parse_positive_decimal(price_str)
        if unit_price is None:
            raise FlowInputError(MSG_PRICE_INVALID)
        if unit_price > MAX_UNIT_PRICE:
            raise FlowInputError(MSG_PRICE_TOO_LARGE)

        items.append(
            DraftLineItem(
                description=description,
                quantity=quantity,
                unit_price=unit_price,
                vat_rate=vat_rate,
                unit=unit,
            )
        )

    if not items:
        raise FlowInputError(MSG_ITEM_FORMAT)
    return items


def _parse_positive_decimal(value: str) -> Optional[Decimal]:
    try:
        number = Decimal(value.replace(",", "."))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return number


def parse_dates(text: str, due_days: int = 14) -> Tuple[date, date]:
    """
    Parse ``YYYY-MM-DD`` or ``YYYY-MM-DD|YYYY-MM-DD`` (issue|due).

    With a single date the due date is ``due_days`` after the issue date.

    Raises:
        FlowInputError: On a bad format, an impossible date, or a due date
            before the issue date.
    """
    parts = [part.strip() for part in text.split("|") if part.strip()]

    if len(parts) not in (1, 2):
        raise FlowInputError(MSG_DATE_USAGE)
    if not all(ISO_DATE_PATTERN.match(part) for part in parts):
        raise FlowInputError(MSG_DATE_FORMAT)

    try:
        dates = [date.fromisoformat(part) for part in parts]
    except ValueError:
        raise FlowInputError(MSG_DATE_INVALID)

    issue_date = dates[0]
    if len(dates) == 1:
        return issue_date, issue_date + timedelta(days=due_days)

    due_date = dates[1]
    if due_date < issue_date:
        raise FlowInputError(MSG_DUE_BEFORE_ISSUE)
    return issue_date, due_date


def format_items_summary(items: List[DraftLineItem], currency: str) -> str:
    """One numbered line per item: ``1. Konzultace — 2 × 500,00 Kč``."""
    return "\n".join(
        f"{index}. {item.description} — {format_quantity(item.quantity)} × "
        f"{format_currency(item.unit_price, currency)}"
        for index, item in enumerate(items, start=1)
    )


class ConversationEngine:
    """
    Runs conversation turns for inbound chat messages.

    Args:
        session_factory: Async session factory; each turn opens its own
            session and transaction.
        renderer: Invoice PDF renderer.
        document_store: Where rendered invoices are persisted.
        rate_limiter: Per-sender limiter; defaults to the configured ceiling.
        due_days: Due date offset used when only the issue date is given.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        renderer: Optional[InvoiceRenderer] = None,
        document_store: Optional[DocumentStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        due_days: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.renderer = renderer or InvoiceRenderer()
        self.document_store = document_store or get_document_store()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.due_days = due_days if due_days is not None else settings.default_due_days

        self._handlers: Dict[str, Handler] = {
            ConversationState.IDLE.value: self._handle_idle,
            ConversationState.AWAITING_CLIENT.value: self._handle_awaiting_client,
            ConversationState.AWAITING_ITEMS.value: self._handle_awaiting_items,
            ConversationState.AWAITING_DATES.value: self._handle_awaiting_dates,
        }

    async def handle_message(self, message: IncomingMessage) -> TurnResult:
        """
        Process one inbound message and return the replies to send.

        Duplicate deliveries return no replies. Exceptions raised while
        creating the invoice roll back the whole turn and propagate to the
        caller.
        """
        text = (message.text or "").strip()
        if not text:
            return TurnResult()

        async with self.session_factory() as session:
            async with session.begin():
                result = await self._run_turn(session, message, text)

        if result.invoice is not None:
            log_event(
                "Invoice created from conversation",
                organization_id=message.organization_id,
                invoice_id=result.invoice.id,
                invoice_number=result.invoice.invoice_number,
                channel=message.messaging_product.value,
            )
        return result

    async def _run_turn(
        self, session: AsyncSession, message: IncomingMessage, text: str
    ) -> TurnResult:
        if not await mark_processed(session, message.message_id):
            return TurnResult()

        if not await self.rate_limiter.admit(session, message.sender):
            return TurnResult(replies=[MSG_THROTTLED])

        organization = await session.get(Organization, message.organization_id)
        if organization is None:
            raise OrganizationNotFound(message.phone_number_id, None)

        conversation = await lock_conversation(session, organization.id, message.sender)
        folded = fold(text)

        if folded in CANCEL_KEYWORDS:
            write_context(conversation, IdleContext(), message.message_id, trigger="cancel")
            return TurnResult(replies=[MSG_CANCELLED], state=ConversationState.IDLE)

        known_states = {state.value for state in ConversationState}
        if conversation.state not in known_states:
            logger.warning(
                "Conversation in unknown state",
                extra={"conversation_id": conversation.id, "state": conversation.state},
            )
            conversation.last_message_id = message.message_id
            return TurnResult(replies=[MSG_UNKNOWN_STATE])

        context = read_context(conversation)
        if isinstance(context, ConfirmContext):
            step = await self._handle_confirm(session, organization, context, text, message)
        else:
            handler = self._handlers[context.state]
            step = await self._run_handler(session, handler, organization, context, text, message)
        return self._finish(conversation, step, message)

    async def _run_handler(
        self,
        session: AsyncSession,
        handler: Handler,
        organization: Organization,
        context: ConversationContext,
        text: str,
        message: IncomingMessage,
    ) -> _Step:
        """
        Run a state handler inside a SAVEPOINT.

        A failing handler rolls back only its own writes; the conversation
        keeps its context and the user gets the error as a reply. The dedup
        marker and rate-limit counter written before the SAVEPOINT still
        commit with the turn.
        """
        try:
            async with session.begin_nested():
                return await handler(session, organization, context, text, message)
        except FlowInputError as e:
            return _Step(context, [e.message])
        except SQLAlchemyError as e:
            logger.error(
                "State handler failed",
                extra={
                    "state": context.state,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
                exc_info=True,
            )
            return _Step(context, [MSG_STORAGE_ERROR])
        except Exception as e:
            logger.error(
                "State handler raised unexpectedly",
                extra={
                    "state": context.state,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
                exc_info=True,
            )
            return _Step(context, [MSG_HANDLER_ERROR])

    def _finish(self, conversation: Conversation, step: _Step, message: IncomingMessage) -> TurnResult:
        write_context(conversation, step.context, message.message_id)
        return TurnResult(
            replies=step.replies,
            invoice=step.invoice,
            state=ConversationState(step.context.state),
        )

    # State handlers

    async def _handle_idle(
        self,
        session: AsyncSession,
        organization: Organization,
        context: ConversationContext,
        text: str,
        message: IncomingMessage,
    ) -> _Step:
        if TRIGGER_KEYWORD in fold(text):
            return _Step(AwaitingClientContext(), [MSG_ASK_CLIENT])
        return _Step(IdleContext(), [MSG_GREETING])

    async def _handle_awaiting_client(
        self,
        session: AsyncSession,
        organization: Organization,
        context: ConversationContext,
        text: str,
        message: IncomingMessage,
    ) -> _Step:
        if TAX_ID_PATTERN.match(text):
            client = await get_or_create_client_by_ico(session, organization.id, text)
            ref = ClientRef(id=client.id, name=client.name, city=client.address_city or None)
            return _Step(
                AwaitingItemsContext(client=ref),
                [f"✅ Klient: {client.name}\n{MSG_ITEMS_PROMPT}"],
            )

        if fold(text).startswith(NEW_CLIENT_PREFIX):
            lines = [line.strip() for line in text.split("\n") if line.strip()]
            if len(lines) < 3:
                raise FlowInputError(MSG_NEW_CLIENT_FORMAT)
            name, city = lines[1], lines[2]
            client = await create_ad_hoc_client(session, organization.id, name, city)
            ref = ClientRef(id=client.id, name=client.name, city=city)
            return _Step(
                AwaitingItemsContext(client=ref),
                [f"✅ Nový klient: {client.name}\n{MSG_ITEMS_PROMPT}"],
            )

        raise FlowInputError(MSG_CLIENT_FORMAT)

    async def _handle_awaiting_items(
        self,
        session: AsyncSession,
        organization: Organization,
        context: AwaitingItemsContext,
        text: str,
        message: IncomingMessage,
    ) -> _Step:
        if fold(text) == DONE_KEYWORD:
            if not context.items:
                return _Step(context, [MSG_ITEMS_REQUIRED])
            return _Step(
                AwaitingDatesContext(client=context.client, items=context.items),
                [MSG_DATES_PROMPT],
            )

        new_items = parse_items(text, organization.effective_vat_rate)
        updated = AwaitingItemsContext(client=context.client, items=[*context.items, *new_items])
        if calculate_invoice_totals(updated.items, organization.vat_payer).total > MAX_INVOICE_TOTAL:
            raise FlowInputError(MSG_TOTAL_TOO_LARGE)
        summary = format_items_summary(updated.items, organization.default_currency)
        return _Step(
            updated,
            [f"Položky přidány:\n{summary}\n\nPokračuj v přidávání nebo napiš 'hotovo'."],
        )

    async def _handle_awaiting_dates(
        self,
        session: AsyncSession,
        organization: Organization,
        context: AwaitingDatesContext,
        text: str,
        message: IncomingMessage,
    ) -> _Step:
        issue_date, due_date = parse_dates(text, self.due_days)
        confirm = ConfirmContext(
            client=context.client,
            items=context.items,
            issue_date=issue_date,
            due_date=due_date,
        )
        totals = calculate_invoice_totals(confirm.items, organization.vat_payer)
        currency = organization.default_currency
        summary = (
            f"Shrnutí:\nKlient: {confirm.client.name}\n"
            f"Položky:\n{format_items_summary(confirm.items, currency)}\n\n"
            f"Datum vystavení: {issue_date.isoformat()}\n"
            f"Splatnost: {due_date.isoformat()}\n"
            f"Celkem: {format_currency(totals.total, currency)}\n\n"
            "Odeslat fakturu? Odpověz 'ano' nebo 'ne'."
        )
        return _Step(confirm, [summary])

    async def _handle_confirm(
        self,
        session: AsyncSession,
        organization: Organization,
        context: ConfirmContext,
        text: str,
        message: IncomingMessage,
    ) -> _Step:
        """
        Confirm step. Runs outside a SAVEPOINT: a failure while creating the
        invoice must abort the whole turn.
        """
        answer = fold(text)
        if answer in AFFIRMATIVE:
            invoice = await self.create_invoice(session, organization, context, message)
            return _Step(IdleContext(), [], invoice)
        if answer in NEGATIVE:
            return _Step(
                AwaitingItemsContext(client=context.client, items=context.items),
                [MSG_BACK_TO_ITEMS],
            )
        return _Step(context, [MSG_CONFIRM_REPROMPT])

    async def create_invoice(
        self,
        session: AsyncSession,
        organization: Organization,
        context: ConfirmContext,
        message: IncomingMessage,
    ) -> CreatedInvoice:
        """
        Create the invoice, its items, the PDF and the audit entry.

        The invoice starts as a draft; the dispatcher marks it sent once the
        document has been delivered.
        """
        is_vat_payer = organization.vat_payer
        totals = calculate_invoice_totals(context.items, is_vat_payer)

        year = context.issue_date.year
        sequence = await next_sequence(session, organization.id, year)
        invoice_number = format_invoice_number(organization.invoice_prefix, year, sequence)
        variable_symbol = generate_variable_symbol(invoice_number)

        invoice = Invoice(
            organization_id=organization.id,
            client_id=context.client.id,
            invoice_number=invoice_number,
            variable_symbol=variable_symbol,
            status="draft",
            issue_date=context.issue_date,
            due_date=context.due_date,
            currency=organization.default_currency,
            subtotal=totals.subtotal,
            vat_amount=totals.vat_amount,
            total=totals.total,
            created_via=message.messaging_product.value,
            items=[
                InvoiceItem(
                    position=position,
                    description=item.description,
                    quantity=item.quantity,
                    unit=item.unit or DEFAULT_UNIT,
                    unit_price=item.unit_price,
                    vat_rate=item.vat_rate,
                    subtotal=item.subtotal,
                    vat_amount=item.vat_amount,
                    total=item.total,
                )
                for position, item in enumerate(totals.items, start=1)
            ],
        )
        session.add(invoice)
        await session.flush()

        document = await self.renderer.render(
            InvoiceDocumentData(
                invoice_number=invoice_number,
                variable_symbol=variable_symbol,
                issue_date=context.issue_date,
                due_date=context.due_date,
                currency=organization.default_currency,
                totals=totals,
                supplier_name=organization.name,
                supplier_ico=organization.ico,
                supplier_dic=organization.dic,
                supplier_is_vat_payer=is_vat_payer,
                supplier_street=organization.address_street,
                supplier_city=organization.address_city,
                supplier_zip=organization.address_zip,
                client_name=context.client.name,
                client_city=context.client.city,
            )
        )
        document_path = await self.document_store.save(document, organization.id, year, invoice_number)
        invoice.pdf_path = document_path

        session.add(
            AuditLog(
                organization_id=organization.id,
                user_id=None,
                entity_type="invoice",
                entity_id=invoice.id,
                action="created",
                changes={
                    "invoiceNumber": invoice_number,
                    "total": str(totals.total),
                    "createdVia": message.messaging_product.value,
                    "whatsappPhone": message.sender,
                },
            )
        )
        await session.flush()

        logger.info(
            "Invoice created",
            extra={
                "organization_id": organization.id,
                "invoice_id": invoice.id,
                "invoice_number": invoice_number,
                "item_count": len(totals.items),
            },
        )

        return CreatedInvoice(
            id=invoice.id,
            invoice_number=invoice_number,
            variable_symbol=variable_symbol,
            document_path=document_path,
            client_name=context.client.name,
            total=totals.total,
            currency=organization.default_currency,
        )
