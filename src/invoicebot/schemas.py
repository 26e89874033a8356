"""
Pydantic schemas for the conversation flow and the Meta webhook.

Defines Pydantic v2 models for draft line items, the per-state conversation
context, inbound chat messages and the result of one conversation turn. The
conversation context is a discriminated union on ``state`` so a persisted
JSON blob is validated into exactly the fields its state expects.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class ConversationState(str, Enum):
    """States of the invoice wizard."""

    IDLE = "idle"
    AWAITING_CLIENT = "awaiting_client"
    AWAITING_ITEMS = "awaiting_items"
    AWAITING_DATES = "awaiting_dates"
    CONFIRM = "confirm"


class MessagingProduct(str, Enum):
    """Messaging channel an inbound message arrived on."""

    WHATSAPP = "whatsapp"
    MESSENGER = "messenger"


class DraftLineItem(BaseModel):
    """
    Line item collected during the chat, before the invoice exists.

    Quantity and unit price must be finite and positive; the VAT rate is
    filled from the organization's default rate.
    """

    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., gt=0, allow_inf_nan=False)
    unit_price: Decimal = Field(..., gt=0, allow_inf_nan=False)
    vat_rate: Decimal = Field(Decimal("21"), ge=0, le=100)
    unit: str = "ks"

    @field_validator("description")
    @classmethod
    def strip_description(cls, v: str) -> str:
        """Descriptions are stored trimmed and may not be blank."""
        v = v.strip()
        if not v:
            raise ValueError("Description must not be blank")
        return v


class CalculatedItem(BaseModel):
    """Line item with its rounded subtotal, VAT and total."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: Decimal
    unit: str = "ks"
    subtotal: Decimal
    vat_amount: Decimal
    total: Decimal


class InvoiceTotals(BaseModel):
    """Invoice-level amounts: sums of already-rounded item amounts."""

    subtotal: Decimal = Decimal("0.00")
    vat_amount: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")
    items: List[CalculatedItem] = Field(default_factory=list)


class ClientRef(BaseModel):
    """Client selected in the awaiting_client step."""

    id: int
    name: str
    city: Optional[str] = None


# Conversation context variants, one per state


class IdleContext(BaseModel):
    state: Literal["idle"] = "idle"


class AwaitingClientContext(BaseModel):
    state: Literal["awaiting_client"] = "awaiting_client"


class AwaitingItemsContext(BaseModel):
    state: Literal["awaiting_items"] = "awaiting_items"
    client: ClientRef
    items: List[DraftLineItem] = Field(default_factory=list)


class AwaitingDatesContext(BaseModel):
    state: Literal["awaiting_dates"] = "awaiting_dates"
    client: ClientRef
    items: List[DraftLineItem] = Field(..., min_length=1)


class ConfirmContext(BaseModel):
    state: Literal["confirm"] = "confirm"
    client: ClientRef
    items: List[DraftLineItem] = Field(..., min_length=1)
    issue_date: date
    due_date: date


ConversationContext = Annotated[
    Union[
        IdleContext,
        AwaitingClientContext,
        AwaitingItemsContext,
        AwaitingDatesContext,
        ConfirmContext,
    ],
    Field(discriminator="state"),
]

_context_adapter: TypeAdapter[ConversationContext] = TypeAdapter(ConversationContext)


def load_context(state: str, raw: Optional[dict[str, Any]]) -> ConversationContext:
    """
    Validate a persisted context blob into the variant for ``state``.

    The stored ``state`` column wins over any ``state`` key in the blob.

    Raises:
        ValueError: If ``state`` is unknown.
        pydantic.ValidationError: If the blob does not fit the state.
    """
    data = dict(raw or {})
    data["state"] = ConversationState(state).value
    return _context_adapter.validate_python(data)


def dump_context(context: ConversationContext) -> dict[str, Any]:
    """Serialize a context variant to a JSON-compatible dict."""
    return context.model_dump(mode="json")


class IncomingMessage(BaseModel):
    """One inbound chat message extracted from a webhook payload."""

    model_config = ConfigDict(frozen=True)

    organization_id: int
    message_id: str
    sender: str
    text: str
    timestamp: Optional[str] = None
    messaging_product: MessagingProduct = MessagingProduct.WHATSAPP
    phone_number_id: Optional[str] = None


class CreatedInvoice(BaseModel):
    """Invoice produced by a confirmed conversation, ready for delivery."""

    id: int
    invoice_number: str
    variable_symbol: str
    document_path: str
    client_name: str
    total: Decimal
    currency: str


class TurnResult(BaseModel):
    """Replies to send back, plus the invoice when one was created."""

    replies: List[str] = Field(default_factory=list)
    invoice: Optional[CreatedInvoice] = None
    state: Optional[ConversationState] = None


class WebhookPayload(BaseModel):
    """
    Schema for the Meta webhook POST body.

    Accepts any extra structure; only ``entry`` is navigated.
    """

    model_config = ConfigDict(extra="allow")

    object: Optional[str] = None
    entry: Optional[list[dict[str, Any]]] = None
