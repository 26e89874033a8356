"""
Invoice totals and line item validation.

Amounts are computed with Decimal and rounded half-up to 2 places at the
item level. Invoice-level totals are sums of the already-rounded item
amounts, so they always match the persisted item rows.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, Optional

from ..schemas import CalculatedItem, DraftLineItem, InvoiceTotals

CENT = Decimal("0.01")
MAX_QUANTITY = Decimal("999999")
MAX_UNIT_PRICE = Decimal("9999999")
# Largest amount the Numeric(12, 2) invoice columns hold
MAX_INVOICE_TOTAL = Decimal("9999999999.99")
MAX_DESCRIPTION_LENGTH = 500


def round_currency(value: Decimal | int | float | str) -> Decimal:
    """
    Round to 2 decimal places, half-up.

    Examples:
        >>> round_currency(Decimal("1.005"))
        Decimal('1.01')
        >>> round_currency(2)
        Decimal('2.00')
    """
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_item_totals(item: DraftLineItem) -> CalculatedItem:
    """
    Calculate subtotal, VAT and total for a single line item.

    subtotal = round(quantity × unit_price)
    vat_amount = round(subtotal × vat_rate / 100)
    total = round(subtotal + vat_amount)
    """
    subtotal = round_currency(item.quantity * item.unit_price)
    vat_amount = round_currency(subtotal * item.vat_rate / Decimal(100))
    total = round_currency(subtotal + vat_amount)

    return CalculatedItem(
        description=item.description,
        quantity=item.quantity,
        unit_price=item.unit_price,
        vat_rate=item.vat_rate,
        unit=item.unit,
        subtotal=subtotal,
        vat_amount=vat_amount,
        total=total,
    )


def calculate_invoice_totals(
    items: Iterable[DraftLineItem], is_vat_payer: bool = True
) -> InvoiceTotals:
    """
    Calculate invoice totals from line items.

    When the organization is not a VAT payer every item's VAT rate is forced
    to 0 regardless of what was supplied. An empty list yields zero totals.

    Examples:
        >>> items = [DraftLineItem(description="Konzultace", quantity=2, unit_price=500)]
        >>> calculate_invoice_totals(items).total
        Decimal('1210.00')
        >>> calculate_invoice_totals(items, is_vat_payer=False).vat_amount
        Decimal('0.00')
    """
    calculated: List[CalculatedItem] = []
    for item in items:
        effective = item if is_vat_payer else item.model_copy(update={"vat_rate": Decimal(0)})
        calculated.append(calculate_item_totals(effective))

    subtotal = sum((i.subtotal for i in calculated), Decimal("0.00"))
    vat_amount = sum((i.vat_amount for i in calculated), Decimal("0.00"))
    total = sum((i.total for i in calculated), Decimal("0.00"))

    return InvoiceTotals(
        subtotal=round_currency(subtotal),
        vat_amount=round_currency(vat_amount),
        total=round_currency(total),
        items=calculated,
    )


def validate_invoice_item(data: Mapping[str, Any]) -> List[str]:
    """
    Validate raw line item values as a pre-check.

    Accepts unvalidated input (form fields, API bodies) with the keys
    ``description``, ``quantity``, ``unit_price`` and ``vat_rate``.

    Returns:
        Human-readable error messages; empty when the item is valid.

    Example:
        >>> validate_invoice_item({"description": "", "quantity": 0, "unit_price": 10, "vat_rate": 21})
        ['Množství musí být kladné číslo', 'Popis položky je povinný']
    """
    errors: List[str] = []

    quantity = _to_decimal(data.get("quantity"))
    unit_price = _to_decimal(data.get("unit_price"))
    vat_rate = _to_decimal(data.get("vat_rate", 0))
    description = str(data.get("description") or "")

    if quantity is None or quantity <= 0:
        errors.append("Množství musí být kladné číslo")
    elif quantity > MAX_QUANTITY:
        errors.append("Množství je příliš velké")
    if unit_price is None or unit_price <= 0:
        errors.append("Jednotková cena musí být kladné číslo")
    elif unit_price > MAX_UNIT_PRICE:
        errors.append("Jednotková cena je příliš velká")
    if vat_rate is None or vat_rate < 0 or vat_rate > 100:
        errors.append("Sazba DPH musí být mezi 0 a 100%")
    if not description.strip():
        errors.append("Popis položky je povinný")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append("Popis položky je příliš dlouhý (max 500 znaků)")

    return errors


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Finite Decimal from user input, or None."""
    try:
        number = Decimal(str(value).strip().replace(",", "."))
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None
