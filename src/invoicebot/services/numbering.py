"""
Invoice numbering service.

Allocates per-(organization, year) sequence numbers with a single atomic
upsert, formats invoice numbers as ``{prefix}{year}-{seq:05d}`` and derives
the 10-digit payment variable symbol from them.
"""

import re
from typing import Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..db import dialect_insert
from ..exceptions import InvalidInvoiceNumber
from ..models import InvoiceCounter, utcnow
from ..utils.logging import get_logger

logger = get_logger(__name__)

_NUMBER_PATTERN = re.compile(r"(\d{4})-(\d{5})")


async def next_sequence(session: AsyncSession, organization_id: int, year: int) -> int:
    """
    Atomically increment and return the counter for (organization, year).

    The first call for a year initializes the counter to 1. The increment is
    one INSERT ... ON CONFLICT DO UPDATE ... RETURNING statement, so
    concurrent invoice creation for the same organization cannot allocate
    the same number.
    """
    stmt = dialect_insert(session, InvoiceCounter).values(
        organization_id=organization_id,
        year=year,
        last_seq=1,
        updated_at=utcnow(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[InvoiceCounter.organization_id, InvoiceCounter.year],
        set_={
            "last_seq": InvoiceCounter.last_seq + 1,
            "updated_at": utcnow(),
        },
    ).returning(InvoiceCounter.last_seq)

    result = await session.execute(stmt)
    sequence = result.scalar_one()

    logger.info(
        "Invoice sequence allocated",
        extra={"organization_id": organization_id, "year": year, "sequence": sequence},
    )
    return sequence


def format_invoice_number(prefix: str, year: int, seq: int) -> str:
    """
    Format an invoice number.

    Examples:
        >>> format_invoice_number("", 2025, 1)
        '2025-00001'
        >>> format_invoice_number("FV-", 2025, 123)
        'FV-2025-00123'
    """
    return f"{prefix or ''}{year}-{seq:05d}"


def parse_invoice_number(invoice_number: str) -> Tuple[int, int]:
    """
    Extract ``(year, seq)`` from an invoice number, ignoring any prefix.

    Raises:
        InvalidInvoiceNumber: If no ``YYYY-NNNNN`` group is present.
    """
    match = _NUMBER_PATTERN.search(invoice_number or "")
    if not match:
        raise InvalidInvoiceNumber(invoice_number)
    return int(match.group(1)), int(match.group(2))


def generate_variable_symbol(invoice_number: str) -> str:
    """
    Derive the payment variable symbol: year + sequence, left-padded to 10.

    Examples:
        >>> generate_variable_symbol("2025-00001")
        '0202500001'
        >>> generate_variable_symbol("FV-2025-00123")
        '0202500123'

    Raises:
        InvalidInvoiceNumber: If no ``YYYY-NNNNN`` group is present.
    """
    match = _NUMBER_PATTERN.search(invoice_number or "")
    if not match:
        raise InvalidInvoiceNumber(invoice_number)
    return f"{match.group(1)}{match.group(2)}".rjust(10, "0")
