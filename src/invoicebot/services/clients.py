"""
Client lookup and creation used by the chat flow.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Client
from ..utils.logging import get_logger

logger = get_logger(__name__)


async def get_or_create_client_by_ico(
    session: AsyncSession, organization_id: int, ico: str
) -> Client:
    """
    Find the organization's client with this IČO, or create a placeholder.

    The placeholder is named ``Klient <IČO>`` with an empty city; the user
    can complete it later in the web app.
    """
    result = await session.execute(
        select(Client)
        .where(Client.organization_id == organization_id, Client.ico == ico)
        .order_by(Client.id)
        .limit(1)
    )
    client = result.scalar_one_or_none()
    if client is not None:
        return client

    client = Client(
        organization_id=organization_id,
        name=f"Klient {ico}",
        ico=ico,
        address_city="",
    )
    session.add(client)
    await session.flush()

    logger.info(
        "Placeholder client created",
        extra={"organization_id": organization_id, "client_id": client.id},
    )
    return client


async def create_ad_hoc_client(
    session: AsyncSession, organization_id: int, name: str, city: str
) -> Client:
    """Create a client without IČO from a name and a city."""
    client = Client(organization_id=organization_id, name=name, address_city=city)
    session.add(client)
    await session.flush()

    logger.info(
        "Ad-hoc client created",
        extra={"organization_id": organization_id, "client_id": client.id},
    )
    return client
