from __future__ import annotations

from collections.abc import AsyncGenerator, Generator

from sqlalchemy.orm import Session

from applyflow.clients.core import CoreClient
from applyflow.db.session import get_db_session


def get_db() -> Generator[Session, None, None]:
    yield from get_db_session()


async def get_core_client() -> AsyncGenerator[CoreClient, None]:
    client = CoreClient()
    try:
        yield client
    finally:
        await client.aclose()
