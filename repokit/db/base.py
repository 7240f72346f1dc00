"""
Table metadata helpers.

SQLModel only learns about a table class once its module is imported, so
callers import their models before calling :func:`create_tables`.
"""

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import SQLModel

metadata = SQLModel.metadata


async def create_tables(bind: AsyncEngine) -> None:
    """Create every table registered on the SQLModel metadata."""
    async with bind.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_tables(bind: AsyncEngine) -> None:
    """Drop every table registered on the SQLModel metadata."""
    async with bind.begin() as conn:
        await conn.run_sync(metadata.drop_all)
