"""Script to initialize the database without Alembic."""

import asyncio

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from app.database import engine
from app.models import metadata
from app.models.appointments import APPOINTMENTS_NO_OVERLAP_DDL


async def create_schema(target: AsyncEngine) -> None:
    """Create all tables plus the no-overlap exclusion constraint."""
    async with target.begin() as conn:
        await conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
        await conn.run_sync(metadata.create_all)

        exists = await conn.scalar(
            text("SELECT 1 FROM pg_constraint WHERE conname = 'appointments_no_overlap'")
        )
        if not exists:
            await conn.execute(text(APPOINTMENTS_NO_OVERLAP_DDL))


async def init_db() -> None:
    await create_schema(engine)
    await engine.dispose()
    print("✓ Database initialized successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
