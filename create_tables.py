"""
Script to create the webhook queue table.

Useful for local development; deployed databases are migrated with alembic.
"""
import asyncio
import sys

from app.database import engine
from app.models.base import Base
# Import all models to register them with Base
from app.models.webhook import WebhookJob  # noqa: F401


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("All tables created successfully!")


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    print("All tables dropped!")


async def main(argv: list[str]):
    """Main entry point. Pass --drop to recreate from scratch."""
    if "--drop" in argv:
        await drop_all_tables()
    print("Creating database tables...")
    await create_all_tables()
    await engine.dispose()
    print("Done!")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
