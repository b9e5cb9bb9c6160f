"""Initialize database - Run this once to create all tables"""
import asyncio
import sys
from app.db.base import Base
from app.db.session import engine
from app import models  # noqa: F401

async def init_db(reset: bool = False):
    print("Creating database tables...")

    async with engine.begin() as conn:
        if reset:
            # Drop all tables
            await conn.run_sync(Base.metadata.drop_all)
        # Create all tables
        await conn.run_sync(Base.metadata.create_all)

    await engine.dispose()
    print("Database initialized successfully!")

if __name__ == "__main__":
    asyncio.run(init_db(reset="--reset" in sys.argv))
