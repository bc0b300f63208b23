"""
Database initialization script.
Creates the schema and the current month's usage row.
"""
import asyncio

from app.database import AsyncSessionLocal, close_db, init_db
from app.repositories.api_usage_repository import ApiUsageRepository
from app.utils.time_utils import month_key


async def main():
    await init_db()
    
    async with AsyncSessionLocal() as session:
        usage = await ApiUsageRepository(session).get_or_create(month_key())
        print(f"✓ Database ready (usage {usage.month}: {usage.request_count} requests)")
    
    await close_db()


if __name__ == "__main__":
    asyncio.run(main())
