from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from token_tracker.config import settings
from token_tracker.storage.models import Base

engine = create_async_engine(settings.database_url, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
