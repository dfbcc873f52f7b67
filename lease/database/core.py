from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.types import TypeDecorator

from lease.config import config
from lease.errors import ConflictError

engine = create_async_engine(config.DATABASE_URL, echo=False)

AsyncSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@asynccontextmanager
async def transaction(session: AsyncSession):
    """
    Unit of work: commit if the block finishes, roll back and re-raise otherwise.
    Nothing written inside the block is visible if any step fails.
    """
    try:
        yield session
        await session.commit()
    except StaleDataError as e:
        await session.rollback()
        raise ConflictError(
            "Agreement was modified concurrently, retry the operation",
            {"error": str(e)}
        ) from e
    except Exception:
        await session.rollback()
        raise
