import os
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./local.db").strip()

_engine_kwargs = {"echo": False, "future": True}
# Hosted Postgres drops idle connections; pre-ping and recycle keep the pool usable.
if not (DATABASE_URL or "").lower().startswith("sqlite"):
    _engine_kwargs.update({
        "pool_pre_ping": True,
        "pool_recycle": int(os.environ.get("DB_POOL_RECYCLE_SECONDS", "300").strip() or 300),
    })

engine = create_async_engine(DATABASE_URL, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()


async def get_session() -> AsyncSession:
    """FastAPI dependency that yields an async session."""
    async with SessionLocal() as session:
        yield session


async def init_db():
    """Create tables at startup (safe to run repeatedly)."""
    from . import models  # register tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
