import logging
import ssl

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from medtrack.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def normalize_database_url(url: str) -> str:
    # Hosted Postgres hands out postgres:// URLs
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    url = normalize_database_url(url)
    if url.startswith("postgresql+asyncpg://"):
        ssl_context = ssl.create_default_context(cafile=None)
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        return create_async_engine(
            url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            connect_args={"ssl": ssl_context},
        )
    return create_async_engine(url, echo=echo)


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.database_echo)

AsyncSessionLocal = build_sessionmaker(engine)


async def init_models(bind: AsyncEngine = None) -> None:
    from medtrack.db import models  # noqa: F401  (registers tables on Base)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
