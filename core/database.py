import os
import re

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from core.config import settings

_OPTIONS_PATTERN = r"([?&])options=-c(?:\+|%20)?search_path(?:%3D|=)(\w+)"


def _get_schema_and_clean_url(url: str) -> tuple[str, str]:
    """Split an `options=-csearch_path=<schema>` parameter out of the URL.

    asyncpg rejects the libpq `options` parameter, so the schema is passed
    through server_settings instead.
    """
    match = re.search(_OPTIONS_PATTERN, url, re.IGNORECASE)
    if match:
        schema = match.group(2)
        # Keep the separator so a following parameter stays attached
        clean_url = re.sub(_OPTIONS_PATTERN + "&?", r"\1", url, flags=re.IGNORECASE)
        clean_url = re.sub(r"[?&]$", "", clean_url)
        return schema, clean_url

    env = os.getenv("ENVIRONMENT", "").lower()
    if env in ("dev", "staging", "prod"):
        return env, url

    return "public", url


_db_schema, _clean_db_url = _get_schema_and_clean_url(settings.DATABASE_URL)

# Pooling is left to pgbouncer; unnamed statements keep asyncpg compatible with it
engine = create_async_engine(
    _clean_db_url,
    echo=settings.DEBUG,
    poolclass=NullPool,
    connect_args={
        "statement_cache_size": 0,
        "prepared_statement_name_func": lambda: "",
        "server_settings": {"search_path": _db_schema},
    },
)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_models() -> None:
    """Create the gateway tables if they do not exist."""
    from models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

