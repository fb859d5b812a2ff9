import os
import re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

from core.config import settings


def _get_schema_and_clean_url(url: str) -> tuple[str, str]:
    """Extract schema from URL options and return (schema, clean_url).

    asyncpg doesn't support the 'options' URL parameter that sets search_path.
    We need to extract it and use server_settings instead.
    """
    # Match options=-csearch_path%3D{schema} or options=-c+search_path={schema}
    match = re.search(r"[?&]options=-c(?:\+|%20)?search_path(?:%3D|=)(\w+)", url, re.IGNORECASE)
    if match:
        schema = match.group(1)
        clean_url = re.sub(r"[?&]options=-c(?:\+|%20)?search_path(?:%3D|=)\w+", "", url)
        # Fix URL if we removed the first query param (? becomes nothing)
        clean_url = re.sub(r"\?&", "?", clean_url)
        clean_url = re.sub(r"\?$", "", clean_url)
        return schema, clean_url

    # Fall back to ENVIRONMENT variable
    env = os.getenv("ENVIRONMENT", "").lower()
    if env in ("dev", "staging", "prod"):
        return env, url

    return "public", url


def _engine_kwargs(url: str, schema: str) -> dict:
    """Driver-specific engine options.

    PostgreSQL runs behind the Supabase pooler (pgbouncer transaction mode):
    - NullPool: Let the pooler handle connection pooling, not SQLAlchemy
    - statement_cache_size=0: Disable asyncpg's prepared statement cache
    - server_settings: Set search_path for schema isolation
    """
    if not url.startswith("postgresql"):
        return {"echo": settings.DEBUG}
    return {
        "echo": settings.DEBUG,
        "poolclass": NullPool,
        "connect_args": {
            "statement_cache_size": 0,
            "prepared_statement_name_func": lambda: "",
            "server_settings": {"search_path": f"{schema},public"},
        },
    }


_db_schema, _clean_db_url = _get_schema_and_clean_url(settings.DATABASE_URL)

engine = create_async_engine(_clean_db_url, **_engine_kwargs(_clean_db_url, _db_schema))

# Single session factory using modern async_sessionmaker (SQLAlchemy 2.0+)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


def get_session_factory():
    """Dependency that returns the session factory.

    Chat operations open one session per storage attempt so a retried attempt
    never reuses a session left in a failed state. Tests override this.
    """
    return async_session_factory


async def check_db_health(session_factory=None) -> bool:
    """Verify database connectivity."""
    factory = session_factory or async_session_factory
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
