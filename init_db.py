import asyncio
import os
import re
import sys

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from core.database import engine
from models import Base


def get_schema_from_env() -> str:
    """
    Get the schema name from DATABASE_URL or ENVIRONMENT variable.
    Defaults to 'public' if not set.
    """
    # First try to parse from DATABASE_URL search_path option
    db_url = os.getenv("DATABASE_URL", "")
    match = re.search(r"search_path[=%]3D(\w+)", db_url)
    if match:
        return match.group(1)

    # Fall back to ENVIRONMENT variable
    env = os.getenv("ENVIRONMENT", "").lower()
    if env in ("dev", "staging", "prod"):
        return env

    return "public"


async def init_models(reset: bool = False, retries: int = 5, delay: float = 2.0) -> bool:
    """Create the chat tables, waiting for the database to come up."""
    is_postgres = engine.dialect.name == "postgresql"
    schema = get_schema_from_env()
    if is_postgres:
        print(f"Using database schema: {schema}")

    while retries > 0:
        try:
            async with engine.begin() as conn:
                if is_postgres:
                    if reset:
                        print(f"Dropping schema '{schema}' and recreating...")
                        await conn.execute(text(f"DROP SCHEMA IF EXISTS {schema} CASCADE"))

                    print(f"Creating schema '{schema}' if not exists...")
                    await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
                    await conn.execute(text(f"SET search_path TO {schema}"))
                elif reset:
                    await conn.run_sync(Base.metadata.drop_all)

                print("Creating chat tables...")
                await conn.run_sync(Base.metadata.create_all)

            print("Database initialization complete.")
            return True
        except OperationalError as e:
            print(f"Database not ready yet ({e}), retrying in {delay:g} seconds...")
            retries -= 1
            await asyncio.sleep(delay)

    print("Could not connect to database after retries.")
    return False


if __name__ == "__main__":
    reset = "--reset" in sys.argv
    ok = asyncio.run(init_models(reset=reset))
    sys.exit(0 if ok else 1)
