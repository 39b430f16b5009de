import asyncpg

from services.shared.config import env_int, optional_env, require_env


async def _init_db_connection(conn: asyncpg.Connection) -> None:
    # Avoid passing statement_timeout as a startup parameter (PgBouncer rejects it).
    await conn.execute("SET statement_timeout TO 30000")


async def create_pool() -> asyncpg.Pool:
    """Build the asyncpg pool from DATABASE_URL or the PG_* variables."""
    min_size = env_int("PG_POOL_MIN", 2)
    max_size = env_int("PG_POOL_MAX", 10)
    database_url = optional_env("DATABASE_URL")
    if database_url:
        return await asyncpg.create_pool(
            dsn=database_url,
            min_size=min_size,
            max_size=max_size,
            command_timeout=30,
            init=_init_db_connection,
        )
    return await asyncpg.create_pool(
        host=optional_env("PG_HOST", "localhost"),
        port=env_int("PG_PORT", 5432),
        database=optional_env("PG_DB", "sensors"),
        user=optional_env("PG_USER", "sensors"),
        password=require_env("PG_PASS"),
        min_size=min_size,
        max_size=max_size,
        command_timeout=30,
        init=_init_db_connection,
    )
