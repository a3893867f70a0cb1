import json
import os

import asyncpg

from shared.config import env_int

PG_HOST = os.getenv("PG_HOST", "stationwatch-postgres")
PG_PORT = env_int("PG_PORT", 5432)
PG_DB = os.getenv("PG_DB", "stationwatch")
PG_USER = os.getenv("PG_USER", "stationwatch")
PG_PASS = os.getenv("PG_PASS", "stationwatch_dev")
DATABASE_URL = os.getenv("DATABASE_URL")
PG_POOL_MIN = env_int("PG_POOL_MIN", 2)
PG_POOL_MAX = env_int("PG_POOL_MAX", 10)

_pool: asyncpg.Pool | None = None


def _encode_json(value) -> str:
    return json.dumps(value, default=str)


async def _init_db_connection(conn: asyncpg.Connection) -> None:
    # Avoid passing statement_timeout as a startup parameter (PgBouncer rejects it).
    await conn.execute("SET statement_timeout TO 30000")
    await conn.set_type_codec(
        "jsonb",
        encoder=_encode_json,
        decoder=json.loads,
        schema="pg_catalog",
    )


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        if DATABASE_URL:
            _pool = await asyncpg.create_pool(
                dsn=DATABASE_URL,
                min_size=PG_POOL_MIN,
                max_size=PG_POOL_MAX,
                command_timeout=30,
                init=_init_db_connection,
            )
        else:
            _pool = await asyncpg.create_pool(
                host=PG_HOST,
                port=PG_PORT,
                database=PG_DB,
                user=PG_USER,
                password=PG_PASS,
                min_size=PG_POOL_MIN,
                max_size=PG_POOL_MAX,
                command_timeout=30,
                init=_init_db_connection,
            )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


DEVICE_COLUMNS = """
    device_id, label, location, status, valve, pump, last_contact,
    sensor_status, pump_cycle, latest_reading, commands, configurations
"""


async def fetch_device(conn: asyncpg.Connection, device_id: str, for_update: bool = False):
    """Load one device row; FOR UPDATE serializes ingestion per device."""
    lock = " FOR UPDATE" if for_update else ""
    return await conn.fetchrow(
        f"SELECT {DEVICE_COLUMNS} FROM devices WHERE device_id = $1{lock}",
        device_id,
    )
