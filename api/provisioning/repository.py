"""
Extension (capability) SQL.

`CREATE EXTENSION` cannot take a bind parameter for the name, so names are
validated and quoted as identifiers before being interpolated.
"""

from __future__ import annotations

import re

from core import db
from core.pool import ConnectionHandle, ResourcePool

_EXTENSION_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_\-]*$")


def quote_extension_name(name: str) -> str:
    if not _EXTENSION_NAME.match(name or ""):
        raise ValueError(f"Invalid extension name: {name!r}")
    return '"' + name.replace('"', '""') + '"'


async def extension_enabled(conn: ConnectionHandle, name: str) -> bool:
    enabled = await conn.fetchval(
        "SELECT EXISTS(SELECT 1 FROM pg_extension WHERE extname = $1)",
        name,
    )
    return bool(enabled)


async def enable_extension(conn: ConnectionHandle, name: str) -> None:
    await conn.execute(f"CREATE EXTENSION IF NOT EXISTS {quote_extension_name(name)}")


async def server_time(pool: ResourcePool) -> dict | None:
    return await db.fetch_one(pool, "SELECT now() AS current_time")
