"""
Async database access helpers (raw SQL) on top of `core.pool.ResourcePool`.

The pool is built once per process by the entry point (see `api/main.py`) and
passed in explicitly; each helper borrows one connection for one statement.

SQL parameter style:
- asyncpg uses positional placeholders: $1, $2, $3, ...
"""

from __future__ import annotations

from typing import Any

import asyncpg

from .pool import ResourcePool


def _record_to_dict(record: asyncpg.Record) -> dict[str, Any]:
    return dict(record)


async def fetch_one(pool: ResourcePool, sql: str, *args: Any) -> dict[str, Any] | None:
    """
    Run a query and return a single row as a dict (or None).
    """
    async with pool.lease() as conn:
        row = await conn.fetchrow(sql, *args)
    return _record_to_dict(row) if row is not None else None


async def fetch_all(pool: ResourcePool, sql: str, *args: Any) -> list[dict[str, Any]]:
    """
    Run a query and return all rows as a list of dicts.
    """
    async with pool.lease() as conn:
        rows = await conn.fetch(sql, *args)
    return [_record_to_dict(r) for r in rows]


async def fetch_value(pool: ResourcePool, sql: str, *args: Any) -> Any:
    async with pool.lease() as conn:
        return await conn.fetchval(sql, *args)


async def execute(pool: ResourcePool, sql: str, *args: Any) -> None:
    """
    Run a statement (INSERT/UPDATE/DELETE/DDL). No result returned.
    """
    async with pool.lease() as conn:
        await conn.execute(sql, *args)
