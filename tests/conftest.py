"""
Shared pytest fixtures for the Relief Allocation Engine test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema applied. Created anew for each test that requests it.
  - ``db_path``: A fresh on-disk database (WAL mode) under ``tmp_path``, for
    code that opens its own connections (orchestrator, applier via API).
  - ``clock``: A ``FixedClock`` pinned to ``NOW``.
  - Entity factories (``make_request``, ``make_warehouse``, ``make_resource``)
    and ``seed`` for writing them to a database file.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator, Iterable, Optional

import pytest

from relief_engine.config import AppConfig, DatabaseConfig, LoggingConfig
from relief_engine.db.connection import get_connection, init_database
from relief_engine.db.repositories.relief_repo import (
    RescueRequestRepository,
    ResourceRepository,
    WarehouseRepository,
)
from relief_engine.db.schema import apply_schema
from relief_engine.models.domain import Resource, RescueRequest, Warehouse
from relief_engine.utils.time_utils import FixedClock

NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

# Kochi city centre and two depots 1-2 km away.
KOCHI = (9.9312, 76.2673)


# ── Database fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the full schema applied.

    Foreign key enforcement is ON. Schema is applied idempotently.
    Connection is closed after the test.
    """
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    apply_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def db_path(tmp_path) -> str:
    """Path of an initialized on-disk database unique to the test."""
    path = str(tmp_path / "relief_engine.db")
    init_database(path)
    return path


@pytest.fixture
def app_config(db_path) -> AppConfig:
    """Default config pointed at ``db_path``, logging to stdout only."""
    return AppConfig(
        database=DatabaseConfig(db_path=db_path),
        logging=LoggingConfig(log_file=""),
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


# ── Sample domain object factories ────────────────────────────────────────────

@pytest.fixture
def make_request() -> Callable[..., RescueRequest]:
    """Factory for ``RescueRequest``; ``hours_ago`` sets ``created_at`` from ``NOW``."""

    def _make(
        request_id: int,
        location: str = "Kochi, Ernakulam",
        details: Optional[str] = "Need drinking water",
        hours_ago: Optional[float] = 1.0,
        latitude: Optional[float] = KOCHI[0],
        longitude: Optional[float] = KOCHI[1],
        status: str = "pending",
        people_count: int = 4,
        **kwargs,
    ) -> RescueRequest:
        return RescueRequest(
            request_id=request_id,
            location=location,
            details=details,
            latitude=latitude,
            longitude=longitude,
            status=status,
            people_count=people_count,
            created_at=NOW - timedelta(hours=hours_ago) if hours_ago is not None else None,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_warehouse() -> Callable[..., Warehouse]:
    def _make(
        warehouse_id: int,
        name: Optional[str] = None,
        location: str = "Kochi, Ernakulam",
        latitude: Optional[float] = KOCHI[0] + 0.01,
        longitude: Optional[float] = KOCHI[1],
        capacity: int = 100,
    ) -> Warehouse:
        return Warehouse(
            warehouse_id=warehouse_id,
            name=name or f"Depot {warehouse_id}",
            location=location,
            latitude=latitude,
            longitude=longitude,
            capacity=capacity,
        )

    return _make


@pytest.fixture
def make_resource() -> Callable[..., Resource]:
    def _make(
        resource_id: int,
        warehouse_id: int,
        resource_type: str = "water",
        quantity: int = 10,
    ) -> Resource:
        return Resource(
            resource_id=resource_id,
            warehouse_id=warehouse_id,
            resource_type=resource_type,
            quantity=quantity,
        )

    return _make


@pytest.fixture
def seed(db_path) -> Callable[..., None]:
    """Write warehouses, resources and requests to ``db_path`` (committed)."""

    def _seed(
        requests: Iterable[RescueRequest] = (),
        warehouses: Iterable[Warehouse] = (),
        resources: Iterable[Resource] = (),
    ) -> None:
        with get_connection(db_path) as conn:
            for wh in warehouses:
                WarehouseRepository(conn).insert(wh)
            for res in resources:
                ResourceRepository(conn).insert(res)
            for req in requests:
                RescueRequestRepository(conn).insert(req)

    return _seed
