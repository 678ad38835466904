"""
Read-model repositories for the relief application's own tables.

The engine does not own ``rescue_requests``, ``warehouses`` or ``resources``.
It reads them every cycle and writes to exactly one column:
``resources.quantity``, through ``ResourceRepository.decrement_guarded``.

The ``insert_*`` methods exist for seeding fixtures and local demos; in
production those rows are written by the surrounding application.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from relief_engine.db.repositories.base import BaseRepository, iso, opt_coordinate, opt_timestamp
from relief_engine.models.domain import Resource, RescueRequest, Warehouse

logger = logging.getLogger(__name__)


class RescueRequestRepository(BaseRepository):
    """Read access to ``rescue_requests``."""

    def list_open(self) -> list[RescueRequest]:
        """Return all pending/in_progress requests, oldest first.

        Raises:
            DataUnavailableError: If the table cannot be read.
        """
        return self.read_all(
            "rescue_requests",
            """
            SELECT * FROM rescue_requests
            WHERE status IN ('pending', 'in_progress')
            ORDER BY created_at ASC, request_id ASC;
            """,
            (),
            _row_to_request,
        )

    def get(self, request_id: int) -> Optional[RescueRequest]:
        row = self.fetchone(
            "SELECT * FROM rescue_requests WHERE request_id = ?;", (request_id,)
        )
        return _row_to_request(row) if row else None

    def insert(self, request: RescueRequest) -> int:
        """Insert a request and return its ``request_id``."""
        self.execute(
            """
            INSERT INTO rescue_requests (
                request_id, location, latitude, longitude, status, priority,
                people_count, details, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?,
                      COALESCE(?, strftime('%Y-%m-%dT%H:%M:%SZ', 'now')), ?);
            """,
            (
                request.request_id,
                request.location,
                request.latitude,
                request.longitude,
                request.status,
                request.priority,
                request.people_count,
                request.details,
                iso(request.created_at),
                iso(request.updated_at),
            ),
        )
        return self.last_insert_rowid()


class WarehouseRepository(BaseRepository):
    """Read access to ``warehouses``."""

    def list_all(self) -> list[Warehouse]:
        """Return every warehouse ordered by id.

        Raises:
            DataUnavailableError: If the table cannot be read.
        """
        return self.read_all(
            "warehouses",
            "SELECT * FROM warehouses ORDER BY warehouse_id;",
            (),
            _row_to_warehouse,
        )

    def insert(self, warehouse: Warehouse) -> int:
        self.execute(
            """
            INSERT INTO warehouses (
                warehouse_id, name, location, latitude, longitude, capacity, last_audited_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (
                warehouse.warehouse_id,
                warehouse.name,
                warehouse.location,
                warehouse.latitude,
                warehouse.longitude,
                warehouse.capacity,
                iso(warehouse.last_audited_at),
            ),
        )
        return self.last_insert_rowid()


class ResourceRepository(BaseRepository):
    """Read access to ``resources`` plus the guarded stock decrement."""

    def list_all(self) -> list[Resource]:
        """Return every stock line ordered by id.

        Raises:
            DataUnavailableError: If the table cannot be read.
        """
        return self.read_all(
            "resources",
            "SELECT * FROM resources ORDER BY resource_id;",
            (),
            _row_to_resource,
        )

    def get(self, resource_id: int) -> Optional[Resource]:
        row = self.fetchone("SELECT * FROM resources WHERE resource_id = ?;", (resource_id,))
        return _row_to_resource(row) if row else None

    def get_quantity(self, resource_id: int) -> Optional[int]:
        row = self.fetchone(
            "SELECT quantity FROM resources WHERE resource_id = ?;", (resource_id,)
        )
        return int(row["quantity"]) if row else None

    def decrement_guarded(self, resource_id: int, quantity: int) -> bool:
        """Atomically subtract ``quantity`` if at least that much is in stock.

        A single conditional UPDATE: a concurrent apply can never drive the
        stock negative, it just finds zero matching rows.

        Returns:
            ``True`` if the row was decremented, ``False`` if stock was short
            (or the resource does not exist).
        """
        cur = self.execute(
            """
            UPDATE resources
               SET quantity   = quantity - ?,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')
             WHERE resource_id = ? AND quantity >= ?;
            """,
            (quantity, resource_id, quantity),
        )
        return cur.rowcount == 1

    def insert(self, resource: Resource) -> int:
        self.execute(
            """
            INSERT INTO resources (
                resource_id, resource_type, quantity, unit, reorder_level, warehouse_id
            ) VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                resource.resource_id,
                resource.resource_type,
                resource.quantity,
                resource.unit,
                resource.reorder_level,
                resource.warehouse_id,
            ),
        )
        return self.last_insert_rowid()


# ── Private helpers ────────────────────────────────────────────────────────────

def _row_to_request(row: sqlite3.Row) -> RescueRequest:
    return RescueRequest(
        request_id=row["request_id"],
        location=row["location"] or "",
        latitude=opt_coordinate(row["latitude"]),
        longitude=opt_coordinate(row["longitude"]),
        status=row["status"],
        priority=row["priority"],
        people_count=max(1, int(row["people_count"] or 1)),
        details=row["details"],
        created_at=opt_timestamp(row["created_at"]),
        updated_at=opt_timestamp(row["updated_at"]),
    )


def _row_to_warehouse(row: sqlite3.Row) -> Warehouse:
    return Warehouse(
        warehouse_id=row["warehouse_id"],
        name=row["name"],
        location=row["location"] or "",
        latitude=opt_coordinate(row["latitude"]),
        longitude=opt_coordinate(row["longitude"]),
        capacity=row["capacity"] or 0,
        last_audited_at=opt_timestamp(row["last_audited_at"]),
    )


def _row_to_resource(row: sqlite3.Row) -> Resource:
    return Resource(
        resource_id=row["resource_id"],
        resource_type=row["resource_type"],
        quantity=row["quantity"],
        unit=row["unit"],
        reorder_level=row["reorder_level"],
        warehouse_id=row["warehouse_id"],
    )
