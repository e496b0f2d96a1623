"""SQLite strategy (aiosqlite driver)."""

import logging
from typing import List, Optional

from .base import RawExecutor, Vendor, VendorStrategy

logger = logging.getLogger(__name__)


class SQLiteStrategy(VendorStrategy):
    """
    SQLite has no per-transaction isolation. ``read-uncommitted`` is emulated
    with the session-wide ``read_uncommitted`` pragma, restored afterwards;
    other levels are accepted and ignored.
    """

    vendor = Vendor.SQLITE
    drivername = "sqlite+aiosqlite"
    single_connection = True
    reports_last_row_id = True
    version_sql = "SELECT sqlite_version()"

    async def configure_connection(self, execute: RawExecutor) -> None:
        await execute("PRAGMA foreign_keys = ON")

    async def apply_isolation_level(self, execute: RawExecutor, level: Optional[str]) -> List[str]:
        if level is None:
            return []

        if level != 'read-uncommitted':
            logger.debug(f"SQLite ignores isolation level '{level}'")
            return []

        rows = await execute("PRAGMA read_uncommitted")
        previous = int(rows[0][0]) if rows else 0
        await execute("PRAGMA read_uncommitted = 1")
        return [f"PRAGMA read_uncommitted = {previous}"]

    def derive_insert_ids(self, last_row_id: Optional[int], row_count: int) -> List[int]:
        # last_insert_rowid() is the id of the final row written
        if not last_row_id or row_count <= 0:
            return []
        first = last_row_id - row_count + 1
        return [first + offset for offset in range(row_count)]
