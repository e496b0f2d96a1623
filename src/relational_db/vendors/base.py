"""
Base vendor strategy.

Every vendor-specific decision (identifier quoting, isolation-level ordering,
connection setup, id derivation for inserts) lives behind this interface so
callers resolve a strategy once and never branch on the vendor tag.
"""

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.engine import Row


class Vendor(str, Enum):
    """Supported relational backends."""
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"


# Raw statement runner handed to strategies, returns fetched rows
RawExecutor = Callable[[str], Awaitable[List[Row]]]

ISOLATION_SQL = {
    'read-uncommitted': 'READ UNCOMMITTED',
    'read-committed': 'READ COMMITTED',
    'repeatable-read': 'REPEATABLE READ',
    'serializable': 'SERIALIZABLE',
}


class VendorStrategy:
    """Common behaviour shared by network vendors; subclasses override the differences."""

    vendor: Vendor
    drivername: str = ""
    identifier_quote: str = '"'
    backslash_escapes: bool = False
    supports_returning: bool = True
    reports_last_row_id: bool = False
    isolation_before_begin: bool = False
    single_connection: bool = False
    version_sql: str = "SELECT version()"
    health_check_sql: str = "SELECT 1"

    def quote_identifier(self, name: str) -> str:
        quote = self.identifier_quote
        return f"{quote}{name.replace(quote, quote * 2)}{quote}"

    def quote_qualified(self, name: str) -> str:
        """Quote each part of a ``schema.table`` name."""
        return '.'.join(self.quote_identifier(part) for part in name.split('.'))

    def default_values_sql(self, quoted_table: str) -> str:
        return f"INSERT INTO {quoted_table} DEFAULT VALUES"

    def connect_args(self, ssl: Optional[bool]) -> Dict[str, Any]:
        return {}

    async def configure_connection(self, execute: RawExecutor) -> None:
        """Session setup run once on every new physical connection."""
        return None

    async def apply_isolation_level(self, execute: RawExecutor, level: Optional[str]) -> List[str]:
        """Apply an isolation level for the current transaction.

        Args:
            execute: Raw statement runner bound to the transaction's connection
            level: One of ``read-uncommitted``, ``read-committed``,
                ``repeatable-read``, ``serializable`` or None

        Returns:
            Statements to run after commit/rollback to restore session state
        """
        if level is None:
            return []
        await execute(f"SET TRANSACTION ISOLATION LEVEL {ISOLATION_SQL[level]}")
        return []

    def derive_insert_ids(self, last_row_id: Optional[int], row_count: int) -> List[int]:
        """Derive ids from the driver's last-row id, empty when unknown."""
        return []

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(vendor={self.vendor.value!r})"
