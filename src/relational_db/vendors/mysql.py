"""MySQL strategy (aiomysql driver)."""

import ssl as ssl_module
from typing import Any, Dict, List, Optional

from .base import Vendor, VendorStrategy


class MySQLStrategy(VendorStrategy):
    """
    MySQL quirks:
    - backtick identifiers and backslash escapes inside string literals
    - SET TRANSACTION only affects the next transaction, so it must precede BEGIN
    - no RETURNING; LAST_INSERT_ID() reports the first id of a multi-row insert
    """

    vendor = Vendor.MYSQL
    drivername = "mysql+aiomysql"
    identifier_quote = '`'
    backslash_escapes = True
    supports_returning = False
    reports_last_row_id = True
    isolation_before_begin = True

    def default_values_sql(self, quoted_table: str) -> str:
        return f"INSERT INTO {quoted_table} () VALUES ()"

    def connect_args(self, ssl: Optional[bool]) -> Dict[str, Any]:
        if ssl:
            return {'ssl': ssl_module.create_default_context()}
        return {}

    def derive_insert_ids(self, last_row_id: Optional[int], row_count: int) -> List[int]:
        if not last_row_id or row_count <= 0:
            return []
        return [last_row_id + offset for offset in range(row_count)]
