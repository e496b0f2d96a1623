"""PostgreSQL strategy (asyncpg driver)."""

from typing import Any, Dict, List, Optional

from .base import Vendor, VendorStrategy


class PostgresStrategy(VendorStrategy):
    """PostgreSQL sets the isolation level right after BEGIN and supports RETURNING."""

    vendor = Vendor.POSTGRESQL
    drivername = "postgresql+asyncpg"

    def connect_args(self, ssl: Optional[bool]) -> Dict[str, Any]:
        if ssl:
            return {'ssl': 'require'}
        return {}
