"""Per-vendor strategy table."""

from typing import Union

from .base import Vendor, VendorStrategy, ISOLATION_SQL
from .mysql import MySQLStrategy
from .postgres import PostgresStrategy
from .sqlite import SQLiteStrategy

_STRATEGIES = {
    Vendor.POSTGRESQL: PostgresStrategy(),
    Vendor.MYSQL: MySQLStrategy(),
    Vendor.SQLITE: SQLiteStrategy(),
}


def get_vendor_strategy(vendor: Union[Vendor, str]) -> VendorStrategy:
    """
    Resolve the strategy for a vendor tag.

    Args:
        vendor: Vendor enum member or its string value

    Returns:
        The shared, stateless strategy instance

    Raises:
        ValueError: If the vendor is not supported
    """
    try:
        vendor_enum = Vendor(vendor)
    except ValueError:
        supported = ', '.join(v.value for v in Vendor)
        raise ValueError(f"Unsupported database vendor: {vendor}. Supported: {supported}")
    return _STRATEGIES[vendor_enum]


__all__ = [
    'Vendor',
    'VendorStrategy',
    'ISOLATION_SQL',
    'PostgresStrategy',
    'MySQLStrategy',
    'SQLiteStrategy',
    'get_vendor_strategy',
]
