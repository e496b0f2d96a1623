"""
Type mapping from vendor column types to Python value types
"""

import datetime
import logging
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Union

from ..vendors import Vendor

logger = logging.getLogger(__name__)

ARRAY_SUFFIX_PATTERN = re.compile(r'\[\]$')
SIZE_SUFFIX_PATTERN = re.compile(r'\([\d,\s]+\)')
MYSQL_MODIFIER_PATTERN = re.compile(r'\s+(unsigned|zerofill|(collate|character set|charset)\s+\S+)', re.IGNORECASE)


@dataclass(frozen=True)
class MappedType:
    """Python type a driver hands back for one column."""
    db_type: str
    python_type: type
    nullable: bool = False
    notes: Optional[str] = None

    @property
    def type_name(self) -> str:
        name = self.python_type.__name__
        return f"Optional[{name}]" if self.nullable else name


class TypeMapper:
    """Utility for mapping declared column types onto Python types per vendor"""

    POSTGRES_TYPE_MAPPING = {
        # Integer types
        'smallint': int, 'integer': int, 'int': int, 'int2': int, 'int4': int, 'int8': int,
        'bigint': int, 'smallserial': int, 'serial': int, 'bigserial': int, 'oid': int,

        # Float and exact numeric types
        'real': float, 'float4': float, 'double precision': float, 'float8': float,
        'numeric': Decimal, 'decimal': Decimal,
        'money': str,

        # String types
        'text': str, 'character varying': str, 'varchar': str, 'char': str, 'character': str,
        'name': str, 'citext': str, 'xml': str, 'tsvector': str, 'tsquery': str,
        'macaddr': str, 'macaddr8': str,

        # Boolean type
        'boolean': bool, 'bool': bool,

        # Date/Time types
        'date': datetime.date,
        'timestamp': datetime.datetime, 'timestamptz': datetime.datetime,
        'timestamp with time zone': datetime.datetime, 'timestamp without time zone': datetime.datetime,
        'time': datetime.time, 'timetz': datetime.time,
        'time with time zone': datetime.time, 'time without time zone': datetime.time,
        'interval': datetime.timedelta,

        # JSON, binary and UUID types
        'json': object, 'jsonb': object,
        'bytea': bytes,
        'uuid': uuid.UUID,
    }

    MYSQL_TYPE_MAPPING = {
        # Integer types
        'tinyint': int, 'smallint': int, 'mediumint': int, 'int': int, 'integer': int, 'bigint': int,
        'year': int,

        # Float and exact numeric types
        'float': float, 'double': float, 'double precision': float, 'real': float,
        'decimal': Decimal, 'dec': Decimal, 'numeric': Decimal,

        # String types
        'char': str, 'varchar': str, 'tinytext': str, 'text': str, 'mediumtext': str, 'longtext': str,
        'enum': str, 'set': str,

        # Boolean type
        'boolean': bool, 'bool': bool,

        # Binary types
        'bit': bytes, 'binary': bytes, 'varbinary': bytes,
        'tinyblob': bytes, 'blob': bytes, 'mediumblob': bytes, 'longblob': bytes,
        'geometry': bytes, 'point': bytes, 'linestring': bytes, 'polygon': bytes,

        # Date/Time types
        'date': datetime.date, 'datetime': datetime.datetime, 'timestamp': datetime.datetime,
        'time': datetime.timedelta,

        # JSON type
        'json': object,
    }

    # SQLite only has storage classes; declared types are advisory
    SQLITE_TYPE_MAPPING = {
        'integer': int, 'int': int, 'tinyint': int, 'smallint': int, 'mediumint': int, 'bigint': int,
        'boolean': int,
        'real': float, 'double': float, 'double precision': float, 'float': float,
        'numeric': float, 'decimal': float,
        'text': str, 'varchar': str, 'char': str, 'clob': str, 'character varying': str,
        'native character': str, 'nchar': str, 'nvarchar': str,
        'date': str, 'datetime': str, 'timestamp': str, 'json': str,
        'blob': bytes,
    }

    VENDOR_TYPE_MAPPINGS = {
        Vendor.POSTGRESQL: POSTGRES_TYPE_MAPPING,
        Vendor.MYSQL: MYSQL_TYPE_MAPPING,
        Vendor.SQLITE: SQLITE_TYPE_MAPPING,
    }

    TYPE_NOTES = {
        (Vendor.SQLITE, 'boolean'): "SQLite stores booleans as 0/1 integers",
        (Vendor.SQLITE, 'numeric'): "SQLite NUMERIC affinity yields int or float, never Decimal",
        (Vendor.SQLITE, 'decimal'): "SQLite NUMERIC affinity yields int or float, never Decimal",
        (Vendor.MYSQL, 'time'): "MySQL TIME is an interval and may exceed 24 hours",
        (Vendor.POSTGRESQL, 'money'): "Returned as locale-formatted text",
    }

    @staticmethod
    def normalize_type(db_type: str) -> str:
        """
        Reduce a declared type to its lookup key

        Lower-cases, strips size/precision suffixes such as ``(255)`` or
        ``(10, 2)``, the PostgreSQL ``[]`` array suffix and MySQL modifiers.
        """
        normalized = db_type.lower().strip()
        normalized = ARRAY_SUFFIX_PATTERN.sub('', normalized)
        normalized = SIZE_SUFFIX_PATTERN.sub('', normalized)
        normalized = MYSQL_MODIFIER_PATTERN.sub('', normalized)
        return ' '.join(normalized.split())

    @classmethod
    def map_column_type(cls, vendor: Union[Vendor, str], db_type: str, nullable: bool = False) -> MappedType:
        """
        Map a declared column type to the Python type the driver returns

        Args:
            vendor: Vendor the type was declared for
            db_type: Declared type as reported by schema inspection
            nullable: Whether the column accepts NULL

        Returns:
            MappedType; unknown types map to ``object`` with a note
        """
        vendor = Vendor(vendor)
        normalized = cls.normalize_type(db_type)
        python_type = cls.VENDOR_TYPE_MAPPINGS[vendor].get(normalized)

        if python_type is None:
            logger.debug(f"No mapping for {vendor.value} type '{db_type}', defaulting to object")
            return MappedType(db_type, object, nullable, f"No explicit mapping for \"{db_type}\"")

        notes = cls.TYPE_NOTES.get((vendor, normalized))
        if vendor == Vendor.POSTGRESQL and db_type.strip().endswith('[]'):
            return MappedType(db_type, list, nullable, f"Array of {python_type.__name__}")
        return MappedType(db_type, python_type, nullable, notes)

    @classmethod
    def map_schema_types(cls, schema) -> Dict[str, Dict[str, MappedType]]:
        """
        Map every column of an inspected ``DatabaseSchema``

        Returns:
            Table name to column name to MappedType
        """
        mapped = {
            table.name: {
                column.name: cls.map_column_type(schema.vendor, column.type, column.nullable)
                for column in table.columns
            }
            for table in schema.tables
        }
        logger.debug(f"Mapped {sum(len(columns) for columns in mapped.values())} columns "
                     f"across {len(mapped)} tables")
        return mapped

    @classmethod
    def get_vendor_type_map(cls, vendor: Union[Vendor, str]) -> Dict[str, type]:
        """Get a copy of the vendor's type mapping table"""
        return dict(cls.VENDOR_TYPE_MAPPINGS[Vendor(vendor)])
