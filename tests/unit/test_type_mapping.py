"""Unit tests for vendor type mapping."""

import datetime
import uuid
from decimal import Decimal

import pytest

from relational_db.schema import ColumnSchema, DatabaseSchema, TableSchema
from relational_db.utils.type_mapping import TypeMapper
from relational_db.vendors import Vendor


class TestNormalizeType:
    """Test declared-type normalization."""

    @pytest.mark.parametrize("declared,expected", [
        ("VARCHAR(255)", "varchar"),
        ("NUMERIC(10, 2)", "numeric"),
        ("TIMESTAMP(3) WITH TIME ZONE", "timestamp with time zone"),
        ("INTEGER[]", "integer"),
        ("INTEGER UNSIGNED", "integer"),
        ("VARCHAR(64) COLLATE utf8mb4_bin", "varchar"),
        ("  Double   Precision ", "double precision"),
    ])
    def test_normalize(self, declared, expected):
        """Test that sizes, arrays and modifiers are stripped."""
        assert TypeMapper.normalize_type(declared) == expected


class TestMapColumnType:
    """Test single-column mapping per vendor."""

    @pytest.mark.parametrize("vendor,declared,python_type", [
        (Vendor.POSTGRESQL, "BIGINT", int),
        (Vendor.POSTGRESQL, "NUMERIC(12, 4)", Decimal),
        (Vendor.POSTGRESQL, "TIMESTAMP WITHOUT TIME ZONE", datetime.datetime),
        (Vendor.POSTGRESQL, "INTERVAL", datetime.timedelta),
        (Vendor.POSTGRESQL, "UUID", uuid.UUID),
        (Vendor.POSTGRESQL, "BYTEA", bytes),
        (Vendor.POSTGRESQL, "JSONB", object),
        (Vendor.MYSQL, "TINYINT(1)", int),
        (Vendor.MYSQL, "DECIMAL(10,2)", Decimal),
        (Vendor.MYSQL, "TIME", datetime.timedelta),
        (Vendor.MYSQL, "LONGBLOB", bytes),
        (Vendor.SQLITE, "INTEGER", int),
        (Vendor.SQLITE, "TEXT", str),
        (Vendor.SQLITE, "DATETIME", str),
        (Vendor.SQLITE, "REAL", float),
    ])
    def test_known_types(self, vendor, declared, python_type):
        """Test the mapped Python type."""
        assert TypeMapper.map_column_type(vendor, declared).python_type is python_type

    def test_nullable_and_notes(self):
        """Test nullability and vendor notes."""
        mapped = TypeMapper.map_column_type('sqlite', 'BOOLEAN', nullable=True)
        assert mapped.python_type is int
        assert mapped.nullable is True
        assert mapped.type_name == "Optional[int]"
        assert "0/1" in mapped.notes

    def test_postgres_array(self):
        """Test that PostgreSQL arrays map to lists of the element type."""
        mapped = TypeMapper.map_column_type('postgresql', 'TEXT[]')
        assert mapped.python_type is list
        assert mapped.notes == "Array of str"

    def test_unknown_type(self):
        """Test that unknown types map to object with a note."""
        mapped = TypeMapper.map_column_type('mysql', 'MULTIPOLYGON')
        assert mapped.python_type is object
        assert mapped.db_type == 'MULTIPOLYGON'
        assert 'No explicit mapping' in mapped.notes

    def test_unknown_vendor(self):
        """Test that unsupported vendors are rejected."""
        with pytest.raises(ValueError):
            TypeMapper.map_column_type('oracle', 'NUMBER')


class TestMapSchemaTypes:
    """Test whole-schema mapping."""

    def test_map_schema(self):
        """Test that every column of every table is mapped."""
        schema = DatabaseSchema(vendor='sqlite', tables=[
            TableSchema(name='users', columns=[
                ColumnSchema('id', 'INTEGER', False, primary_key=True),
                ColumnSchema('name', 'TEXT', True),
            ]),
            TableSchema(name='files', columns=[ColumnSchema('data', 'BLOB', False)]),
        ])
        mapped = TypeMapper.map_schema_types(schema)

        assert set(mapped) == {'users', 'files'}
        assert mapped['users']['name'].type_name == "Optional[str]"
        assert mapped['files']['data'].python_type is bytes

    def test_vendor_type_map_is_a_copy(self):
        """Test that callers cannot mutate the shared table."""
        table = TypeMapper.get_vendor_type_map('postgresql')
        table['jsonb'] = dict
        assert TypeMapper.get_vendor_type_map(Vendor.POSTGRESQL)['jsonb'] is object
