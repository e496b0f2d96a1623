"""Unit tests for the structured query builder."""

import pytest

from relational_db.exceptions import ValidationError
from relational_db.query.builder import (
    DeleteQuery,
    InsertQuery,
    OptimisticLock,
    OrderBy,
    ReturningMode,
    ReturningOptions,
    SelectQuery,
    SoftDelete,
    UpdateQuery,
    WhereCondition,
    build_delete_query,
    build_insert_query,
    build_select_query,
    build_update_query,
    derive_inserted_ids,
    validate_where_condition,
    where_from_mappings,
)
from relational_db.security import validate_sql_string
from relational_db.vendors import get_vendor_strategy


class TestWhereValidation:
    """Test WHERE condition value rules."""

    @pytest.mark.parametrize("condition,message", [
        (WhereCondition('age', 'gt', True), "GT operator requires a string or number value for column age"),
        (WhereCondition('age', 'lte'), "LTE operator requires a string or number value for column age"),
        (WhereCondition('id', 'in', []), "IN operator requires a non-empty array value for column id"),
        (WhereCondition('id', 'notIn', 5), "NOT IN operator requires a non-empty array value for column id"),
        (WhereCondition('id', 'in', [1, None]), "IN operator array values must be strings or numbers for column id"),
        (WhereCondition('name', 'eq', None), "null is only allowed with isNull/isNotNull operators"),
        (WhereCondition('name', 'eq'), "EQ operator requires a value for column name"),
        (WhereCondition('name', 'like', 5), "LIKE operator requires a string value for column name"),
        (WhereCondition('id', 'eq', [1, 2]), "EQ operator does not accept an array value for column id"),
        (WhereCondition('deleted_at', 'isNull', None), "IS NULL operator must not include value for column deleted_at"),
        (WhereCondition('deleted_at', 'isNotNull', 1),
         "IS NOT NULL operator must not include value for column deleted_at"),
    ])
    def test_invalid_conditions(self, condition, message):
        """Test exact messages for invalid values."""
        with pytest.raises(ValidationError) as exc_info:
            validate_where_condition(condition)
        assert str(exc_info.value) == message

    def test_valid_conditions(self):
        """Test that well-formed conditions pass."""
        for condition in [
            WhereCondition('age', 'gte', 18),
            WhereCondition('name', 'like', 'A%'),
            WhereCondition('id', 'notIn', (1, 2)),
            WhereCondition('deleted_at', 'isNull'),
            WhereCondition('flag', 'eq', False),
        ]:
            validate_where_condition(condition)

    def test_unknown_operator(self):
        """Test that unsupported operators are rejected on construction."""
        with pytest.raises(ValidationError, match="Unsupported WHERE operator 'between'"):
            WhereCondition('age', 'between', 1)

    def test_invalid_column(self):
        """Test that the column name is validated."""
        with pytest.raises(ValidationError, match="invalid characters"):
            validate_where_condition(WhereCondition('id; --', 'eq', 1))

    def test_where_from_mappings(self):
        """Test conversion from plain mappings keeps absent values absent."""
        conditions = where_from_mappings([
            {'column': 'id', 'operator': 'eq', 'value': 1},
            {'column': 'deleted_at', 'operator': 'isNull'},
        ])
        assert conditions[0] == WhereCondition('id', 'eq', 1)
        validate_where_condition(conditions[1])
        assert where_from_mappings(None) == ()


class TestSelectBuilder:
    """Test SELECT generation."""

    def test_postgres_select(self):
        """Test columns, WHERE, ORDER BY and pagination on PostgreSQL."""
        statement = build_select_query(SelectQuery(
            table='users',
            vendor='postgresql',
            columns=('id', 'name'),
            where=(WhereCondition('status', 'eq', 'active'), WhereCondition('age', 'gte', 18)),
            order_by=(OrderBy('name', 'desc'),),
            limit=10,
            offset=20,
        ))
        assert statement.sql == (
            'SELECT "id", "name" FROM "users" WHERE "status" = :p1 AND "age" >= :p2 '
            'ORDER BY "name" DESC LIMIT :p3 OFFSET :p4'
        )
        assert statement.params == ('active', 18, 10, 20)

    def test_mysql_quoting_and_in(self):
        """Test backtick quoting and one placeholder per IN value."""
        statement = build_select_query(SelectQuery(
            table='users', vendor='mysql', where=(WhereCondition('id', 'in', [1, 2, 3]),),
        ))
        assert statement.sql == "SELECT * FROM `users` WHERE `id` IN (:p1, :p2, :p3)"
        assert statement.params == (1, 2, 3)

    def test_null_operators_bind_nothing(self):
        """Test IS NULL and IS NOT NULL."""
        statement = build_select_query(SelectQuery(
            table='users', vendor='sqlite',
            where=(WhereCondition('deleted_at', 'isNull'), WhereCondition('email', 'isNotNull')),
        ))
        assert statement.sql == 'SELECT * FROM "users" WHERE "deleted_at" IS NULL AND "email" IS NOT NULL'
        assert statement.params == ()

    def test_schema_qualified_table(self):
        """Test that each part of a qualified name is quoted."""
        statement = build_select_query(SelectQuery(table='public.users', vendor='postgresql'))
        assert statement.sql == 'SELECT * FROM "public"."users"'

    @pytest.mark.parametrize("vendor,expected_sql,expected_params", [
        ('postgresql', 'SELECT * FROM "users" OFFSET :p1', (5,)),
        ('sqlite', 'SELECT * FROM "users" LIMIT :p1 OFFSET :p2', (-1, 5)),
        ('mysql', 'SELECT * FROM `users` LIMIT :p1 OFFSET :p2', (18446744073709551615, 5)),
    ])
    def test_offset_without_limit(self, vendor, expected_sql, expected_params):
        """Test that vendors needing LIMIT before OFFSET get an unbounded one."""
        statement = build_select_query(SelectQuery(table='users', vendor=vendor, offset=5))
        assert statement.sql == expected_sql
        assert statement.params == expected_params

    @pytest.mark.parametrize("limit,offset", [(-1, None), (None, -5), (1.5, None), (True, None)])
    def test_invalid_pagination(self, limit, offset):
        """Test that limit and offset must be non-negative integers."""
        with pytest.raises(ValidationError, match="must be a non-negative integer"):
            build_select_query(SelectQuery(table='users', vendor='sqlite', limit=limit, offset=offset))

    def test_invalid_table(self):
        """Test that invalid table names are rejected."""
        with pytest.raises(ValidationError):
            build_select_query(SelectQuery(table='users; DROP TABLE x', vendor='sqlite'))

    def test_unsupported_vendor(self):
        """Test that unknown vendors are rejected."""
        with pytest.raises(ValueError, match="Unsupported database vendor"):
            build_select_query(SelectQuery(table='users', vendor='oracle'))


class TestInsertBuilder:
    """Test INSERT generation."""

    def test_single_row_with_returning_id(self):
        """Test RETURNING on a vendor that supports it."""
        built = build_insert_query(InsertQuery(
            table='users', vendor='sqlite',
            rows=({'name': 'Alice', 'email': 'alice@example.com'},),
            returning=ReturningOptions('id'),
        ))
        assert built.statement.sql == 'INSERT INTO "users" ("name", "email") VALUES (:p1, :p2) RETURNING "id"'
        assert built.statement.params == ('Alice', 'alice@example.com')
        assert built.row_count == 1
        assert built.returning_mode == ReturningMode.ID

    def test_multi_row_uses_first_row_column_order(self):
        """Test that later rows are bound in the first row's column order."""
        built = build_insert_query(InsertQuery(
            table='t', vendor='postgresql', rows=({'a': 1, 'b': 2}, {'b': 3, 'a': 4}),
        ))
        assert built.statement.sql == 'INSERT INTO "t" ("a", "b") VALUES (:p1, :p2), (:p3, :p4)'
        assert built.statement.params == (1, 2, 4, 3)

    def test_mysql_returning_id_has_no_clause(self):
        """Test that MySQL relies on LAST_INSERT_ID instead of RETURNING."""
        built = build_insert_query(InsertQuery(
            table='users', vendor='mysql', rows=({'name': 'Bob'},), returning=ReturningOptions('id'),
        ))
        assert 'RETURNING' not in built.statement.sql
        assert built.supports_returning is False

    def test_mysql_returning_row_rejected(self):
        """Test that full-row RETURNING is rejected on MySQL."""
        with pytest.raises(ValidationError, match="Returning full rows is not supported for mysql"):
            build_insert_query(InsertQuery(
                table='users', vendor='mysql', rows=({'name': 'Bob'},), returning=ReturningOptions('row'),
            ))

    def test_returning_row(self):
        """Test RETURNING * on PostgreSQL."""
        built = build_insert_query(InsertQuery(
            table='users', vendor='postgresql', rows=({'name': 'Bob'},), returning=ReturningOptions('row'),
        ))
        assert built.statement.sql.endswith(' RETURNING *')

    def test_id_column_requires_id_mode(self):
        """Test that id_column is only valid with mode id."""
        with pytest.raises(ValidationError, match="id_column can only be provided"):
            build_insert_query(InsertQuery(
                table='users', vendor='sqlite', rows=({'name': 'Bob'},),
                returning=ReturningOptions('none', 'user_id'),
            ))

    def test_empty_rows_rejected(self):
        """Test that an empty row list is rejected."""
        with pytest.raises(ValidationError, match="Insert data must not be an empty array"):
            build_insert_query(InsertQuery(table='users', vendor='sqlite', rows=()))

    def test_mismatched_columns_rejected(self):
        """Test that all rows must share a column set."""
        with pytest.raises(ValidationError, match="row at index 1 has a different column set"):
            build_insert_query(InsertQuery(
                table='users', vendor='sqlite', rows=({'a': 1}, {'b': 2}),
            ))

    def test_default_values(self):
        """Test inserting a row with no columns."""
        postgres = build_insert_query(InsertQuery(table='t', vendor='postgresql', rows=({},)))
        mysql = build_insert_query(InsertQuery(table='t', vendor='mysql', rows=({},)))
        assert postgres.statement.sql == 'INSERT INTO "t" DEFAULT VALUES'
        assert mysql.statement.sql == 'INSERT INTO `t` () VALUES ()'


class TestUpdateDeleteBuilder:
    """Test UPDATE and DELETE generation."""

    def test_update_requires_where(self):
        """Test that a full-table update needs an explicit override."""
        with pytest.raises(ValidationError, match="WHERE conditions are required for UPDATE queries"):
            build_update_query(UpdateQuery(table='users', vendor='postgresql', data={'status': 'inactive'}))

        built = build_update_query(UpdateQuery(
            table='users', vendor='postgresql', data={'status': 'inactive'}, allow_full_table_update=True,
        ))
        assert built.statement.sql == 'UPDATE "users" SET "status" = :p1'

    def test_update_with_optimistic_lock(self):
        """Test that the lock adds an equality to WHERE."""
        built = build_update_query(UpdateQuery(
            table='users', vendor='postgresql', data={'name': 'B'},
            where=(WhereCondition('id', 'eq', 1),),
            optimistic_lock=OptimisticLock('version', 3),
        ))
        assert built.statement.sql == 'UPDATE "users" SET "name" = :p1 WHERE "id" = :p2 AND "version" = :p3'
        assert built.statement.params == ('B', 1, 3)
        assert built.uses_optimistic_lock is True

    def test_update_empty_data(self):
        """Test that update data must not be empty."""
        with pytest.raises(ValidationError, match="Update data must not be empty"):
            build_update_query(UpdateQuery(table='users', vendor='sqlite', data={},
                                           allow_full_table_update=True))

    def test_delete_requires_where(self):
        """Test that a full-table delete needs an explicit override."""
        with pytest.raises(ValidationError, match="WHERE conditions are required for DELETE queries"):
            build_delete_query(DeleteQuery(table='users', vendor='sqlite'))

        built = build_delete_query(DeleteQuery(table='users', vendor='sqlite', allow_full_table_delete=True))
        assert built.statement.sql == 'DELETE FROM "users"'

    def test_soft_delete(self):
        """Test that soft delete becomes an UPDATE of the marker column."""
        built = build_delete_query(DeleteQuery(
            table='users', vendor='sqlite', where=(WhereCondition('id', 'eq', 1),),
            soft_delete=SoftDelete(value='2024-01-01T00:00:00Z'),
        ))
        assert built.statement.sql == 'UPDATE "users" SET "deleted_at" = :p1 WHERE "id" = :p2'
        assert built.statement.params == ('2024-01-01T00:00:00Z', 1)
        assert built.soft_delete is True

    def test_soft_delete_default_timestamp(self):
        """Test that soft delete defaults to the current timestamp."""
        built = build_delete_query(DeleteQuery(
            table='users', vendor='mysql', where=(WhereCondition('id', 'eq', 1),), soft_delete=SoftDelete(),
        ))
        assert isinstance(built.statement.params[0], str)
        assert built.statement.params[1] == 1

    def test_generated_sql_never_contains_ddl(self):
        """Test that generated statements pass raw SQL validation."""
        statements = [
            build_select_query(SelectQuery(table='drop_log', vendor='sqlite',
                                           where=(WhereCondition('create_at', 'eq', 'x'),))),
            build_update_query(UpdateQuery(table='truncate_jobs', vendor='mysql', data={'alter_flag': 1},
                                           where=(WhereCondition('id', 'eq', 1),))).statement,
            build_delete_query(DeleteQuery(table='alter_history', vendor='postgresql',
                                           where=(WhereCondition('id', 'eq', 1),))).statement,
        ]
        for statement in statements:
            validate_sql_string(statement.sql)


class TestDeriveInsertedIds:
    """Test inserted id derivation."""

    def _built(self, vendor, rows):
        return build_insert_query(InsertQuery(table='t', vendor=vendor, rows=rows,
                                              returning=ReturningOptions('id')))

    def test_ids_from_returned_rows(self):
        """Test that returned rows win."""
        built = self._built('postgresql', ({'name': 'a'}, {'name': 'b'}))
        ids = derive_inserted_ids(built, [{'id': 7}, {'id': 8}], None, 2, get_vendor_strategy('postgresql'))
        assert ids == [7, 8]

    def test_ids_from_input_rows(self):
        """Test that explicit ids in the input are used."""
        built = self._built('mysql', ({'id': 3, 'name': 'a'}, {'id': 9, 'name': 'b'}))
        ids = derive_inserted_ids(built, [], 9, 2, get_vendor_strategy('mysql'))
        assert ids == [3, 9]

    def test_mysql_ids_count_up_from_first(self):
        """Test that MySQL reports the first id of a multi-row insert."""
        built = self._built('mysql', ({'name': 'a'}, {'name': 'b'}, {'name': 'c'}))
        assert derive_inserted_ids(built, [], 10, 3, get_vendor_strategy('mysql')) == [10, 11, 12]

    def test_sqlite_ids_count_back_from_last(self):
        """Test that SQLite reports the last id written."""
        built = self._built('sqlite', ({'name': 'a'}, {'name': 'b'}, {'name': 'c'}))
        assert derive_inserted_ids(built, [], 12, 3, get_vendor_strategy('sqlite')) == [10, 11, 12]

    def test_unknown_ids(self):
        """Test that no ids are invented when nothing is known."""
        built = self._built('postgresql', ({'name': 'a'},))
        assert derive_inserted_ids(built, [], None, 1, get_vendor_strategy('postgresql')) == []
