"""
Blocking executor behavior against the in-memory driver.
"""
import gc

import pytest
from procdb.connection import ConnectionState
from procdb.exceptions import ConnectionClosedError, ConversionError
from procdb.exceptions import TransactionStateError, TypeShapeError
from procdb.parameters import IO, I, O

from tests.fixtures.mocks import FakeDriverError, result_set
from tests.fixtures.records import Account, Person, User

USER_COLUMNS = ['Id', 'Name', 'Email']


class TestQueryRecords:

    def test_get_user_by_id(self, fake_connection, pg_executor):
        fake_connection.script('GetUser', result_set(USER_COLUMNS, [(7, 'Ann', None)]))
        with pg_executor.query_records(User, 'GetUser', I('Id', 7)) as users:
            assert list(users) == [User(7, 'Ann', None)]
        assert fake_connection.executed[-1] == ('SELECT * FROM GetUser(Id => %s)', (7,))

    def test_no_rows(self, fake_connection, mssql_executor):
        fake_connection.script('GetUser', result_set(USER_COLUMNS, []))
        users = mssql_executor.query_records(User, 'GetUser', I('Id', 99))
        assert next(users, None) is None
        assert users.closed
        assert fake_connection.cursors[-1].closed

    def test_stream_exposes_columns(self, fake_connection, mssql_executor):
        fake_connection.script('GetUser', result_set(USER_COLUMNS, [(1, 'Ann', None)]))
        with mssql_executor.query_rows('GetUser') as rows:
            assert rows.names == USER_COLUMNS
            assert rows.fetchall() == [(1, 'Ann', None)]

    def test_row_count_results_skipped(self, fake_connection, mssql_executor):
        """SQL Server reports DML inside the procedure as results without columns"""
        fake_connection.script('ArchiveAndList', (None, []), result_set(['Id'], [(1,), (2,)]))
        with mssql_executor.query_rows('ArchiveAndList') as rows:
            assert rows.fetchall() == [(1,), (2,)]

    def test_no_result_set(self, fake_connection, mssql_executor):
        fake_connection.script('Nothing')
        rows = mssql_executor.query_rows('Nothing')
        assert rows.closed
        assert rows.columns == []
        assert rows.fetchall() == []
        assert fake_connection.cursors[-1].closed

    def test_invalid_record_type_checked_before_call(self, fake_connection, mssql_executor):
        with pytest.raises(TypeShapeError):
            mssql_executor.query_records(int, 'GetUser')
        assert fake_connection.executed == []

    def test_read_only_member_fails_before_rows(self, fake_connection, mssql_executor):
        fake_connection.script('GetPeople', result_set(['full_name'], [('Ann Lee',)]))
        with pytest.raises(TypeShapeError):
            mssql_executor.query_records(Person, 'GetPeople')
        assert fake_connection.cursors[-1].closed

    def test_position_strategy(self, fake_connection, mssql_executor):
        fake_connection.script('GetUser', result_set(['a', 'b', 'c'], [(1, 'Ann', None)]))
        with mssql_executor.query_records(User, 'GetUser', by='position') as users:
            assert users.fetchall() == [User(1, 'Ann', None)]


class TestStreamRelease:
    """The cursor is released on every way a stream can end"""

    def test_abandoned_stream_closed_explicitly(self, fake_connection, mssql_executor):
        fake_connection.script('GetUsers', result_set(USER_COLUMNS, [(1, 'Ann', None), (2, 'Bob', None)]))
        with mssql_executor.query_records(User, 'GetUsers') as users:
            for user in users:
                break
        assert user == User(1, 'Ann', None)
        assert users.closed
        assert fake_connection.cursors[-1].closed
        assert list(users) == []

    def test_abandoned_stream_closed_on_collection(self, fake_connection, mssql_executor):
        fake_connection.script('GetUsers', result_set(USER_COLUMNS, [(1, 'Ann', None), (2, 'Bob', None)]))
        users = mssql_executor.query_records(User, 'GetUsers')
        next(users)
        del users
        gc.collect()
        assert fake_connection.cursors[-1].closed

    def test_fetch_error_closes_stream(self, fake_connection, mssql_executor):
        fake_connection.script('GetUsers', result_set(USER_COLUMNS, [(1, 'Ann', None), (2, 'Bob', None)]),
                               fetch_error=FakeDriverError('connection lost'), fetch_error_after=1)
        users = mssql_executor.query_records(User, 'GetUsers')
        assert next(users) == User(1, 'Ann', None)
        with pytest.raises(FakeDriverError):
            next(users)
        assert users.closed
        assert fake_connection.cursors[-1].closed

    def test_conversion_error_closes_stream(self, fake_connection, mssql_executor):
        fake_connection.script('GetAccounts', result_set(['id', 'balance'], [(1, '10.00'), (2, 'abc')]))
        accounts = mssql_executor.query_records(Account, 'GetAccounts')
        assert next(accounts).id == 1
        with pytest.raises(ConversionError):
            next(accounts)
        assert accounts.closed
        assert fake_connection.cursors[-1].closed

    def test_execute_error_closes_cursor(self, fake_connection, mssql_executor):
        fake_connection.script('Broken', error=FakeDriverError('syntax error'))
        with pytest.raises(FakeDriverError):
            mssql_executor.query_rows('Broken')
        assert fake_connection.cursors[-1].closed
        with pytest.raises(FakeDriverError):
            mssql_executor.exec_non_query('Broken')
        assert all(cursor.closed for cursor in fake_connection.cursors)


class TestExecNonQuery:

    def test_deactivate_user(self, fake_connection, mssql_executor):
        fake_connection.script('DeactivateUser', rowcount=1)
        assert mssql_executor.exec_non_query('DeactivateUser', I('Id', 7)) == 1
        assert fake_connection.executed[-1] == ('EXEC DeactivateUser @Id = ?', (7,))
        assert fake_connection.cursors[-1].closed

    def test_postgres_call_reports_unknown_count(self, fake_connection, pg_executor):
        fake_connection.script('deactivate_user')
        assert pg_executor.exec_non_query('deactivate_user', I('id', 7)) == -1
        assert fake_connection.statements[-1] == 'CALL deactivate_user(id => %s)'

    def test_bare_values_are_positional(self, fake_connection, mssql_executor):
        mssql_executor.exec_non_query('SetName', 7, 'Ann')
        assert fake_connection.executed[-1] == ('EXEC SetName ?, ?', (7, 'Ann'))


class TestOutputParameters:

    def test_sqlserver_outputs_from_trailing_select(self, fake_connection, mssql_executor):
        new_id, counter = O('NewId', 'int'), IO('Counter', 5, 'int')
        fake_connection.script('AddUser', result_set(['NewId', 'Counter'], [(42, 6)]), rowcount=1)
        assert mssql_executor.exec_non_query('AddUser', I('Name', 'Ann'), new_id, counter) == 1
        assert (new_id.value, counter.value) == (42, 6)

    def test_postgres_outputs_from_call_row(self, fake_connection, pg_executor):
        new_id = O('new_id', 'int')
        fake_connection.script('add_user', result_set(['new_id'], [(42,)]))
        pg_executor.exec_non_query('add_user', I('name', 'Ann'), new_id)
        assert new_id.value == 42

    def test_outputs_set_after_stream_exhausted(self, fake_connection, mssql_executor):
        total = O('Total', 'int')
        fake_connection.script('GetUsers',
                               result_set(USER_COLUMNS, [(1, 'Ann', None), (2, 'Bob', None)]),
                               result_set(['Total'], [(2,)]))
        users = mssql_executor.query_records(User, 'GetUsers', total)
        assert len(users.fetchall()) == 2
        assert total.value == 2

    def test_outputs_unset_when_stream_abandoned(self, fake_connection, mssql_executor):
        total = O('Total', 'int')
        fake_connection.script('GetUsers',
                               result_set(USER_COLUMNS, [(1, 'Ann', None), (2, 'Bob', None)]),
                               result_set(['Total'], [(2,)]))
        with mssql_executor.query_records(User, 'GetUsers', total) as users:
            next(users)
        assert total.value is None

    def test_query_data_outputs_removed_from_tables(self, fake_connection, mssql_executor):
        total = O('Total', 'int')
        fake_connection.script('Report',
                               result_set(['Id'], [(1,), (2,)]),
                               result_set(['Name'], [('Ann',)]),
                               result_set(['Total'], [(3,)]))
        assert mssql_executor.query_data('Report', total) == [[(1,), (2,)], [('Ann',)]]
        assert total.value == 3

    def test_postgres_row_returning_outputs_rejected(self, fake_connection, pg_executor):
        with pytest.raises(ValueError):
            pg_executor.query_rows('get_users', O('total'))
        assert fake_connection.executed == []


class TestQueryData:

    def test_every_result_set(self, fake_connection, mssql_executor):
        fake_connection.script('Dashboard',
                               result_set(['Id'], [(1,)]),
                               (None, []),
                               result_set(['Name', 'Count'], [('a', 1), ('b', 2)]))
        assert mssql_executor.query_data('Dashboard') == [[(1,)], [('a', 1), ('b', 2)]]
        assert fake_connection.cursors[-1].closed

    def test_no_result_sets(self, fake_connection, mssql_executor):
        assert mssql_executor.query_data('Nothing') == []


class TestTimeout:

    def test_postgres_timeout_set_once(self, fake_connection, pg_executor):
        pg_executor.exec_non_query('a')
        pg_executor.exec_non_query('b')
        assert fake_connection.statements.count('SET statement_timeout = 300000') == 1

    def test_postgres_timeout_change_applied(self, fake_connection, pg_executor):
        pg_executor.exec_non_query('a')
        pg_executor.timeout = 30
        pg_executor.exec_non_query('b')
        assert fake_connection.statements[-2:] == ['SET statement_timeout = 30000', 'CALL b()']

    def test_sqlserver_timeout_on_connection(self, fake_connection, mssql_executor):
        mssql_executor.timeout = 45
        mssql_executor.exec_non_query('a')
        assert fake_connection.timeout == 45
        assert fake_connection.statements == ['EXEC a']

    def test_negative_timeout_rejected(self, pg_executor):
        with pytest.raises(ValueError):
            pg_executor.timeout = -1

    def test_rollback_reapplies_timeout(self, fake_connection, pg_executor):
        pg_executor.begin_transaction()
        pg_executor.exec_non_query('a')
        pg_executor.rollback_transaction()
        pg_executor.exec_non_query('b')
        assert fake_connection.statements.count('SET statement_timeout = 300000') == 2


class TestTransactions:

    def test_connection_starts_in_autocommit(self, fake_connection, mssql_executor):
        mssql_executor.exec_non_query('a')
        assert fake_connection.autocommit is True

    def test_commit(self, fake_connection, mssql_executor):
        mssql_executor.begin_transaction()
        assert mssql_executor.in_transaction
        assert fake_connection.autocommit is False
        mssql_executor.exec_non_query('a')
        mssql_executor.commit_transaction()
        assert fake_connection.commits == 1
        assert fake_connection.autocommit is True
        assert not mssql_executor.in_transaction

    def test_commit_twice_raises(self, fake_connection, mssql_executor):
        mssql_executor.begin_transaction()
        mssql_executor.commit_transaction()
        with pytest.raises(TransactionStateError):
            mssql_executor.commit_transaction()
        assert fake_connection.commits == 1

    def test_rollback_without_transaction(self, mssql_executor):
        with pytest.raises(TransactionStateError):
            mssql_executor.rollback_transaction()

    def test_nested_begin_raises(self, mssql_executor):
        mssql_executor.begin_transaction()
        with pytest.raises(TransactionStateError):
            mssql_executor.begin_transaction()
        assert mssql_executor.in_transaction

    def test_context_manager_commits(self, fake_connection, mssql_executor):
        with mssql_executor.transaction():
            mssql_executor.exec_non_query('DebitAccount', I('Id', 1))
            mssql_executor.exec_non_query('CreditAccount', I('Id', 2))
        assert (fake_connection.commits, fake_connection.rollbacks) == (1, 0)
        assert fake_connection.autocommit_history == [True, False, True]

    def test_context_manager_rolls_back_on_error(self, fake_connection, mssql_executor):
        fake_connection.script('CreditAccount', error=FakeDriverError('constraint violation'))
        with pytest.raises(FakeDriverError), mssql_executor.transaction():
            mssql_executor.exec_non_query('DebitAccount', I('Id', 1))
            mssql_executor.exec_non_query('CreditAccount', I('Id', 2))
        assert (fake_connection.commits, fake_connection.rollbacks) == (0, 1)
        assert fake_connection.autocommit is True
        assert not mssql_executor.in_transaction

    def test_failed_commit_restores_autocommit(self, fake_connection, mssql_executor, mocker):
        mocker.patch.object(fake_connection, 'commit', side_effect=FakeDriverError('lost'))
        mssql_executor.begin_transaction()
        with pytest.raises(FakeDriverError):
            mssql_executor.commit_transaction()
        assert fake_connection.autocommit is True
        assert not mssql_executor.in_transaction


class TestClose:

    def test_close_rolls_back_open_transaction(self, fake_connection, mssql_executor):
        mssql_executor.begin_transaction()
        mssql_executor.close()
        assert fake_connection.rollbacks == 1
        assert fake_connection.closed
        assert mssql_executor.handle.state is ConnectionState.CLOSED

    def test_close_is_idempotent(self, fake_connection, mssql_executor):
        mssql_executor.exec_non_query('a')
        mssql_executor.close()
        mssql_executor.close()
        assert fake_connection.closed

    def test_close_unopened(self, fake_connection, mssql_executor):
        mssql_executor.close()
        assert not fake_connection.closed

    def test_use_after_close(self, mssql_executor):
        mssql_executor.close()
        with pytest.raises(ConnectionClosedError):
            mssql_executor.exec_non_query('a')
        with pytest.raises(ConnectionClosedError):
            mssql_executor.begin_transaction()

    def test_context_manager(self, fake_connection, mssql_executor):
        with mssql_executor as executor:
            executor.exec_non_query('a')
        assert fake_connection.closed

    def test_call_statistics(self, fake_connection, pg_executor):
        pg_executor.exec_non_query('a')
        pg_executor.query_data('b')
        assert pg_executor.calls == 2
        assert pg_executor.time >= 0
