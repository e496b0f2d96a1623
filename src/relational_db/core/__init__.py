"""
Core database components.

This module contains the building blocks every operation runs on:
- Connection management and pooling
- Statements and execution results
- Transactions and savepoints
"""

from .connection import ConnectionManager, ConnectionState, ReservedConnection
from .pool import ConnectionPool, PoolMetrics
from .statement import ExecutionResult, Statement, compile_raw_statement
from .transaction import (
    IsolationLevel, Transaction, TransactionManager, TransactionOptions,
    TransactionState, with_transaction
)

__all__ = [
    'ConnectionManager',
    'ConnectionState',
    'ReservedConnection',
    'ConnectionPool',
    'PoolMetrics',
    'ExecutionResult',
    'Statement',
    'compile_raw_statement',
    'IsolationLevel',
    'Transaction',
    'TransactionManager',
    'TransactionOptions',
    'TransactionState',
    'with_transaction',
]
