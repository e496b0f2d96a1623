"""
Database utilities
"""

from .error_utils import classify_driver_error, wrap_execution_error
from .connection_utils import ConnectionUtils
from .type_mapping import MappedType, TypeMapper

__all__ = [
    'classify_driver_error',
    'wrap_execution_error',
    'ConnectionUtils',
    'MappedType',
    'TypeMapper',
]
