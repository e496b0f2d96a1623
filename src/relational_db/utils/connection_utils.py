"""
Connection diagnostics for a running connection manager.
"""

import logging
import time
from typing import Any, Dict

from sqlalchemy.exc import SQLAlchemyError

from ..core.connection import ConnectionManager
from ..exceptions import RelationalDBError
from ..security import sanitize_log_message

logger = logging.getLogger(__name__)


class ConnectionUtils:
    """Utilities for connection testing and monitoring"""

    @staticmethod
    async def test_connection(manager: ConnectionManager) -> Dict[str, Any]:
        """
        Test database connection and return status information

        Args:
            manager: Initialized connection manager

        Returns:
            Dictionary with connection test results
        """
        result = {
            'success': False,
            'error': None,
            'response_time_ms': None,
            'database_type': manager.vendor.value,
            'database_version': None,
        }

        start_time = time.time()

        try:
            await manager.execute(manager.strategy.health_check_sql)
        except (SQLAlchemyError, OSError, RelationalDBError) as e:
            result['error'] = sanitize_log_message(str(e))
            result['response_time_ms'] = round((time.time() - start_time) * 1000, 2)
            return result

        result['success'] = True
        result['response_time_ms'] = round((time.time() - start_time) * 1000, 2)

        try:
            version = await manager.execute(manager.strategy.version_sql)
            if version.rows:
                result['database_version'] = next(iter(version.rows[0].values()))
        except SQLAlchemyError as e:
            logger.debug(f"Could not get database version: {e}")

        return result

    @staticmethod
    def get_connection_info(manager: ConnectionManager) -> Dict[str, Any]:
        """
        Get connection details with the password masked

        Args:
            manager: Connection manager, initialized or not

        Returns:
            Dictionary with connection details
        """
        metrics = manager.get_pool_metrics()
        settings = manager.settings
        return {
            'url': settings.masked_url,
            'vendor': manager.vendor.value,
            'driver': settings.url.drivername,
            'state': manager.state.value,
            'pool_total': metrics.total,
            'pool_active': metrics.active,
            'pool_idle': metrics.idle,
            'pool_waiting': metrics.waiting,
            'pool_max_size': settings.max_size,
        }

    @staticmethod
    async def monitor_connection_health(manager: ConnectionManager) -> Dict[str, Any]:
        """
        Combine a connection test with pool statistics

        Returns:
            Health status information
        """
        health_info = {
            'timestamp': time.time(),
            'pool_status': 'unknown',
            'active_connections': 0,
            'total_connections': 0,
            'errors': [],
        }

        test_result = await ConnectionUtils.test_connection(manager)
        if test_result['success']:
            health_info['pool_status'] = 'healthy'
        else:
            health_info['pool_status'] = 'unhealthy'
            health_info['errors'].append(test_result['error'])

        metrics = manager.get_pool_metrics()
        health_info['active_connections'] = metrics.active
        health_info['total_connections'] = metrics.total
        return health_info
