"""
Core infrastructure package for the pivot report backend.

Provides:
- Configuration management via pydantic-settings
- Async PostgreSQL connectivity via asyncpg (warehouse + CRM pools)
- FastAPI dependency injection utilities

Re-exports key components so callers can write:

    from pivot_report.core import get_settings, get_db_pool, SettingsDep
"""

# =============================================================================
# Re-exports from pivot_report.core.config
# =============================================================================
from pivot_report.core.config import Settings, get_settings

# =============================================================================
# Re-exports from pivot_report.core.database
# =============================================================================
from pivot_report.core.database import (
    init_db,
    close_db,
    get_db_pool,
    get_crm_pool,
    execute_query,
    DatabaseNotConfiguredError,
)

# =============================================================================
# Re-exports from pivot_report.core.dependencies
# =============================================================================
from pivot_report.core.dependencies import (
    get_settings_dependency,
    get_row_source,
    SettingsDep,
    RowSourceDep,
)

__all__ = [
    # Configuration management
    'Settings',
    'get_settings',
    # Database pool lifecycle
    'init_db',
    'close_db',
    'get_db_pool',
    'get_crm_pool',
    'execute_query',
    'DatabaseNotConfiguredError',
    # FastAPI dependency injection
    'get_settings_dependency',
    'get_row_source',
    'SettingsDep',
    'RowSourceDep',
]
