"""
FastAPI dependency injection module for the pivot report backend.

Provides reusable dependencies so routers stay decoupled from infrastructure:

- get_settings_dependency / SettingsDep: the cached Settings singleton
- get_row_source / RowSourceDep: the flat-row source behind the tree queries
  (PostgreSQL via asyncpg in production)

In tests, override either dependency with:

    app.dependency_overrides[get_row_source] = lambda: FrameRowSource(ads_df, sales_df)
"""

from typing import Annotated

from fastapi import Depends

from pivot_report.core.config import Settings, get_settings


# =============================================================================
# Settings Dependency
# =============================================================================

def get_settings_dependency() -> Settings:
    """Return the Settings singleton (thin wrapper so tests can override it)."""
    return get_settings()


# =============================================================================
# Row Source Dependency
# =============================================================================

def get_row_source():
    """
    Return the flat-row source used by the tree endpoints.

    Imported lazily: the services layer depends on core, not the other way.
    """
    from pivot_report.services.row_source import DatabaseRowSource

    return DatabaseRowSource()


# =============================================================================
# Type Aliases for Dependency Injection
# =============================================================================

# Usage: async def endpoint(settings: SettingsDep)
SettingsDep = Annotated[Settings, Depends(get_settings_dependency)]

# Usage: async def endpoint(rows: RowSourceDep)
RowSourceDep = Annotated[object, Depends(get_row_source)]
