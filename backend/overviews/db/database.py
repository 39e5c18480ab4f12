"""Database helpers and the registry of overview tables.

Overview tables are not recorded in a table of their own: an overview of
dataset ``base`` for zoom level ``z`` is the table ``_vovw_<z>_<base>`` in
the same schema, so the catalog itself is the registry. The functions in
this module implement that naming convention and the registry operations
on top of it (list, register, drop), for PostgreSQL and in memory.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Protocol

import psycopg2
import psycopg2.extensions
import structlog
from psycopg2 import sql

from overviews.core import errors
from overviews.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable

    from overviews.core import config
    from overviews.db import datasets

logger = structlog.get_logger(__name__)


def overview_table_name(base_table: str, z: int, prefix: str = "_vovw_") -> str:
    """Return the name of the overview of ``base_table`` for level ``z``."""
    return f"{prefix}{z}_{base_table}"


def _overview_pattern(prefix: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(prefix)}(\d+)_(.+)$")


def overview_table_z(table_name: str, prefix: str = "_vovw_") -> int | None:
    """Return the zoom level encoded in an overview table name, if any."""
    match = _overview_pattern(prefix).match(table_name)
    return int(match.group(1)) if match else None


def overview_base_table_name(table_name: str, prefix: str = "_vovw_") -> str:
    """Return the base dataset name of an overview table.

    Names that do not follow the overview convention are base tables
    already and are returned unchanged.
    """
    match = _overview_pattern(prefix).match(table_name)
    return match.group(2) if match else table_name


def is_overview_table_of(
    base_table: str,
    table_name: str,
    prefix: str = "_vovw_",
) -> bool:
    """Tell whether ``table_name`` is an overview of ``base_table``."""
    match = _overview_pattern(prefix).match(table_name)
    return match is not None and match.group(2) == base_table


def _levels(
    base_table: str,
    table_names: Iterable[str],
    prefix: str,
) -> list[db_models.OverviewLevel]:
    levels = []
    for name in table_names:
        z = overview_table_z(name, prefix)
        if z is not None and is_overview_table_of(base_table, name, prefix):
            levels.append(db_models.OverviewLevel(base_table, z, name))
    return sorted(levels, key=lambda level: level.z)


class OverviewRegistryProtocol(Protocol):
    """Protocol interface for enumerating and dropping overview tables.

    Implementations answer from the PostgreSQL catalog (production) or from
    an in-memory catalog (testing).
    """

    def overviews(self, base_table: str) -> list[db_models.OverviewLevel]: ...

    def overviews_for(
        self,
        base_tables: Iterable[str],
    ) -> list[db_models.OverviewLevel]: ...

    def register(
        self,
        base_table: str,
        overview_table: str,
        z: int,
    ) -> db_models.OverviewLevel: ...

    def drop_overviews(
        self,
        base_table: str,
    ) -> list[db_models.OverviewLevel]: ...


class _RegistryBase(OverviewRegistryProtocol):
    """Operations shared by every registry on top of ``overviews``."""

    prefix: str

    def overviews_for(
        self,
        base_tables: Iterable[str],
    ) -> list[db_models.OverviewLevel]:
        """List the overviews of several datasets, ordered by base and z.

        Args:
            base_tables: Names of the base dataset tables.

        Returns:
            Overview levels of every dataset, grouped by base table name.
        """
        levels: list[db_models.OverviewLevel] = []
        for base_table in sorted(set(base_tables)):
            levels.extend(self.overviews(base_table))
        return levels

    def register(
        self,
        base_table: str,
        overview_table: str,
        z: int,
    ) -> db_models.OverviewLevel:
        """Record an overview table produced by a reduction strategy.

        The catalog is the registry, so registering only checks that the
        table follows the naming convention for ``base_table`` and ``z``.

        Raises:
            InvalidInputError: if the name does not match the convention.
        """
        expected = overview_table_name(base_table, z, self.prefix)
        if overview_table != expected:
            raise errors.InvalidInputError(
                f"Table {overview_table!r} is not the level {z} overview "
                f"of {base_table!r}",
                hint=f"name it {expected!r}",
            )
        return db_models.OverviewLevel(base_table, z, overview_table)


class InMemoryOverviewRegistry(_RegistryBase):
    """Registry over an in-memory catalog, for tests and local development.

    Data is lost when the process exits.
    """

    def __init__(
        self,
        catalog: datasets.InMemoryCatalog,
        prefix: str = "_vovw_",
    ) -> None:
        """Initialize the registry over ``catalog``."""
        self.catalog = catalog
        self.prefix = prefix

    def overviews(self, base_table: str) -> list[db_models.OverviewLevel]:
        """Return the overviews of ``base_table`` ordered by zoom level."""
        return _levels(base_table, self.catalog.table_names(), self.prefix)

    def drop_overviews(
        self,
        base_table: str,
    ) -> list[db_models.OverviewLevel]:
        """Drop every overview of ``base_table`` from the catalog."""
        dropped = self.overviews(base_table)
        for level in dropped:
            self.catalog.drop(level.overview_table)
            logger.info(
                "Dropped overview",
                z=level.z,
                overview_table=level.overview_table,
            )
        return dropped


class PostgresOverviewRegistry(_RegistryBase):
    """Registry reading overview tables from the PostgreSQL catalog.

    Overview tables live in the same schema as their base dataset.
    """

    LIST_TABLES_SQL = """
    SELECT table_name
      FROM information_schema.tables
     WHERE table_schema = %s
       AND table_type = 'BASE TABLE'
       AND table_name LIKE %s
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize registry with database settings.

        Args:
            settings: Application settings containing database connection
                URL, schema and overview prefix.
        """
        self.settings = settings
        self.schema = settings.database_schema
        self.prefix = settings.overview_prefix

    def _connection(self) -> psycopg2.extensions.connection:
        return get_connection(self.settings)

    def overviews(self, base_table: str) -> list[db_models.OverviewLevel]:
        """Return the overviews of ``base_table`` ordered by zoom level."""
        like = self.prefix.replace("_", r"\_") + "%"
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.LIST_TABLES_SQL, (self.schema, like))
            names = [str(row[0]) for row in cur.fetchall()]
        return _levels(base_table, names, self.prefix)

    def drop_overviews(
        self,
        base_table: str,
    ) -> list[db_models.OverviewLevel]:
        """Drop every overview table of ``base_table`` in one transaction."""
        dropped = self.overviews(base_table)
        if not dropped:
            return dropped
        with self._connection() as conn, conn.cursor() as cur:
            for level in dropped:
                cur.execute(
                    sql.SQL("DROP TABLE {}").format(
                        sql.Identifier(self.schema, level.overview_table)
                    )
                )
                logger.info(
                    "Dropped overview",
                    z=level.z,
                    overview_table=level.overview_table,
                )
            conn.commit()
        return dropped


def get_overview_registry(
    settings: config.Settings,
) -> OverviewRegistryProtocol:
    """Factory function to create an overview registry.

    Args:
        settings: Application settings for database connection.

    Returns:
        PostgresOverviewRegistry instance for production use.
    """
    return PostgresOverviewRegistry(settings)


def get_connection(
    settings: config.Settings,
) -> psycopg2.extensions.connection:
    """Create a synchronous psycopg2 extensions connection.

    Args:
        settings: Application settings containing database connection URL.

    Returns:
        psycopg2 extensions connection object for direct database access.
    """
    return psycopg2.connect(str(settings.database_url))
