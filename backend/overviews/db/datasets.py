"""Dataset handles the overview algorithms read from and write to.

A dataset is a table of features with a unique integer identifier, a
geometry column in its original SRS (EPSG:4326), a projected geometry
column (EPSG:3857) and any number of attribute columns. Overview tables
additionally carry a ``_feature_count`` column. Preparing a table that way
happens upstream; these handles only assume it has been done.

The algorithms never talk to the database directly. They go through the
narrow ``DatasetProtocol``: extent and count queries for density sampling,
column descriptions and planner statistics for aggregation, and one
``materialize`` call that writes an overview table in a single
failure-atomic step.

Example:
    Handle on a PostGIS table:
        >>> from overviews.db import datasets
        >>> dataset = datasets.get_dataset(settings, "cities")
        >>> dataset.count_features((-1000.0, -1000.0, 1000.0, 1000.0))

    In-memory table for tests:
        >>> catalog = datasets.InMemoryCatalog()
        >>> dataset = catalog.create("cities", columns, rows)
        >>> dataset.analyze()
        >>> dataset.estimated_extent()
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import psycopg2.extensions
import structlog
from psycopg2 import sql

from overviews.core import config
from overviews.db import database
from overviews.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from overviews.services import reduce

logger = structlog.get_logger(__name__)

Row = dict[str, Any]


class DatasetProtocol(Protocol):
    """Protocol interface of a dataset table as seen by the algorithms.

    Attributes:
        name: Unqualified table name.
        settings: Settings providing column names and limits.
    """

    name: str
    settings: config.Settings

    def base(self) -> DatasetProtocol:
        """Return the base dataset (itself unless this is an overview)."""
        ...

    def columns(self) -> list[db_models.Column]:
        """Return the table columns in their physical order."""
        ...

    def estimated_extent(self) -> db_models.BBox | None:
        """Return the planner's extent estimate, None without statistics."""
        ...

    def analyze(self) -> None:
        """Refresh planner statistics of the table."""
        ...

    def geometry_types(self) -> list[str] | None:
        """Return the ``ST_<Type>`` names of a small geometry sample."""
        ...

    def count_features(self, bbox: db_models.BBox) -> int:
        """Count features whose projected bounding box overlaps ``bbox``."""
        ...

    def n_distinct(self, column: str) -> float | None:
        """Return the planner's distinct-value estimate, None if missing."""
        ...

    def materialize(
        self,
        plan: reduce.GridClusterPlan,
        table: str,
        replace: bool,
    ) -> str:
        """Write the reduction described by ``plan`` into ``table``.

        Args:
            plan: Reduction plan over this dataset.
            table: Unqualified name of the overview table.
            replace: Clear and refill an existing table instead of
                creating a new one.

        Returns:
            Qualified name of the written table.
        """
        ...


class PostgisDataset(DatasetProtocol):
    """PostgreSQL/PostGIS-backed dataset table.

    Each operation opens its own connection. The reduction runs as a single
    transaction, so a failure leaves the overview table as it was before.
    """

    EXTENT_SQL = """
    SELECT ST_XMin(e), ST_YMin(e), ST_XMax(e), ST_YMax(e)
      FROM (SELECT ST_EstimatedExtent(%s, %s, %s) AS e) AS ext;
    """

    COLUMNS_SQL = """
    SELECT a.attname, format_type(a.atttypid, NULL)
      FROM pg_attribute a
      JOIN pg_class c ON c.oid = a.attrelid
      JOIN pg_namespace n ON n.oid = c.relnamespace
     WHERE n.nspname = %s AND c.relname = %s
       AND a.attnum > 0 AND NOT a.attisdropped
     ORDER BY a.attnum;
    """

    N_DISTINCT_SQL = """
    SELECT n_distinct
      FROM pg_stats
     WHERE schemaname = %s AND tablename = %s AND attname = %s;
    """

    def __init__(
        self,
        settings: config.Settings,
        name: str,
        schema: str | None = None,
    ) -> None:
        """Initialize a handle on ``schema.name``.

        Args:
            settings: Application settings for database connection.
            name: Unqualified table name.
            schema: Schema of the table, defaults to the configured one.
        """
        self.settings = settings
        self.name = name
        self.schema = schema or settings.database_schema

    def _connection(self) -> psycopg2.extensions.connection:
        return database.get_connection(self.settings)

    def _table(self, name: str | None = None) -> sql.Identifier:
        return sql.Identifier(self.schema, name or self.name)

    def base(self) -> PostgisDataset:
        base_name = database.overview_base_table_name(
            self.name,
            self.settings.overview_prefix,
        )
        if base_name == self.name:
            return self
        return PostgisDataset(self.settings, base_name, self.schema)

    def columns(self) -> list[db_models.Column]:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.COLUMNS_SQL, (self.schema, self.name))
            return [
                db_models.Column(str(name), str(data_type))
                for name, data_type in cur.fetchall()
            ]

    def estimated_extent(self) -> db_models.BBox | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                self.EXTENT_SQL,
                (self.schema, self.name, self.settings.mercator_geom_column),
            )
            row = cur.fetchone()
        if row is None or any(v is None for v in row):
            return None
        xmin, ymin, xmax, ymax = map(float, row)
        return (xmin, ymin, xmax, ymax)

    def analyze(self) -> None:
        logger.info("Refreshing statistics", table=self.name)
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(sql.SQL("ANALYZE {}").format(self._table()))
            conn.commit()

    def geometry_types(self) -> list[str] | None:
        geom = sql.Identifier(self.settings.geom_column)
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                sql.SQL(
                    "SELECT array_agg(DISTINCT ST_GeometryType(g)) FROM ("
                    "SELECT {geom} AS g FROM {table} "
                    "WHERE {geom} IS NOT NULL LIMIT 10) AS sample"
                ).format(geom=geom, table=self._table())
            )
            row = cur.fetchone()
        if row is None or row[0] is None:
            return None
        return sorted(str(t) for t in row[0])

    def count_features(self, bbox: db_models.BBox) -> int:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                sql.SQL(
                    "SELECT count(*) FROM {table} "
                    "WHERE {geom} && ST_MakeEnvelope(%s, %s, %s, %s, 3857)"
                ).format(
                    table=self._table(),
                    geom=sql.Identifier(self.settings.mercator_geom_column),
                ),
                bbox,
            )
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def n_distinct(self, column: str) -> float | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.N_DISTINCT_SQL, (self.schema, self.name, column))
            row = cur.fetchone()
        if row is None or row[0] is None:
            return None
        return float(row[0])

    def materialize(
        self,
        plan: reduce.GridClusterPlan,
        table: str,
        replace: bool,
    ) -> str:
        target = self._table(table)
        statements = plan.statements(self._table(), target, replace)
        with self._connection() as conn, conn.cursor() as cur:
            # Replacing a table is not safe to run with parallel workers.
            cur.execute("SET LOCAL max_parallel_workers_per_gather = 0")
            for statement in statements:
                cur.execute(statement)
            conn.commit()
        return f"{self.schema}.{table}"


class InMemoryCatalog:
    """Named in-memory tables standing in for a database schema."""

    def __init__(self, settings: config.Settings | None = None) -> None:
        """Initialize an empty catalog."""
        self.settings = settings or config.get_settings()
        self._tables: dict[str, InMemoryDataset] = {}

    def create(
        self,
        name: str,
        columns: Sequence[db_models.Column],
        rows: Iterable[Row] = (),
    ) -> InMemoryDataset:
        """Create a table, failing if the name is taken.

        Raises:
            ValueError: if a table with that name exists.
        """
        if name in self._tables:
            raise ValueError(f"Table {name!r} already exists")
        dataset = InMemoryDataset(name, columns, rows, self)
        self._tables[name] = dataset
        return dataset

    def get(self, name: str) -> InMemoryDataset | None:
        """Return the table called ``name``, if any."""
        return self._tables.get(name)

    def drop(self, name: str) -> None:
        """Remove the table called ``name``."""
        del self._tables[name]

    def table_names(self) -> list[str]:
        """Return the names of all tables."""
        return list(self._tables)


class InMemoryDataset(DatasetProtocol):
    """Dataset rows kept in memory, for tests and local development.

    Geometry columns hold shapely geometries. Like the PostgreSQL planner,
    statistics (extent and distinct counts) only exist after ``analyze``
    and are not updated by later inserts.
    """

    def __init__(
        self,
        name: str,
        columns: Sequence[db_models.Column],
        rows: Iterable[Row],
        catalog: InMemoryCatalog,
    ) -> None:
        """Initialize the table with ``rows`` keyed by column name."""
        self.name = name
        self.catalog = catalog
        self.settings = catalog.settings
        self._columns = list(columns)
        self.rows: list[Row] = []
        self._extent: db_models.BBox | None = None
        self._n_distinct: dict[str, float] | None = None
        self.analyze_calls = 0
        self.insert(rows)

    def insert(self, rows: Iterable[Row]) -> None:
        """Append rows; columns missing from a row are stored as None."""
        names = [column.name for column in self._columns]
        self.rows.extend({name: row.get(name) for name in names} for row in rows)

    def base(self) -> InMemoryDataset:
        base_name = database.overview_base_table_name(
            self.name,
            self.settings.overview_prefix,
        )
        return self.catalog.get(base_name) or self

    def columns(self) -> list[db_models.Column]:
        return list(self._columns)

    def _geometries(self, column: str) -> Iterable[Any]:
        return (row[column] for row in self.rows if row[column] is not None)

    def estimated_extent(self) -> db_models.BBox | None:
        if self._n_distinct is None:
            return None
        return self._extent

    def analyze(self) -> None:
        self.analyze_calls += 1
        bounds = [
            geom.bounds
            for geom in self._geometries(self.settings.mercator_geom_column)
        ]
        if bounds:
            self._extent = (
                min(b[0] for b in bounds),
                min(b[1] for b in bounds),
                max(b[2] for b in bounds),
                max(b[3] for b in bounds),
            )
        else:
            self._extent = None
        self._n_distinct = {
            column.name: float(
                len({row[column.name] for row in self.rows} - {None})
            )
            for column in self._columns
            if column.data_type != "geometry"
        }

    def geometry_types(self) -> list[str] | None:
        sample = list(self._geometries(self.settings.geom_column))[:10]
        if not sample:
            return None
        return sorted({f"ST_{geom.geom_type}" for geom in sample})

    def count_features(self, bbox: db_models.BBox) -> int:
        xmin, ymin, xmax, ymax = bbox
        count = 0
        for geom in self._geometries(self.settings.mercator_geom_column):
            gxmin, gymin, gxmax, gymax = geom.bounds
            if gxmin <= xmax and gxmax >= xmin and gymin <= ymax and gymax >= ymin:
                count += 1
        return count

    def n_distinct(self, column: str) -> float | None:
        if self._n_distinct is None:
            return None
        return self._n_distinct.get(column)

    def materialize(
        self,
        plan: reduce.GridClusterPlan,
        table: str,
        replace: bool,
    ) -> str:
        rows = plan.apply(self.rows)
        if not replace:
            self.catalog.create(table, plan.output_columns(), rows)
            return table
        existing = self.catalog.get(table)
        if existing is None:
            raise ValueError(f"Table {table!r} does not exist")
        existing.rows = []
        existing.insert(rows)
        return table


def get_dataset(
    settings: config.Settings,
    name: str,
) -> DatasetProtocol:
    """Factory function to create a dataset handle.

    Args:
        settings: Application settings for database connection.
        name: Unqualified table name in the configured schema.

    Returns:
        PostgisDataset instance for production use.
    """
    return PostgisDataset(settings, name)
