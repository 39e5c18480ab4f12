"""Reduction strategies producing one overview level from a finer table.

The supported strategy clusters point datasets with a uniform grid sized
in pixels of the target zoom level. All points falling in a grid cell
become one overview row placed at the centroid of the cell members, with
every attribute summarized by its aggregation rule and ``_feature_count``
holding the number of base features the row stands for. The overview has
the same columns, in the same order, as the table it was reduced from.

Other strategies (sampling, cell-center clustering, member-sample
clustering) and the pyramid drivers that chained reductions level by level
are kept as named entry points that raise ``UnsupportedOperationError``.

Example:
    >>> from overviews.services import reduce
    >>> table = reduce.reduce_grid_cluster_centroid(dataset, 12, 11)
    >>> table
    'public._vovw_11_cities'
    >>> reduce.reduce("sampling", dataset, 12, 11)
    Traceback (most recent call last):
    ...
    UnsupportedOperationError: Reduction strategy 'sampling' is disabled
"""

from __future__ import annotations

import dataclasses
import enum
import functools
import math
from typing import TYPE_CHECKING, Any

import pyproj
import shapely
import structlog
from psycopg2 import sql

from overviews.core import errors
from overviews.db import database
from overviews.db import models as db_models
from overviews.services import aggregation, xyz

if TYPE_CHECKING:
    from collections.abc import Iterable

    from overviews.core import config
    from overviews.db import datasets

logger = structlog.get_logger(__name__)

_DEPRECATION_HINT = (
    "build levels one at a time with reduce() and register them; "
    "listing and dropping overviews remain available"
)


@functools.cache
def _to_lonlat() -> pyproj.Transformer:
    return pyproj.Transformer.from_crs("EPSG:3857", "EPSG:4326", always_xy=True)


@dataclasses.dataclass(frozen=True)
class GridSpec:
    """Clustering grid for one overview zoom level.

    Attributes:
        overview_z: Zoom level of the overview.
        grid_px: Side of a grid cell in pixels of that level.
    """

    overview_z: int
    grid_px: float = 1.0

    @property
    def pixel_m(self) -> float:
        return xyz.resolution(self.overview_z)

    @property
    def grid_m(self) -> float:
        return self.grid_px * self.pixel_m

    @property
    def whole_pixels(self) -> bool:
        return float(self.grid_px).is_integer()

    def cell(self, x: float, y: float) -> tuple[int, int]:
        """Return the grid cell containing ``(x, y)``."""
        return math.floor(x / self.grid_m), math.floor(y / self.grid_m)

    def pixel_offset(self, center: float) -> float:
        """Return the shift moving a cell center onto a pixel center.

        Cells a whole number of pixels wide all start on pixel boundaries,
        so one shift fits every cell. Otherwise the shift depends on where
        the cell center falls within its pixel.
        """
        half_pixel = self.pixel_m / 2
        if self.whole_pixels:
            return half_pixel - math.fmod(self.grid_m / 2, self.pixel_m)
        return half_pixel - math.fmod(center, self.pixel_m)

    def cell_center(self, gx: int, gy: int) -> tuple[float, float]:
        """Return the center of cell ``(gx, gy)`` aligned to a pixel center."""
        cx = gx * self.grid_m + self.grid_m / 2
        cy = gy * self.grid_m + self.grid_m / 2
        return cx + self.pixel_offset(cx), cy + self.pixel_offset(cy)


@dataclasses.dataclass(frozen=True)
class GridClusterPlan:
    """Everything needed to reduce one table into one overview level.

    The plan is rendered as SQL for PostGIS tables and executed directly
    on rows for in-memory tables, with the same aggregation rules.

    Attributes:
        grid: Clustering grid.
        columns: Columns of the source table, in order.
        rules: Aggregation rule of every aggregable column.
        settings: Settings providing the column naming convention.
    """

    grid: GridSpec
    columns: tuple[db_models.Column, ...]
    rules: dict[str, aggregation.AggregationRule]
    settings: config.Settings

    @classmethod
    def for_dataset(
        cls,
        dataset: datasets.DatasetProtocol,
        grid: GridSpec,
    ) -> GridClusterPlan:
        """Plan the reduction of ``dataset`` with ``grid``."""
        return cls(
            grid=grid,
            columns=tuple(dataset.columns()),
            rules=aggregation.synthesize_rules(dataset),
            settings=dataset.settings,
        )

    @property
    def has_feature_count(self) -> bool:
        return any(
            c.name == self.settings.feature_count_column for c in self.columns
        )

    def output_columns(self) -> list[db_models.Column]:
        """Return the overview columns: the source ones plus the counter."""
        columns = list(self.columns)
        if not self.has_feature_count:
            columns.append(
                db_models.Column(self.settings.feature_count_column, "bigint")
            )
        return columns

    def _select_list(self) -> sql.Composable:
        s = self.settings
        centroid = sql.SQL(
            "ST_SetSRID(ST_MakePoint(_sum_of_x / _cluster_n, "
            "_sum_of_y / _cluster_n), 3857)"
        )
        items: list[sql.Composable] = []
        for column in self.columns:
            name = sql.Identifier(column.name)
            if column.name == s.geom_column:
                items.append(
                    sql.SQL("ST_Transform({}, 4326) AS {}").format(centroid, name)
                )
            elif column.name == s.mercator_geom_column:
                items.append(sql.SQL("{} AS {}").format(centroid, name))
            else:
                items.append(name)
        if not self.has_feature_count:
            items.append(
                sql.SQL("_cluster_features AS {}").format(
                    sql.Identifier(s.feature_count_column)
                )
            )
        return sql.SQL(", ").join(items)

    def query(self, source: sql.Composable) -> sql.Composable:
        """Return the clustering query reading from ``source``."""
        s = self.settings
        merc = sql.Identifier("f", s.mercator_geom_column)
        grid_m = sql.SQL(repr(self.grid.grid_m))
        aggregates = [rule.expression("f") for rule in self.rules.values()]
        return sql.SQL(
            "WITH clusters AS ("
            "SELECT {aggregates}"
            "count(*) AS _cluster_n, "
            "{features} AS _cluster_features, "
            "SUM(ST_X({merc})) AS _sum_of_x, "
            "SUM(ST_Y({merc})) AS _sum_of_y, "
            "floor(ST_Y({merc}) / {grid_m})::bigint AS _gy, "
            "floor(ST_X({merc}) / {grid_m})::bigint AS _gx, "
            "MIN({pkey}) AS {pkey_name} "
            "FROM {source} f GROUP BY _gx, _gy) "
            "SELECT {select_list} FROM clusters"
        ).format(
            aggregates=sql.SQL("").join(
                sql.SQL("{}, ").format(a) for a in aggregates
            ),
            features=(
                sql.SQL("SUM({})").format(
                    sql.Identifier("f", s.feature_count_column)
                )
                if self.has_feature_count
                else sql.SQL("count(*)")
            ),
            merc=merc,
            grid_m=grid_m,
            pkey=sql.Identifier("f", s.pkey_column),
            pkey_name=sql.Identifier(s.pkey_column),
            source=source,
            select_list=self._select_list(),
        )

    def statements(
        self,
        source: sql.Composable,
        target: sql.Composable,
        replace: bool,
    ) -> list[sql.Composable]:
        """Return the statements writing the overview into ``target``.

        They must run in a single transaction.
        """
        query = self.query(source)
        if replace:
            return [
                sql.SQL("DELETE FROM {}").format(target),
                sql.SQL("INSERT INTO {} {}").format(target, query),
            ]
        return [sql.SQL("CREATE TABLE {} AS {}").format(target, query)]

    def apply(self, rows: Iterable[datasets.Row]) -> list[datasets.Row]:
        """Cluster in-memory rows, returning the overview rows.

        Output rows are ordered by their representative identifier.
        """
        s = self.settings
        groups: dict[tuple[int, int] | None, list[datasets.Row]] = {}
        for row in rows:
            geom = row[s.mercator_geom_column]
            key = None if geom is None else self.grid.cell(geom.x, geom.y)
            groups.setdefault(key, []).append(row)

        output = [self._cluster_row(members) for members in groups.values()]
        return sorted(output, key=lambda row: row[s.pkey_column])

    def _cluster_row(self, members: list[datasets.Row]) -> datasets.Row:
        s = self.settings
        if self.has_feature_count:
            weights = [m[s.feature_count_column] or 0 for m in members]
        else:
            weights = [1] * len(members)

        geoms = [m[s.mercator_geom_column] for m in members]
        centroid = lonlat = None
        if all(g is not None for g in geoms):
            cx = sum(g.x for g in geoms) / len(geoms)
            cy = sum(g.y for g in geoms) / len(geoms)
            centroid = shapely.Point(cx, cy)
            lonlat = shapely.Point(*_to_lonlat().transform(cx, cy))

        row: dict[str, Any] = {}
        for column in self.columns:
            name = column.name
            if name == s.pkey_column:
                row[name] = min(m[name] for m in members)
            elif name == s.geom_column:
                row[name] = lonlat
            elif name == s.mercator_geom_column:
                row[name] = centroid
            else:
                values = [m[name] for m in members]
                row[name] = self.rules[name].reduce(values, weights)
        if not self.has_feature_count:
            row[s.feature_count_column] = len(members)
        return row


class ReduceStrategy(enum.Enum):
    """Named reduction strategies; only clustering to centroids is enabled."""

    SAMPLING = "sampling"
    GRID_CLUSTER = "grid_cluster"
    GRID_CLUSTER_CENTROID = "grid_cluster_centroid"
    GRID_CLUSTER_SAMPLE = "grid_cluster_sample"

    @property
    def supported(self) -> bool:
        return self is ReduceStrategy.GRID_CLUSTER_CENTROID


def _check_levels(
    dataset: datasets.DatasetProtocol,
    ref_z: int,
    overview_z: int,
    grid_px: float | None,
) -> None:
    max_level = dataset.settings.max_overview_level
    if not 0 <= overview_z <= max_level:
        raise errors.InvalidInputError(
            f"Overview level {overview_z} of {dataset.name!r} is outside "
            f"[0, {max_level}]"
        )
    if overview_z >= ref_z:
        raise errors.InvalidInputError(
            f"Overview level {overview_z} of {dataset.name!r} must be "
            f"coarser than the reference level {ref_z}"
        )
    if grid_px is not None and grid_px <= 0:
        raise errors.InvalidInputError(
            f"Grid size must be a positive number of pixels, got {grid_px}"
        )


def reduce_grid_cluster_centroid(
    dataset: datasets.DatasetProtocol | None,
    ref_z: int,
    overview_z: int,
    grid_px: float | None = None,
    exists: bool = False,
) -> str | None:
    """Reduce a point dataset into the overview for ``overview_z``.

    Args:
        dataset: Base dataset or finer overview to reduce.
        ref_z: Zoom level assigned to ``dataset``.
        overview_z: Zoom level of the overview, smaller than ``ref_z``.
        grid_px: Grid cell size in pixels, ``default_grid_px`` if None.
        exists: The overview table exists already and must be cleared and
            refilled instead of created.

    Returns:
        Qualified name of the overview table, or None when the strategy does
        not apply because the dataset does not hold only points.

    Raises:
        InvalidInputError: if the dataset is missing or the levels or grid
            size are out of range.
    """
    if dataset is None:
        raise errors.InvalidInputError("A dataset is required")
    _check_levels(dataset, ref_z, overview_z, grid_px)
    settings = dataset.settings

    geometry_types = dataset.geometry_types()
    if geometry_types != ["ST_Point"]:
        logger.info(
            "Grid cluster strategy does not apply",
            table=dataset.name,
            geometry_types=geometry_types,
        )
        return None

    grid = GridSpec(overview_z, grid_px or settings.default_grid_px)
    plan = GridClusterPlan.for_dataset(dataset, grid)
    base_name = database.overview_base_table_name(
        dataset.name,
        settings.overview_prefix,
    )
    table = database.overview_table_name(
        base_name,
        overview_z,
        settings.overview_prefix,
    )
    logger.info(
        "Replacing overview" if exists else "Creating overview",
        table=table,
        source=dataset.name,
        ref_z=ref_z,
        overview_z=overview_z,
        grid_m=grid.grid_m,
    )
    return dataset.materialize(plan, table, replace=exists)


def reduce(
    strategy: ReduceStrategy | str,
    dataset: datasets.DatasetProtocol | None,
    ref_z: int,
    overview_z: int,
    grid_px: float | None = None,
    exists: bool = False,
) -> str | None:
    """Run the named reduction strategy.

    Args:
        strategy: Strategy member or its name.
        dataset: Base dataset or finer overview to reduce.
        ref_z: Zoom level assigned to ``dataset``.
        overview_z: Zoom level of the overview, smaller than ``ref_z``.
        grid_px: Grid cell size in pixels for clustering strategies.
        exists: The overview table exists already.

    Returns:
        Qualified name of the overview table, or None if not applicable.

    Raises:
        InvalidInputError: if the strategy name is unknown.
        UnsupportedOperationError: if the strategy is disabled.
    """
    try:
        strategy = ReduceStrategy(strategy)
    except ValueError:
        raise errors.InvalidInputError(
            f"Unknown reduction strategy {strategy!r}",
            hint=f"choose one of {[s.value for s in ReduceStrategy]}",
        ) from None
    if not strategy.supported:
        raise errors.UnsupportedOperationError(
            f"Reduction strategy {strategy.value!r} is disabled",
            hint=f"use the {ReduceStrategy.GRID_CLUSTER_CENTROID.value!r} "
            "strategy",
        )
    return reduce_grid_cluster_centroid(
        dataset, ref_z, overview_z, grid_px, exists
    )


def create_overviews(
    dataset: datasets.DatasetProtocol | None,
    reduce_strategy: ReduceStrategy | str = ReduceStrategy.GRID_CLUSTER,
) -> list[str]:
    """Build the whole overview pyramid of a dataset (deprecated).

    Raises:
        UnsupportedOperationError: always.
    """
    raise errors.UnsupportedOperationError(
        "Creating overviews is deprecated", hint=_DEPRECATION_HINT
    )


def create_overviews_with_tolerance(
    dataset: datasets.DatasetProtocol | None,
    tolerance_px: float | None,
    reduce_strategy: ReduceStrategy | str = ReduceStrategy.GRID_CLUSTER,
) -> list[str]:
    """Build the overview pyramid for a pixel tolerance (deprecated).

    Raises:
        UnsupportedOperationError: always.
    """
    raise errors.UnsupportedOperationError(
        "Creating overviews is deprecated", hint=_DEPRECATION_HINT
    )
