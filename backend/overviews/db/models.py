"""Data models shared by the dataset handles, registry and algorithms.

All coordinates are EPSG:3857 (Web Mercator) ground units unless noted.

Example:
    Describing the columns of a dataset:
        >>> from overviews.db.models import Column
        >>> columns = [
        ...     Column("cartodb_id", "integer"),
        ...     Column("the_geom", "geometry"),
        ...     Column("the_geom_webmercator", "geometry"),
        ...     Column("name", "character varying"),
        ... ]

    A registered overview level:
        >>> from overviews.db.models import OverviewLevel
        >>> level = OverviewLevel("cities", 5, "_vovw_5_cities")
"""

from __future__ import annotations

import dataclasses
from typing import NamedTuple

BBox = tuple[float, float, float, float]


class Tile(NamedTuple):
    """Address of a tile in the XYZ pyramid (y grows downward)."""

    x: int
    y: int
    z: int


class DensitySample(NamedTuple):
    """Feature count of one tile explored while estimating density."""

    x: int
    y: int
    z: int
    count: int


@dataclasses.dataclass(frozen=True)
class Column:
    """Catalog description of a dataset column.

    Attributes:
        name: Column name.
        data_type: Type name without modifiers, as reported by
            ``format_type(atttypid, NULL)`` (e.g. "integer", "text",
            "character varying", "double precision"). User-defined types
            such as enums are reported by name, e.g. "mood".
    """

    name: str
    data_type: str


@dataclasses.dataclass(frozen=True)
class OverviewLevel:
    """An overview table registered for a base dataset.

    Attributes:
        base_table: Unqualified name of the base dataset table.
        z: Zoom level the overview is meant for.
        overview_table: Unqualified name of the overview table.
    """

    base_table: str
    z: int
    overview_table: str
