"""Pytest configuration exposing the overviews package and table fixtures."""

from __future__ import annotations

import pathlib
import sys
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import pyproj
import pytest
import shapely

BACKEND_ROOT = pathlib.Path(__file__).resolve().parent

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from overviews.db import datasets  # noqa: E402
from overviews.db import models as db_models  # noqa: E402

POINT_COLUMNS = (
    db_models.Column("cartodb_id", "integer"),
    db_models.Column("the_geom", "geometry"),
    db_models.Column("the_geom_webmercator", "geometry"),
)

Attributes = Mapping[str, tuple[str, Sequence[Any]]]
PointTableFactory = Callable[..., datasets.InMemoryDataset]


@pytest.fixture
def point_table() -> PointTableFactory:
    """Return a factory creating in-memory point tables.

    The factory takes a catalog, a table name, EPSG:3857 coordinates and
    optional attributes mapping a column name to its type and one value per
    point. Identifiers are numbered from 1 in coordinate order.
    """
    to_lonlat = pyproj.Transformer.from_crs(
        "EPSG:3857", "EPSG:4326", always_xy=True
    )

    def create(
        catalog: datasets.InMemoryCatalog,
        name: str,
        coords: Sequence[tuple[float, float]],
        attributes: Attributes | None = None,
    ) -> datasets.InMemoryDataset:
        attributes = attributes or {}
        columns = list(POINT_COLUMNS) + [
            db_models.Column(column, data_type)
            for column, (data_type, _) in attributes.items()
        ]
        rows = []
        for i, (x, y) in enumerate(coords):
            row = {
                "cartodb_id": i + 1,
                "the_geom": shapely.Point(*to_lonlat.transform(x, y)),
                "the_geom_webmercator": shapely.Point(x, y),
            }
            for column, (_, values) in attributes.items():
                row[column] = values[i]
            rows.append(row)
        return catalog.create(name, columns, rows)

    return create
