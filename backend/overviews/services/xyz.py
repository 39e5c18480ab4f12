"""Tile grid math for the EPSG:3857 power-of-two pyramid.

The world is a square of side ``2 * ORIGIN_SHIFT`` (the equatorial
circumference of the Web Mercator sphere) divided into ``2**z`` by ``2**z``
tiles of 256 pixels at zoom level ``z``. Tile rows grow downward from the
top (north) edge, matching the XYZ raster tile convention.

Every function here is pure and accepts any integer zoom level, negative
ones included: ``resolution(-8)`` is the ground size of a 256 pixel tile
spanning the whole world, i.e. the circumference itself. Levels beyond
the float range make ``resolution`` raise ``OverflowError`` (very negative
``z``) or return 0.0 (very large ``z``).

Example:
    >>> from overviews.services import xyz
    >>> xyz.resolution(0) * 256 == xyz.EARTH_CIRCUMFERENCE
    True
    >>> xyz.extent(0, 0, 1)
    (-20037508.342789244, 0.0, 0.0, 20037508.342789244)
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from overviews.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Iterator

EARTH_RADIUS = 6378137.0
EARTH_CIRCUMFERENCE = 2.0 * math.pi * EARTH_RADIUS
TILE_SIZE_PX = 256
ORIGIN_SHIFT = EARTH_CIRCUMFERENCE / 2.0


def resolution(z: int) -> float:
    """Return ground units per pixel at zoom level ``z``."""
    return math.ldexp(EARTH_CIRCUMFERENCE / TILE_SIZE_PX, -z)


def tile_size(z: int) -> float:
    """Return the ground side length of a tile at zoom level ``z``."""
    return TILE_SIZE_PX * resolution(z)


def tile_area(z: int) -> float:
    """Return the ground area of a tile at zoom level ``z``."""
    side = tile_size(z)
    return side * side


def extent(x: int, y: int, z: int) -> db_models.BBox:
    """Return the ground rectangle covered by tile ``(x, y, z)``.

    Args:
        x: Tile column, counted eastward from the antimeridian.
        y: Tile row, counted southward from the top edge of the world.
        z: Zoom level.

    Returns:
        ``(xmin, ymin, xmax, ymax)`` in EPSG:3857 units. Adjacent tiles share
        their boundary coordinates exactly and the four children of a tile
        partition it.
    """
    side = tile_size(z)
    xmin = -ORIGIN_SHIFT + x * side
    ymax = ORIGIN_SHIFT - y * side
    return (xmin, ymax - side, xmin + side, ymax)


def children(tile: db_models.Tile) -> tuple[db_models.Tile, ...]:
    """Return the four tiles one level down that partition ``tile``."""
    x, y, z = tile
    return tuple(
        db_models.Tile(2 * x + dx, 2 * y + dy, z + 1)
        for dx, dy in ((0, 0), (0, 1), (1, 1), (1, 0))
    )


def tiles_covering(bbox: db_models.BBox, z: int) -> Iterator[db_models.Tile]:
    """Yield the tiles of level ``z`` intersecting ``bbox``, row by row.

    Tile indices are clamped to the world, so boxes reaching past its edge
    yield the border tiles only.
    """
    xmin, ymin, xmax, ymax = bbox
    side = tile_size(z)
    last = 2**z - 1 if z >= 0 else 0

    def _index(offset: float) -> int:
        return min(max(math.floor(offset / side), 0), last)

    x0, x1 = _index(xmin + ORIGIN_SHIFT), _index(xmax + ORIGIN_SHIFT)
    y0, y1 = _index(ORIGIN_SHIFT - ymax), _index(ORIGIN_SHIFT - ymin)
    for y in range(y0, y1 + 1):
        for x in range(x0, x1 + 1):
            yield db_models.Tile(x, y, z)