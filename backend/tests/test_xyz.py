"""Unit tests for the EPSG:3857 tile grid math.

This module validates that:
    - Pixel resolution halves with every zoom level and a zoom 0 tile spans
      the world circumference, negative levels included,
    - Tile extents are exact: adjacent tiles share boundaries and the four
      children of a tile partition it,
    - Covering a bounding box yields the intersecting tiles, clamped to the
      world.

See Also:
    - backend/overviews/services/xyz.py for the implementation.
"""

from __future__ import annotations

import pytest

from overviews.db import models as db_models
from overviews.services import xyz

C = xyz.EARTH_CIRCUMFERENCE


def test_resolution_zoom_zero_spans_world() -> None:
    """Test that a 256 pixel tile at zoom 0 covers the circumference."""
    assert xyz.resolution(0) * 256 == pytest.approx(C)
    assert xyz.tile_size(0) == pytest.approx(C)
    assert xyz.tile_area(0) == pytest.approx(C * C)


@pytest.mark.parametrize("z", [-8, -1, 0, 1, 10, 23, 29])
def test_resolution_halves_per_level(z: int) -> None:
    """Test that each zoom level halves the ground size of a pixel."""
    assert xyz.resolution(z + 1) == pytest.approx(xyz.resolution(z) / 2)
    assert xyz.tile_area(z + 1) == pytest.approx(xyz.tile_area(z) / 4)


def test_resolution_negative_zoom() -> None:
    """Test that negative levels are coarser than the whole world."""
    assert xyz.resolution(-8) == pytest.approx(C)
    assert xyz.resolution(10) == pytest.approx(152.8740565703525)


def test_resolution_extreme_zoom() -> None:
    """Test levels near and beyond the float range."""
    assert xyz.resolution(-1000) == xyz.resolution(0) * 2.0**1000
    assert xyz.resolution(1000) == xyz.resolution(0) / 2.0**1000
    assert xyz.resolution(1100) == 0.0
    with pytest.raises(OverflowError):
        xyz.resolution(-1100)


def test_extent_world_tile() -> None:
    """Test that tile 0/0/0 is the whole Web Mercator square."""
    xmin, ymin, xmax, ymax = xyz.extent(0, 0, 0)
    o = xyz.ORIGIN_SHIFT
    assert (xmin, ymin, xmax, ymax) == pytest.approx((-o, -o, o, o))


def test_extent_rows_grow_southward() -> None:
    """Test that row 0 is the northern half at zoom 1."""
    o = xyz.ORIGIN_SHIFT
    assert xyz.extent(0, 0, 1) == pytest.approx((-o, 0.0, 0.0, o))
    assert xyz.extent(1, 1, 1) == pytest.approx((0.0, -o, o, 0.0))


def test_extent_adjacent_tiles_share_boundaries() -> None:
    """Test that neighboring tiles meet exactly, without gaps."""
    z = 12
    for x, y in [(0, 0), (1000, 2000), (4094, 4094)]:
        here = xyz.extent(x, y, z)
        east = xyz.extent(x + 1, y, z)
        south = xyz.extent(x, y + 1, z)
        assert here[2] == east[0]
        assert here[1] == south[3]


def test_children_partition_parent() -> None:
    """Test that the four children cover exactly the parent tile."""
    parent = db_models.Tile(5, 9, 4)
    kids = xyz.children(parent)
    assert len(kids) == 4
    assert {k.z for k in kids} == {5}
    extents = [xyz.extent(*k) for k in kids]
    pxmin, pymin, pxmax, pymax = xyz.extent(*parent)
    assert min(e[0] for e in extents) == pytest.approx(pxmin)
    assert min(e[1] for e in extents) == pytest.approx(pymin)
    assert max(e[2] for e in extents) == pytest.approx(pxmax)
    assert max(e[3] for e in extents) == pytest.approx(pymax)
    assert sum((e[2] - e[0]) * (e[3] - e[1]) for e in extents) == (
        pytest.approx(xyz.tile_area(4))
    )


def test_children_order() -> None:
    """Test the order in which children are produced."""
    kids = xyz.children(db_models.Tile(1, 2, 3))
    assert [(k.x, k.y) for k in kids] == [(2, 4), (2, 5), (3, 5), (3, 4)]


def test_tiles_covering_world() -> None:
    """Test that the whole world at zoom 1 needs all four tiles."""
    o = xyz.ORIGIN_SHIFT
    tiles = list(xyz.tiles_covering((-o, -o, o, o), 1))
    assert tiles == [
        db_models.Tile(0, 0, 1),
        db_models.Tile(1, 0, 1),
        db_models.Tile(0, 1, 1),
        db_models.Tile(1, 1, 1),
    ]


def test_tiles_covering_small_box() -> None:
    """Test that a box inside one tile yields only that tile."""
    side = xyz.tile_size(10)
    bbox = (side * 0.25, side * 0.25, side * 0.75, side * 0.75)
    assert list(xyz.tiles_covering(bbox, 10)) == [db_models.Tile(512, 511, 10)]


def test_tiles_covering_clamps_to_world() -> None:
    """Test that boxes past the world edge only yield border tiles."""
    o = xyz.ORIGIN_SHIFT
    tiles = list(xyz.tiles_covering((o, o, 2 * o, 2 * o), 2))
    assert tiles == [db_models.Tile(3, 0, 2)]
