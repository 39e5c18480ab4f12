"""XYZ tile grid endpoints.

This module exposes the tile grid math used to size overview levels: the
ground resolution of a zoom level and the EPSG:3857 extent of a tile.

Example:
    Ground size of a pixel at zoom level 10:
        >>> response = client.get("/tiles/10/resolution")
        >>> response.json()
        >>> # {"z": 10, "resolution": 152.8740565703525}

    Extent of a tile:
        >>> response = client.get("/tiles/1/0/0/extent")
        >>> response.json()["bbox"]
        >>> # [-20037508.342789244, 0.0, 0.0, 20037508.342789244]
"""

from typing import Any

import fastapi

from overviews.services import xyz

router = fastapi.APIRouter(prefix="/tiles", tags=["tiles"])


@router.get("/{z}/resolution")
async def resolution(z: int) -> dict[str, Any]:
    """Return the ground units per pixel at zoom level ``z``.

    Negative levels are accepted: they describe resolutions coarser than
    the whole world in one tile.

    Raises:
        HTTPException: If the resolution of the level is not representable
            as a positive float (400).
    """
    try:
        value = xyz.resolution(z)
    except OverflowError:
        value = 0.0
    if not value:
        raise fastapi.HTTPException(
            status_code=400,
            detail=f"Zoom level {z} is out of range",
        )
    return {"z": z, "resolution": value}


@router.get("/{z}/{x}/{y}/extent")
async def tile_extent(z: int, x: int, y: int) -> dict[str, Any]:
    """Return the EPSG:3857 bounding box of tile ``(x, y, z)``.

    Args:
        z: Zoom level (0 or more).
        x: Tile column in ``[0, 2**z)``.
        y: Tile row in ``[0, 2**z)``, counted from the top.

    Returns:
        Dictionary with the tile address and its bbox as
        [minx, miny, maxx, maxy].

    Raises:
        HTTPException: If the address lies outside the pyramid (400).
    """
    if z < 0 or not (0 <= x < 2**z and 0 <= y < 2**z):
        raise fastapi.HTTPException(
            status_code=400,
            detail=f"Tile {z}/{x}/{y} is outside the pyramid",
        )
    return {"z": z, "x": x, "y": y, "bbox": list(xyz.extent(x, y, z))}
