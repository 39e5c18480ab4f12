"""Feature density estimation and reference zoom selection.

The reference zoom of a dataset is the coarsest level at which its full
resolution table can still be drawn without overcrowding: coarser levels
need overviews. It is derived from the maximum feature density (features
per squared EPSG:3857 unit) found by sampling the dataset with tiles.

Sampling starts from a set of *seed* tiles at the smallest zoom level
``z0`` at which at least ``n`` tiles (4 by default) are needed along each
side of the dataset extent. Each tile holding more than a minimum number of
features (500 by default) is split into its four children, down to
``z0 + nz`` levels, so the work concentrates where the data is dense. The
estimate is the largest ``count / tile_area`` among the explored tiles.

Example:
    >>> from overviews.services import density
    >>> density.estimate_feature_density(dataset, 4)
    0.0104
    >>> density.choose_reference_zoom(dataset)
    18
"""

from __future__ import annotations

import collections
import math
from typing import TYPE_CHECKING

import structlog

from overviews.core import errors
from overviews.db import models as db_models
from overviews.services import xyz

if TYPE_CHECKING:
    from collections.abc import Iterator

    from overviews.core import config
    from overviews.db import datasets

logger = structlog.get_logger(__name__)


def estimated_extent(
    dataset: datasets.DatasetProtocol,
) -> db_models.BBox | None:
    """Return the estimated extent of a dataset, refreshing stale statistics.

    The planner estimate is read first. If there is none, statistics are
    refreshed once; a table without any geometry has no extent, otherwise
    the estimate is read again.
    """
    extent = dataset.estimated_extent()
    if extent is None:
        logger.info("Extent statistics missing", table=dataset.name)
        dataset.analyze()
        if dataset.geometry_types() is None:
            return None
        extent = dataset.estimated_extent()
    return extent


def seed_zoom(bbox: db_models.BBox, settings: config.Settings) -> int:
    """Return the zoom level of the seed tiles covering ``bbox``.

    It is the smallest level at which ``density_seed_tiles`` tiles are
    needed along the longest side of the box, capped one level past the
    deepest overview. Degenerate boxes (a single position) get the cap.
    """
    xmin, ymin, xmax, ymax = bbox
    span = max(xmax - xmin, ymax - ymin)
    cap = settings.max_overview_level + 1
    if span <= 0:
        return cap
    ratio = span / (settings.density_seed_tiles * xyz.EARTH_CIRCUMFERENCE)
    return min(-math.floor(math.log2(ratio)), cap)


def sample_density(
    dataset: datasets.DatasetProtocol,
    nz: int,
) -> Iterator[db_models.DensitySample]:
    """Count the features of the tiles explored over a dataset.

    Tiles are processed breadth first from a work queue. A tile is split
    when it holds more than ``density_min_features`` features and lies
    above both ``z0 + nz`` and the maximum zoom level, so exploration always
    ends.

    Args:
        dataset: Dataset to sample.
        nz: Number of zoom levels to explore below the seed level.

    Yields:
        One sample per explored tile, parents before children.

    Raises:
        InvalidInputError: if ``nz`` is negative.
    """
    if nz < 0:
        raise errors.InvalidInputError(f"Sampling depth must be >= 0, got {nz}")
    settings = dataset.settings
    extent = estimated_extent(dataset)
    if extent is None:
        return

    z0 = seed_zoom(extent, settings)
    max_z = min(z0 + nz, settings.max_zoom_level)
    logger.debug("Sampling density", table=dataset.name, z0=z0, max_z=max_z)

    queue = collections.deque(xyz.tiles_covering(extent, z0))
    while queue:
        tile = queue.popleft()
        count = dataset.count_features(xyz.extent(*tile))
        yield db_models.DensitySample(tile.x, tile.y, tile.z, count)
        if count > settings.density_min_features and tile.z < max_z:
            queue.extend(xyz.children(tile))


def estimate_feature_density(
    dataset: datasets.DatasetProtocol | None,
    nz: int,
) -> float | None:
    """Estimate the maximum feature density of a dataset.

    Args:
        dataset: Dataset to measure.
        nz: Number of zoom levels to explore below the seed level.

    Returns:
        Features per squared EPSG:3857 unit of the densest explored tile,
        or None when the dataset has no features to measure.

    Raises:
        InvalidInputError: if the dataset is missing.
    """
    if dataset is None:
        raise errors.InvalidInputError("A dataset is required")
    densities = [
        sample.count / xyz.tile_area(sample.z)
        for sample in sample_density(dataset, nz)
        if sample.count > 0
    ]
    if not densities:
        logger.info("No features to measure", table=dataset.name)
        return None
    fd = max(densities)
    logger.info("Estimated feature density", table=dataset.name, density=fd)
    return fd


def reference_features_limit(
    tolerance_px: float | None,
    settings: config.Settings,
) -> float:
    """Return the desired number of features per tile.

    Without a tolerance (None or 0) it is ``reference_features_per_tile``.
    Otherwise it is half the number of ``tolerance_px`` sized cells in a
    256 pixel tile.

    Raises:
        InvalidInputError: if the tolerance is negative, or so large that
            not a single feature would be allowed per tile.
    """
    if not tolerance_px:
        return settings.reference_features_per_tile
    if tolerance_px < 0:
        raise errors.InvalidInputError(
            f"Tolerance must be a positive number of pixels, got {tolerance_px}"
        )
    limit = math.floor((xyz.TILE_SIZE_PX / tolerance_px) ** 2) / 2
    if not limit:
        raise errors.InvalidInputError(
            f"Tolerance of {tolerance_px} px leaves no features per tile",
            hint=f"tolerance must be at most {xyz.TILE_SIZE_PX} px",
        )
    return limit


def reference_zoom(fd: float, limit: float, settings: config.Settings) -> int:
    """Return the smallest zoom level whose tiles hold at most ``limit``.

    With ``c`` the world side, a tile at level ``z`` has area
    ``c*c*2**(-2z)``, so ``fd`` features per unit area put ``fd*c*c*2**(-2z)``
    features in a tile. Solving for ``z`` gives
    ``ceil(log2(c*c*fd/limit) / 2)``, capped one level past the deepest
    overview.
    """
    c = xyz.EARTH_CIRCUMFERENCE
    z = math.ceil(math.log2(c * c * fd / limit) / 2)
    return min(settings.max_overview_level + 1, z)


def choose_reference_zoom(
    dataset: datasets.DatasetProtocol | None,
    tolerance_px: float | None = None,
) -> int | None:
    """Assign the reference zoom level of a dataset.

    Args:
        dataset: Dataset to measure.
        tolerance_px: Desired detail in pixels; None or 0 uses the default
            number of features per tile.

    Returns:
        The reference zoom level, or None when the dataset has no features
        and therefore needs no overviews.

    Raises:
        InvalidInputError: if the dataset is missing or the tolerance is
            negative or larger than a tile.
    """
    if dataset is None:
        raise errors.InvalidInputError("A dataset is required")
    settings = dataset.settings
    limit = reference_features_limit(tolerance_px, settings)
    fd = estimate_feature_density(dataset, settings.density_depth)
    if fd is None:
        return None
    z = reference_zoom(fd, limit, settings)
    logger.info("Chose reference zoom", table=dataset.name, z=z, limit=limit)
    return z
