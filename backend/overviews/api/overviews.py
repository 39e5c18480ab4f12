"""Overview management API endpoints.

This module provides REST API endpoints to list and drop the overview
levels of a dataset table, to compute its reference zoom level, and to
build one overview level with a reduction strategy. Building the whole
pyramid in one call is deprecated and answers 501 Not Implemented.

Example:
    List the overviews of a dataset:
        >>> response = client.get("/api/overviews/cities")
        >>> # [{"base_table": "cities", "z": 10,
        >>> #   "overview_table": "_vovw_10_cities"}, ...]

    Build level 10 from the reference level 11:
        >>> response = client.post(
        ...     "/api/overviews/cities/levels/10",
        ...     params={"ref_z": 11},
        ... )
"""

import dataclasses
import functools
from collections.abc import Callable
from typing import Any

import fastapi
import structlog

from overviews.core import config, errors
from overviews.db import database, datasets
from overviews.services import density, reduce

logger = structlog.get_logger(__name__)

router = fastapi.APIRouter(prefix="/api/overviews", tags=["overviews"])

DatasetFactory = Callable[[str], datasets.DatasetProtocol | None]


def _get_registry(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> database.OverviewRegistryProtocol:
    """Resolve the overview registry dependency.

    Args:
        settings: Application settings (injected via FastAPI Depends).

    Returns:
        OverviewRegistryProtocol implementation
            (PostgresOverviewRegistry in production).
    """
    return database.get_overview_registry(settings)


def _get_dataset_factory(
    settings: config.Settings = fastapi.Depends(config.get_settings),  # noqa: B008
) -> DatasetFactory:
    """Resolve the factory opening dataset handles by table name."""
    return functools.partial(datasets.get_dataset, settings)


def _open(factory: DatasetFactory, table: str) -> datasets.DatasetProtocol:
    dataset = factory(table)
    if dataset is None or not dataset.columns():
        raise fastapi.HTTPException(
            status_code=404,
            detail=f"Dataset {table!r} not found",
        )
    return dataset


def _http_error(exc: errors.OverviewError) -> fastapi.HTTPException:
    if isinstance(exc, errors.UnsupportedOperationError):
        status_code = 501
    else:
        status_code = 400
    logger.warning("Overview request failed", error=str(exc))
    return fastapi.HTTPException(status_code=status_code, detail=str(exc))


@router.get("/{table}")
def list_overviews(
    table: str,
    registry: database.OverviewRegistryProtocol = fastapi.Depends(_get_registry),  # noqa: B008
) -> list[dict[str, Any]]:
    """List the overview levels of a dataset, ordered by zoom level.

    Args:
        table: Base dataset table name.
        registry: Overview registry (injected via FastAPI Depends).

    Returns:
        One dictionary per level with base_table, z and overview_table.
    """
    return [dataclasses.asdict(level) for level in registry.overviews(table)]


@router.delete("/{table}")
def drop_overviews(
    table: str,
    registry: database.OverviewRegistryProtocol = fastapi.Depends(_get_registry),  # noqa: B008
) -> dict[str, list[dict[str, Any]]]:
    """Drop every overview table of a dataset.

    Returns:
        Dictionary listing the dropped levels.
    """
    dropped = registry.drop_overviews(table)
    return {"dropped": [dataclasses.asdict(level) for level in dropped]}


@router.get("/{table}/reference-zoom")
def reference_zoom(
    table: str,
    tolerance_px: float | None = None,
    factory: DatasetFactory = fastapi.Depends(_get_dataset_factory),  # noqa: B008
) -> dict[str, Any]:
    """Compute the reference zoom level of a dataset.

    Args:
        table: Base dataset table name.
        tolerance_px: Desired detail in pixels (optional).
        factory: Dataset handle factory (injected via FastAPI Depends).

    Returns:
        Dictionary with the table name and its reference zoom level, which
        is null when the dataset has no features.

    Raises:
        HTTPException: If the dataset does not exist (404) or the
            tolerance is invalid (400).
    """
    dataset = _open(factory, table)
    try:
        z = density.choose_reference_zoom(dataset, tolerance_px)
    except errors.OverviewError as exc:
        raise _http_error(exc) from exc
    return {"table": table, "tolerance_px": tolerance_px, "z": z}


@router.post("/{table}/levels/{overview_z}")
def build_overview_level(
    table: str,
    overview_z: int,
    ref_z: int,
    grid_px: float | None = None,
    strategy: str = reduce.ReduceStrategy.GRID_CLUSTER_CENTROID.value,
    registry: database.OverviewRegistryProtocol = fastapi.Depends(_get_registry),  # noqa: B008
    factory: DatasetFactory = fastapi.Depends(_get_dataset_factory),  # noqa: B008
) -> dict[str, Any]:
    """Build or rebuild one overview level of a dataset.

    The level is reduced from the overview registered at ``ref_z`` when
    there is one, otherwise from the base table itself. An existing
    overview at ``overview_z`` is cleared and refilled.

    Args:
        table: Base dataset table name.
        overview_z: Zoom level of the overview to build.
        ref_z: Zoom level of the table to reduce from.
        grid_px: Grid cell size in pixels (optional).
        strategy: Name of the reduction strategy.
        registry: Overview registry (injected via FastAPI Depends).
        factory: Dataset handle factory (injected via FastAPI Depends).

    Returns:
        The registered overview level.

    Raises:
        HTTPException: If the dataset does not exist (404), the parameters
            are invalid (400), the strategy does not apply to the dataset
            (422) or is disabled (501).
    """
    levels = registry.overviews(table)
    source = next(
        (level.overview_table for level in levels if level.z == ref_z),
        table,
    )
    exists = any(level.z == overview_z for level in levels)
    dataset = _open(factory, source)
    try:
        produced = reduce.reduce(
            strategy, dataset, ref_z, overview_z, grid_px, exists
        )
    except errors.OverviewError as exc:
        raise _http_error(exc) from exc
    if produced is None:
        raise fastapi.HTTPException(
            status_code=422,
            detail=(
                f"Strategy {strategy!r} does not apply to {source!r} "
                "(hint: use a different reduction strategy)"
            ),
        )
    overview_table = database.overview_table_name(
        table, overview_z, dataset.settings.overview_prefix
    )
    level = registry.register(table, overview_table, overview_z)
    return dataclasses.asdict(level)


@router.post("/{table}")
def create_overviews(
    table: str,
    tolerance_px: float | None = None,
    factory: DatasetFactory = fastapi.Depends(_get_dataset_factory),  # noqa: B008
) -> dict[str, Any]:
    """Build the whole overview pyramid of a dataset (deprecated).

    Raises:
        HTTPException: Always 501, the pyramid driver is disabled.
    """
    try:
        if tolerance_px is None:
            tables = reduce.create_overviews(factory(table))
        else:
            tables = reduce.create_overviews_with_tolerance(
                factory(table), tolerance_px
            )
    except errors.OverviewError as exc:
        raise _http_error(exc) from exc
    return {"overview_tables": tables}
