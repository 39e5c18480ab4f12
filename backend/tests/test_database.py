"""Tests for the overview registry, naming convention and dataset handles.

This module contains unit tests for:
    - The ``_vovw_<z>_<base>`` naming helpers,
    - InMemoryOverviewRegistry: listing, registering and dropping overviews
      over an in-memory catalog,
    - PostgresOverviewRegistry and PostgisDataset: the SQL they issue,
      checked against fake psycopg2 connections,
    - InMemoryCatalog and InMemoryDataset statistics behavior.

All tests are self-contained and do not require a running database.
"""

from __future__ import annotations

from typing import Any

import psycopg2.extensions
import pytest
import shapely
from psycopg2 import sql

from overviews.core import config, errors
from overviews.db import database, datasets
from overviews.db import models as db_models
from overviews.services import aggregation, reduce


class FakeCursor:
    """Cursor recording executed statements and replaying results."""

    def __init__(self, conn: FakeConn) -> None:
        self.conn = conn

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *args: Any) -> None:
        pass

    def execute(self, query: Any, params: Any = None) -> None:
        self.conn.executed.append((query, params))

    def fetchone(self) -> Any:
        return self.conn.results.pop(0)

    def fetchall(self) -> Any:
        return self.conn.results.pop(0)


class FakeConn:
    """Connection handing out FakeCursor instances."""

    def __init__(self, *results: Any) -> None:
        self.results = list(results)
        self.executed: list[tuple[Any, Any]] = []
        self.commits = 0

    def __enter__(self) -> FakeConn:
        return self

    def __exit__(self, *args: Any) -> None:
        pass

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        self.commits += 1

    def statements(self) -> list[str]:
        """Return executed statements as text."""
        return [
            q.as_string(None) if isinstance(q, sql.Composable) else q
            for q, _ in self.executed
        ]


@pytest.fixture
def fake_db(monkeypatch: pytest.MonkeyPatch) -> Any:
    """Patch connections and identifier quoting; return a connection setter."""

    def fake_quote_ident(name: str, scope: Any) -> str:
        return f'"{name}"'

    monkeypatch.setattr(psycopg2.extensions, "quote_ident", fake_quote_ident)

    def install(*results: Any) -> FakeConn:
        conn = FakeConn(*results)
        monkeypatch.setattr(database, "get_connection", lambda _settings: conn)
        return conn

    return install


def _table(catalog: datasets.InMemoryCatalog, name: str) -> None:
    catalog.create(
        name,
        [
            db_models.Column("cartodb_id", "integer"),
            db_models.Column("the_geom", "geometry"),
            db_models.Column("the_geom_webmercator", "geometry"),
        ],
    )


def test_overview_table_name() -> None:
    """Test the naming convention of overview tables."""
    assert database.overview_table_name("cities", 5) == "_vovw_5_cities"
    assert database.overview_table_name("cities", 5, "_ov_") == "_ov_5_cities"


def test_overview_name_parsing() -> None:
    """Test recovering the level and base table from overview names."""
    assert database.overview_table_z("_vovw_12_my_table") == 12
    assert database.overview_table_z("my_table") is None
    assert database.overview_table_z("_vovw_x_cities") is None
    assert database.overview_base_table_name("_vovw_12_my_table") == "my_table"
    assert database.overview_base_table_name("cities") == "cities"


def test_is_overview_table_of() -> None:
    """Test matching overview tables against their base table."""
    assert database.is_overview_table_of("cities", "_vovw_3_cities")
    assert not database.is_overview_table_of("cities", "_vovw_3_cities_2")
    assert not database.is_overview_table_of("cities", "cities")


def test_in_memory_registry_overviews() -> None:
    """Test listing overviews ordered numerically by level."""
    catalog = datasets.InMemoryCatalog()
    for name in ("cities", "_vovw_10_cities", "_vovw_2_cities", "_vovw_3_towns"):
        _table(catalog, name)
    registry = database.InMemoryOverviewRegistry(catalog)

    levels = registry.overviews("cities")

    assert levels == [
        db_models.OverviewLevel("cities", 2, "_vovw_2_cities"),
        db_models.OverviewLevel("cities", 10, "_vovw_10_cities"),
    ]
    assert registry.overviews("rivers") == []


def test_in_memory_registry_overviews_for() -> None:
    """Test listing overviews of several tables, grouped by base table."""
    catalog = datasets.InMemoryCatalog()
    for name in ("_vovw_3_towns", "_vovw_4_cities", "_vovw_1_towns"):
        _table(catalog, name)
    registry = database.InMemoryOverviewRegistry(catalog)

    levels = registry.overviews_for(["towns", "cities", "towns"])

    assert [(lvl.base_table, lvl.z) for lvl in levels] == [
        ("cities", 4),
        ("towns", 1),
        ("towns", 3),
    ]


def test_register_checks_name() -> None:
    """Test that registering validates the overview name."""
    registry = database.InMemoryOverviewRegistry(datasets.InMemoryCatalog())
    level = registry.register("cities", "_vovw_4_cities", 4)
    assert level == db_models.OverviewLevel("cities", 4, "_vovw_4_cities")
    with pytest.raises(errors.InvalidInputError, match="_vovw_5_cities"):
        registry.register("cities", "_vovw_4_cities", 5)


def test_in_memory_registry_drop() -> None:
    """Test that dropping removes only the overviews of the table."""
    catalog = datasets.InMemoryCatalog()
    for name in ("cities", "_vovw_2_cities", "_vovw_3_cities", "_vovw_3_towns"):
        _table(catalog, name)
    registry = database.InMemoryOverviewRegistry(catalog)

    dropped = registry.drop_overviews("cities")

    assert [level.z for level in dropped] == [2, 3]
    assert catalog.table_names() == ["cities", "_vovw_3_towns"]
    assert registry.drop_overviews("cities") == []


def test_postgres_registry_overviews(fake_db: Any) -> None:
    """Test that overviews are read from the catalog by name prefix."""
    conn = fake_db(
        [("_vovw_5_cities",), ("_vovw_2_cities",), ("_vovw_1_towns",)]
    )
    registry = database.PostgresOverviewRegistry(config.Settings())

    levels = registry.overviews("cities")

    assert [level.z for level in levels] == [2, 5]
    (_, params) = conn.executed[0]
    assert params == ("public", r"\_vovw\_%")


def test_postgres_registry_drop(fake_db: Any) -> None:
    """Test that dropping issues one DROP TABLE per level and commits."""
    conn = fake_db([("_vovw_5_cities",), ("_vovw_2_cities",)])
    registry = database.PostgresOverviewRegistry(config.Settings())

    dropped = registry.drop_overviews("cities")

    assert [level.overview_table for level in dropped] == [
        "_vovw_2_cities",
        "_vovw_5_cities",
    ]
    assert conn.statements()[1:] == [
        'DROP TABLE "public"."_vovw_2_cities"',
        'DROP TABLE "public"."_vovw_5_cities"',
    ]
    assert conn.commits == 1


def test_postgres_registry_drop_nothing(fake_db: Any) -> None:
    """Test that dropping without overviews does not write."""
    conn = fake_db([])
    registry = database.PostgresOverviewRegistry(config.Settings())
    assert registry.drop_overviews("cities") == []
    assert conn.commits == 0


def test_get_overview_registry() -> None:
    """Test that the factory returns the PostgreSQL registry."""
    registry = database.get_overview_registry(config.Settings())
    assert isinstance(registry, database.PostgresOverviewRegistry)


def test_postgis_dataset_columns(fake_db: Any) -> None:
    """Test column descriptions read from the system catalog."""
    conn = fake_db(
        [
            ("cartodb_id", "integer"),
            ("the_geom", "geometry"),
            ("name", "character varying"),
        ]
    )
    dataset = datasets.PostgisDataset(config.Settings(), "cities")
    assert dataset.columns() == [
        db_models.Column("cartodb_id", "integer"),
        db_models.Column("the_geom", "geometry"),
        db_models.Column("name", "character varying"),
    ]
    assert "format_type(a.atttypid, NULL)" in conn.statements()[0]
    assert conn.executed[0][1] == ("public", "cities")


def test_postgis_dataset_enum_column_cast(fake_db: Any) -> None:
    """Test that user-defined column types are cast to by name."""
    fake_db(
        [
            ("cartodb_id", "integer"),
            ("the_geom", "geometry"),
            ("the_geom_webmercator", "geometry"),
            ("mood", "mood"),
        ]
    )
    dataset = datasets.PostgisDataset(config.Settings(), "cities")
    rule = aggregation.build_aggregation_rule(dataset, "mood")
    assert rule.method is aggregation.AggregateMethod.SINGLE_VALUE
    assert rule.to_sql().as_string(None) == (
        '(CASE count(*) WHEN 1 THEN MIN("mood") ELSE NULL END)::mood'
    )


def test_postgis_dataset_extent(fake_db: Any) -> None:
    """Test the estimated extent, missing when statistics are absent."""
    conn = fake_db((1.0, 2.0, 3.0, 4.0), (None, None, None, None))
    dataset = datasets.PostgisDataset(config.Settings(), "cities")
    assert dataset.estimated_extent() == (1.0, 2.0, 3.0, 4.0)
    assert dataset.estimated_extent() is None
    assert conn.executed[0][1] == ("public", "cities", "the_geom_webmercator")


def test_postgis_dataset_count_features(fake_db: Any) -> None:
    """Test the bounding box filter of feature counts."""
    conn = fake_db((42,))
    dataset = datasets.PostgisDataset(config.Settings(), "cities")
    assert dataset.count_features((0.0, 1.0, 2.0, 3.0)) == 42
    statement, params = conn.statements()[0], conn.executed[0][1]
    assert statement == (
        'SELECT count(*) FROM "public"."cities" WHERE "the_geom_webmercator" '
        "&& ST_MakeEnvelope(%s, %s, %s, %s, 3857)"
    )
    assert params == (0.0, 1.0, 2.0, 3.0)


def test_postgis_dataset_statistics(fake_db: Any) -> None:
    """Test distinct-value estimates and statistics refresh."""
    conn = fake_db((-0.5,), None)
    dataset = datasets.PostgisDataset(config.Settings(), "cities")
    assert dataset.n_distinct("name") == -0.5
    assert dataset.n_distinct("name") is None
    dataset.analyze()
    assert conn.statements()[-1] == 'ANALYZE "public"."cities"'
    assert conn.commits == 1


def test_postgis_dataset_geometry_types(fake_db: Any) -> None:
    """Test the geometry type sample."""
    fake_db((["ST_Point"],), (None,))
    dataset = datasets.PostgisDataset(config.Settings(), "cities")
    assert dataset.geometry_types() == ["ST_Point"]
    assert dataset.geometry_types() is None


def test_postgis_dataset_base() -> None:
    """Test that an overview handle resolves its base dataset."""
    settings = config.Settings()
    overview = datasets.PostgisDataset(settings, "_vovw_5_cities", "data")
    base = overview.base()
    assert (base.schema, base.name) == ("data", "cities")
    assert base.base() is base


def test_postgis_dataset_materialize(fake_db: Any) -> None:
    """Test that a reduction runs in one transaction without parallelism."""
    conn = fake_db()
    dataset = datasets.PostgisDataset(config.Settings(), "cities")
    plan = reduce.GridClusterPlan(
        grid=reduce.GridSpec(10),
        columns=(
            db_models.Column("cartodb_id", "integer"),
            db_models.Column("the_geom", "geometry"),
            db_models.Column("the_geom_webmercator", "geometry"),
        ),
        rules={},
        settings=dataset.settings,
    )

    table = dataset.materialize(plan, "_vovw_10_cities", replace=True)

    assert table == "public._vovw_10_cities"
    statements = conn.statements()
    assert statements[0] == "SET LOCAL max_parallel_workers_per_gather = 0"
    assert statements[1] == 'DELETE FROM "public"."_vovw_10_cities"'
    assert statements[2].startswith('INSERT INTO "public"."_vovw_10_cities"')
    assert conn.commits == 1


def test_get_dataset() -> None:
    """Test that the factory returns a PostGIS handle."""
    dataset = datasets.get_dataset(config.Settings(), "cities")
    assert isinstance(dataset, datasets.PostgisDataset)
    assert dataset.schema == "public"


def test_in_memory_catalog() -> None:
    """Test creating, finding and dropping in-memory tables."""
    catalog = datasets.InMemoryCatalog()
    _table(catalog, "cities")
    assert catalog.get("cities") is not None
    with pytest.raises(ValueError):
        _table(catalog, "cities")
    catalog.drop("cities")
    assert catalog.get("cities") is None


def test_in_memory_statistics_follow_analyze() -> None:
    """Test that statistics exist only after analyze and then go stale."""
    catalog = datasets.InMemoryCatalog()
    _table(catalog, "cities")
    dataset = catalog.get("cities")
    point = shapely.Point(10.0, 20.0)
    dataset.insert(
        [{"cartodb_id": 1, "the_geom": point, "the_geom_webmercator": point}]
    )
    assert dataset.estimated_extent() is None
    assert dataset.n_distinct("cartodb_id") is None

    dataset.analyze()
    far = shapely.Point(100.0, 200.0)
    dataset.insert(
        [{"cartodb_id": 2, "the_geom": far, "the_geom_webmercator": far}]
    )

    assert dataset.estimated_extent() == (10.0, 20.0, 10.0, 20.0)
    assert dataset.n_distinct("cartodb_id") == 1
    assert dataset.count_features((0.0, 0.0, 150.0, 250.0)) == 2
    assert dataset.count_features((10.0, 20.0, 10.0, 20.0)) == 1
    assert dataset.geometry_types() == ["ST_Point"]
