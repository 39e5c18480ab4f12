"""Aggregation rules for attributes of rows collapsed into one overview row.

When a reduction merges several rows of a dataset into a single overview
row, each attribute column needs a summary that neither invents precision
nor loses the density information. The rule for a column is chosen once,
from its type and (for numbers and text) from the planner's estimate of
its distinct-value count:

================================  =========================================
Column                            Summary of a group
================================  =========================================
``_feature_count``                sum of the counts
numeric or text, categorical      most frequent value (lowest on ties)
numeric, otherwise                mean weighted by feature count, cast back
text, otherwise                   the value if unique, the distinct values
                                  joined by " / " for small groups, else "*"
boolean                           the value of a single-row group, else NULL
anything else                     the value of a single-row group, else NULL
================================  =========================================

A column is categorical when the base table's statistics report between 1
and 20 distinct values. Missing statistics are refreshed once and read
again; if they are still missing the column is treated as non-categorical.

Every rule carries two closures with the same semantics: one rendering the
SQL aggregate expression for PostGIS tables and one reducing a group of
in-memory values.

Example:
    >>> from overviews.services import aggregation
    >>> rules = aggregation.synthesize_rules(dataset)
    >>> rules["population"].method
    <AggregateMethod.WEIGHTED_MEAN: 'weighted_mean'>
    >>> rules["population"].reduce([10, 20], [1, 3])
    17
"""

from __future__ import annotations

import collections
import dataclasses
import enum
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

import structlog
from psycopg2 import sql

from overviews.core import errors

if TYPE_CHECKING:
    from overviews.db import datasets
    from overviews.db import models as db_models

logger = structlog.get_logger(__name__)

NUMERIC_TYPES = frozenset(
    {"double precision", "real", "integer", "bigint", "numeric"}
)
INTEGER_TYPES = frozenset({"integer", "bigint"})
TEXT_TYPES = frozenset({"text", "character varying", "character"})

TEXT_SEPARATOR = " / "
TEXT_WILDCARD = "*"

Renderer = Callable[[sql.Composable], sql.Composable]
Reducer = Callable[[Sequence[Any], Sequence[int]], Any]


class ColumnKind(enum.Enum):
    """Family of a column type, deciding which rules may apply."""

    NUMERIC = "numeric"
    TEXT = "text"
    BOOLEAN = "boolean"
    OTHER = "other"

    @classmethod
    def of(cls, data_type: str) -> ColumnKind:
        """Classify a catalog type name."""
        if data_type in NUMERIC_TYPES:
            return cls.NUMERIC
        if data_type in TEXT_TYPES:
            return cls.TEXT
        if data_type == "boolean":
            return cls.BOOLEAN
        return cls.OTHER


class AggregateMethod(enum.Enum):
    FEATURE_COUNT = "feature_count"
    MODE = "mode"
    WEIGHTED_MEAN = "weighted_mean"
    TEXT_SUMMARY = "text_summary"
    SINGLE_BOOLEAN = "single_boolean"
    SINGLE_VALUE = "single_value"


@dataclasses.dataclass(frozen=True)
class AggregationRule:
    """How one column is summarized over a group of rows.

    Attributes:
        column: The aggregated column.
        kind: Family of the column type.
        method: Chosen summary.
        renderer: Builds the SQL aggregate from the qualified column.
        reducer: Summarizes a group given its values and the number of
            features each row represents.
    """

    column: db_models.Column
    kind: ColumnKind
    method: AggregateMethod
    renderer: Renderer = dataclasses.field(repr=False, compare=False)
    reducer: Reducer = dataclasses.field(repr=False, compare=False)

    def to_sql(self, alias: str = "") -> sql.Composable:
        """Return the aggregate expression, optionally table-qualified."""
        if alias:
            qualified = sql.Identifier(alias, self.column.name)
        else:
            qualified = sql.Identifier(self.column.name)
        return self.renderer(qualified)

    def expression(self, alias: str = "") -> sql.Composable:
        """Return the aggregate expression aliased with the column name."""
        return sql.SQL("{} AS {}").format(
            self.to_sql(alias),
            sql.Identifier(self.column.name),
        )

    def reduce(self, values: Sequence[Any], weights: Sequence[int]) -> Any:
        """Summarize the values of a group of rows."""
        return self.reducer(values, weights)


def _cast(expression: sql.Composable, data_type: str) -> sql.Composable:
    # Type names come from the catalog and may contain spaces.
    return sql.SQL("({})::{}").format(expression, sql.SQL(data_type))


def _sum_of_counts(values: Sequence[Any], weights: Sequence[int]) -> Any:
    counts = [v for v in values if v is not None]
    return sum(counts) if counts else None


def _mode(values: Sequence[Any], weights: Sequence[int]) -> Any:
    counts = collections.Counter(v for v in values if v is not None)
    if not counts:
        return None
    value, _ = min(counts.items(), key=lambda item: (-item[1], item[0]))
    return value


def _single(values: Sequence[Any], weights: Sequence[int]) -> Any:
    return values[0] if len(values) == 1 else None


def _weighted_mean_reducer(data_type: str) -> Reducer:
    def reducer(values: Sequence[Any], weights: Sequence[int]) -> Any:
        pairs = [(v, w) for v, w in zip(values, weights) if v is not None]
        total_weight = sum(weights)
        if not pairs or not total_weight:
            return None
        total = sum(v * w for v, w in pairs)
        if data_type in INTEGER_TYPES:
            # Integer division in SQL truncates toward zero.
            quotient = abs(total) // total_weight
            return quotient if total >= 0 else -quotient
        return total / total_weight

    return reducer


def _text_summary_reducer(max_features: int) -> Reducer:
    def reducer(values: Sequence[Any], weights: Sequence[int]) -> Any:
        distinct = sorted({v for v in values if v is not None})
        if len(distinct) == 1:
            return distinct[0]
        if sum(weights) < max_features:
            return TEXT_SEPARATOR.join(distinct) if distinct else None
        return TEXT_WILDCARD

    return reducer


def aggregable_columns(
    dataset: datasets.DatasetProtocol,
) -> list[db_models.Column]:
    """Return the columns aggregated by reductions, in table order.

    These are all columns except the identifier and the two geometries.
    """
    reserved = dataset.settings.reserved_columns
    return [c for c in dataset.columns() if c.name not in reserved]


def is_categorical(dataset: datasets.DatasetProtocol, column: str) -> bool:
    """Tell whether ``column`` has few enough distinct values for a mode.

    Statistics are read from the base dataset. When they are missing they
    are refreshed once and read again.
    """
    stats = dataset.base()
    n_distinct = stats.n_distinct(column)
    if n_distinct is None:
        logger.info("Column statistics missing", table=stats.name, column=column)
        stats.analyze()
        n_distinct = stats.n_distinct(column)
    if n_distinct is None:
        return False
    return 0 < n_distinct <= dataset.settings.categorical_max_distinct


def _resolve_rule(
    dataset: datasets.DatasetProtocol,
    column: db_models.Column,
    has_feature_count: bool,
) -> AggregationRule:
    settings = dataset.settings
    data_type = column.data_type
    kind = ColumnKind.of(data_type)

    if has_feature_count:
        feature_count: sql.Composable = sql.Identifier(
            settings.feature_count_column
        )
        total: sql.Composable = sql.SQL("SUM({})").format(feature_count)
    else:
        feature_count = sql.SQL("1")
        total = sql.SQL("count(*)")

    if column.name == settings.feature_count_column:
        return AggregationRule(
            column,
            kind,
            AggregateMethod.FEATURE_COUNT,
            lambda col: sql.SQL("SUM({})").format(col),
            _sum_of_counts,
        )

    if kind in (ColumnKind.NUMERIC, ColumnKind.TEXT) and is_categorical(
        dataset, column.name
    ):
        return AggregationRule(
            column,
            kind,
            AggregateMethod.MODE,
            lambda col: _cast(
                sql.SQL("mode() WITHIN GROUP (ORDER BY {})").format(col),
                data_type,
            ),
            _mode,
        )

    if kind is ColumnKind.NUMERIC:
        if data_type in INTEGER_TYPES:
            # div() truncates toward zero whatever the type of the sums.
            mean = sql.SQL("div(SUM({col} * {fc}), {total})")
        else:
            mean = sql.SQL("SUM({col} * {fc}) / {total}")
        return AggregationRule(
            column,
            kind,
            AggregateMethod.WEIGHTED_MEAN,
            lambda col: _cast(
                mean.format(col=col, fc=feature_count, total=total),
                data_type,
            ),
            _weighted_mean_reducer(data_type),
        )

    if kind is ColumnKind.TEXT:
        # Bounded and unlimited text types are summarized alike.
        max_features = settings.text_summary_max_features
        return AggregationRule(
            column,
            kind,
            AggregateMethod.TEXT_SUMMARY,
            lambda col: _cast(
                sql.SQL(
                    "CASE WHEN count(DISTINCT {col}) = 1 THEN MIN({col}) "
                    "WHEN {total} < {limit} "
                    "THEN string_agg(DISTINCT {col}, {separator}) "
                    "ELSE {wildcard} END"
                ).format(
                    col=col,
                    total=total,
                    limit=sql.SQL(str(max_features)),
                    separator=sql.SQL(f"'{TEXT_SEPARATOR}'"),
                    wildcard=sql.SQL(f"'{TEXT_WILDCARD}'"),
                ),
                data_type,
            ),
            _text_summary_reducer(max_features),
        )

    if kind is ColumnKind.BOOLEAN:
        return AggregationRule(
            column,
            kind,
            AggregateMethod.SINGLE_BOOLEAN,
            lambda col: _cast(
                sql.SQL(
                    "CASE count(*) WHEN 1 THEN bool_and({}) ELSE NULL END"
                ).format(col),
                data_type,
            ),
            _single,
        )

    return AggregationRule(
        column,
        kind,
        AggregateMethod.SINGLE_VALUE,
        lambda col: _cast(
            sql.SQL("CASE count(*) WHEN 1 THEN MIN({}) ELSE NULL END").format(
                col
            ),
            data_type,
        ),
        _single,
    )


def build_aggregation_rule(
    dataset: datasets.DatasetProtocol,
    column_name: str,
) -> AggregationRule:
    """Choose the aggregation rule of one column of ``dataset``.

    Args:
        dataset: Table being reduced (base dataset or overview).
        column_name: Column to aggregate.

    Returns:
        The rule summarizing that column.

    Raises:
        InvalidInputError: if the name is empty or not an aggregable column.
    """
    if not column_name:
        raise errors.InvalidInputError("Column name is required")
    columns = aggregable_columns(dataset)
    for column in columns:
        if column.name == column_name:
            has_feature_count = any(
                c.name == dataset.settings.feature_count_column for c in columns
            )
            return _resolve_rule(dataset, column, has_feature_count)
    raise errors.InvalidInputError(
        f"Column {column_name!r} of {dataset.name!r} cannot be aggregated",
        hint="identifier and geometry columns are never aggregated",
    )


def build_aggregation_expression(
    dataset: datasets.DatasetProtocol,
    column_name: str,
    alias: str = "",
) -> sql.Composable:
    """Return the SQL aggregate of a column, aliased with its name."""
    return build_aggregation_rule(dataset, column_name).expression(alias)


def synthesize_rules(
    dataset: datasets.DatasetProtocol,
) -> dict[str, AggregationRule]:
    """Resolve the rule of every aggregable column once, in table order."""
    columns = aggregable_columns(dataset)
    has_feature_count = any(
        c.name == dataset.settings.feature_count_column for c in columns
    )
    return {
        column.name: _resolve_rule(dataset, column, has_feature_count)
        for column in columns
    }
