"""
Typed filter values.

A filter's wire value is untyped JSON. Before compilation it is turned into
exactly one of ScalarValue, ListValue or NoValue according to the operator,
so operator/value compatibility is checked in one place.
"""

from dataclasses import dataclass
from typing import Any, Tuple, Union

from pgviews.core.errors import CompilationError
from pgviews.views.models import FilterOperator


SCALAR_OPERATORS = frozenset({
    FilterOperator.EQ,
    FilterOperator.NE,
    FilterOperator.GT,
    FilterOperator.GTE,
    FilterOperator.LT,
    FilterOperator.LTE,
    FilterOperator.LIKE,
})
LIST_OPERATORS = frozenset({FilterOperator.IN, FilterOperator.NOT_IN})
NULL_OPERATORS = frozenset({FilterOperator.IS_NULL, FilterOperator.IS_NOT_NULL})


@dataclass(frozen=True)
class ScalarValue:
    value: Any


@dataclass(frozen=True)
class ListValue:
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class NoValue:
    pass


NO_VALUE = NoValue()

FilterValue = Union[ScalarValue, ListValue, NoValue]


def _is_container(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, dict))


def to_filter_value(operator: FilterOperator, raw: Any, field: str) -> FilterValue:
    """
    Convert a raw wire value into the variant the operator expects.

    Null checks ignore whatever value was sent.
    """
    if operator in NULL_OPERATORS:
        return NO_VALUE

    if operator in LIST_OPERATORS:
        if not isinstance(raw, (list, tuple)):
            raise CompilationError(
                f"operator '{operator.value}' expects a list value",
                field=f"{field}.value",
            )
        for i, item in enumerate(raw):
            if item is None or _is_container(item):
                raise CompilationError(
                    f"operator '{operator.value}' expects a list of scalar values",
                    field=f"{field}.value[{i}]",
                )
        return ListValue(tuple(raw))

    if raw is None:
        raise CompilationError(
            f"operator '{operator.value}' requires a value; use is_null to match NULL",
            field=f"{field}.value",
        )
    if _is_container(raw):
        raise CompilationError(
            f"operator '{operator.value}' expects a single value, got a list",
            field=f"{field}.value",
        )
    if operator == FilterOperator.LIKE and not isinstance(raw, str):
        raise CompilationError(
            "operator 'like' expects a string pattern",
            field=f"{field}.value",
        )
    return ScalarValue(raw)
