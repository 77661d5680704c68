"""
SQL Compiler for query builder view definitions.

Provides:
- FilterDSL: Renders filter conditions into placeholder-bound SQL predicates
- QueryCompiler: Generates parameterized SQL from a QueryBuilderConfig
- CompiledQuery: SQL text plus ordered parameters and their type tags

Compilation is pure: the same config always yields byte-identical output for
a given dialect and compiler version.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar, Union
import hashlib
import json

from pydantic import ValidationError as PydanticValidationError

from pgviews.core.constants import DEFAULT_DIALECT
from pgviews.core.errors import CompilationError, ValidationError
from pgviews.utils.log_utils import get_logger
from pgviews.views.dialect import PostgresDialect, get_dialect
from pgviews.views.models import (
    Aggregation,
    FilterCondition,
    FilterOperator,
    JoinType,
    LogicalOperator,
    QueryBuilderConfig,
    SelectedTable,
    SortDirection,
)
from pgviews.views.values import ListValue, NoValue, ScalarValue, to_filter_value

logger = get_logger(__name__)

COMPILER_VERSION = "1"

E = TypeVar("E", bound=Enum)

# Statement separators and comments are never valid inside a column expression.
_FORBIDDEN_EXPRESSION_TOKENS = (";", "--", "/*", "*/")


@dataclass(frozen=True)
class CompiledQuery:
    """Result of compiling a QueryBuilderConfig. Never carries a LIMIT."""
    sql: str
    params: Tuple[Any, ...] = ()
    param_types: Tuple[str, ...] = ()
    relations: Tuple[str, ...] = ()
    dialect: str = "postgresql"

    def fingerprint(self) -> str:
        """Deterministic hash of the SQL and its parameters."""
        content = json.dumps(
            {
                "sql": self.sql,
                "params": [str(p) for p in self.params],
                "compiler": COMPILER_VERSION,
            },
            sort_keys=True,
        )
        return f"sha256:{hashlib.sha256(content.encode()).hexdigest()[:16]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sql": self.sql,
            "params": list(self.params),
            "param_types": list(self.param_types),
            "relations": list(self.relations),
            "fingerprint": self.fingerprint(),
        }


# =============================================================================
# Compilation context
# =============================================================================

@dataclass
class _TableRef:
    index: int
    schema: str
    name: str
    alias: Optional[str]

    @property
    def ref(self) -> str:
        return self.alias or self.name

    @property
    def qualified(self) -> str:
        return f"{self.schema}.{self.name}"


class _ParamList:
    """Ordered bound parameters; placeholders numbered in binding order."""

    def __init__(self, dialect: PostgresDialect):
        self.dialect = dialect
        self.values: List[Any] = []
        self.types: List[str] = []

    def bind(self, value: Any, field: str) -> str:
        self.types.append(self.dialect.type_tag(value, field))
        self.values.append(value)
        return self.dialect.placeholder(len(self.values))


class _Scope:
    """
    Declared tables and the subset already introduced by FROM/JOIN.

    A table can be referenced by its alias, by its bare name (when that is
    unambiguous) or as schema.name.
    """

    def __init__(self, tables: Tuple[SelectedTable, ...]):
        self.tables: List[_TableRef] = []
        self._by_ref: Dict[str, _TableRef] = {}
        self._in_scope: set = set()

        seen_aliases: Dict[str, int] = {}
        for i, table in enumerate(tables):
            entry = _TableRef(i, table.schema_name, table.name, table.alias or None)
            if entry.alias is not None:
                if entry.alias in seen_aliases:
                    raise CompilationError(
                        f"duplicate alias '{entry.alias}'",
                        field=f"tables[{i}].alias",
                    )
                seen_aliases[entry.alias] = i
            if entry.ref in self._by_ref:
                raise CompilationError(
                    f"table reference '{entry.ref}' is ambiguous; give one of the tables an alias",
                    field=f"tables[{i}]",
                )
            self._by_ref[entry.ref] = entry
            self.tables.append(entry)

    def lookup(self, reference: str) -> Optional[_TableRef]:
        if reference in self._by_ref:
            return self._by_ref[reference]
        by_name = [t for t in self.tables if t.name == reference]
        if len(by_name) == 1:
            return by_name[0]
        if len(by_name) > 1:
            return None
        if "." in reference:
            schema, _, name = reference.rpartition(".")
            matches = [t for t in self.tables if t.schema == schema and t.name == name]
            if len(matches) == 1:
                return matches[0]
        return None

    def resolve(self, reference: str, field: str) -> _TableRef:
        entry = self.lookup(reference)
        if entry is None:
            if len([t for t in self.tables if t.name == reference]) > 1:
                raise CompilationError(
                    f"table reference '{reference}' is ambiguous; use the table alias",
                    field=field,
                )
            raise CompilationError(
                f"undefined table reference '{reference}'",
                field=field,
                details={"table": reference},
            )
        return entry

    def introduce(self, entry: _TableRef) -> None:
        self._in_scope.add(entry.index)

    def is_introduced(self, entry: _TableRef) -> bool:
        return entry.index in self._in_scope

    def resolve_introduced(self, reference: str, field: str) -> _TableRef:
        entry = self.resolve(reference, field)
        if not self.is_introduced(entry):
            raise CompilationError(
                f"table '{reference}' is not part of the FROM clause or any preceding JOIN",
                field=field,
                details={"table": reference},
            )
        return entry


# =============================================================================
# Filter DSL
# =============================================================================

class FilterDSL:
    """
    Renders FilterCondition lists into SQL predicates.

    Conditions fold left to right: the first is rendered bare, and each later
    condition is combined with the accumulated expression using its own
    logical operator, as ``(acc) OP (cond)``. There is no AND-over-OR
    precedence.
    """

    def __init__(self, dialect: PostgresDialect, params: _ParamList):
        self.dialect = dialect
        self.params = params

    def interpret(self, condition: FilterCondition, lhs: str, path: str) -> str:
        """Render a single condition against an already-rendered column."""
        operator = _coerce_enum(FilterOperator, condition.operator, f"{path}.operator")
        value = to_filter_value(operator, condition.value, path)

        if isinstance(value, NoValue):
            if operator == FilterOperator.IS_NULL:
                return f"{lhs} IS NULL"
            return f"{lhs} IS NOT NULL"

        if isinstance(value, ListValue):
            if not value.values:
                # No values = no matches (IN) / all match (NOT IN)
                return "FALSE" if operator == FilterOperator.IN else "TRUE"
            placeholders = ", ".join(
                self.params.bind(item, f"{path}.value[{i}]")
                for i, item in enumerate(value.values)
            )
            keyword = "IN" if operator == FilterOperator.IN else "NOT IN"
            return f"{lhs} {keyword} ({placeholders})"

        assert isinstance(value, ScalarValue)
        comparison = self.dialect.COMPARISONS[operator.value]
        return f"{lhs} {comparison} {self.params.bind(value.value, f'{path}.value')}"

    def fold(self, conditions, render_column, section: str) -> Optional[str]:
        expression: Optional[str] = None
        for i, condition in enumerate(conditions):
            path = f"{section}[{i}]"
            connective = _coerce_enum(
                LogicalOperator, condition.logical_operator, f"{path}.logicalOperator"
            )
            lhs = render_column(condition.column, f"{path}.column")
            rendered = self.interpret(condition, lhs, path)
            if expression is None:
                # The first condition's logical operator has nothing to bind to.
                expression = rendered
            else:
                expression = f"({expression}) {connective.value.upper()} ({rendered})"
        return expression


def _coerce_enum(enum_cls: Type[E], raw: Any, field: str) -> E:
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise CompilationError(
            f"unsupported value '{raw}' (expected one of: {allowed})",
            field=field,
        ) from None


# =============================================================================
# Query Compiler
# =============================================================================

class QueryCompiler:
    """
    Compiles QueryBuilderConfig specs into parameterized SQL.

    Clause order is fixed: SELECT, FROM, JOIN*, WHERE, GROUP BY, HAVING,
    ORDER BY. User-supplied lists are emitted in the order given. The
    compiler never emits LIMIT; previews append it.
    """

    AGGREGATE_FUNCTIONS = {
        Aggregation.SUM: "SUM",
        Aggregation.COUNT: "COUNT",
        Aggregation.AVG: "AVG",
        Aggregation.MIN: "MIN",
        Aggregation.MAX: "MAX",
    }

    def __init__(self, default_dialect: str = DEFAULT_DIALECT):
        self.default_dialect = default_dialect

    def compile(
        self,
        config: Union[QueryBuilderConfig, Dict[str, Any]],
        dialect: Optional[str] = None,
    ) -> CompiledQuery:
        """
        Compile a query builder config into SQL.

        Args:
            config: The query builder config (or its camelCase dict form)
            dialect: Target dialect name, defaults to PostgreSQL

        Returns:
            CompiledQuery with SQL, ordered params and param type tags

        Raises:
            CompilationError: on unresolvable references or unsupported values
            ValidationError: when a dict config does not have the right shape
        """
        config = _as_config(config)
        sql_dialect = get_dialect(dialect or self.default_dialect)

        if not config.tables:
            raise CompilationError("at least one table is required", field="tables")

        scope = _Scope(config.tables)
        params = _ParamList(sql_dialect)
        filters = FilterDSL(sql_dialect, params)

        primary = scope.tables[0]
        scope.introduce(primary)

        # JOIN scope is built first so SELECT can reference joined tables.
        join_parts, relations = self._build_joins(config, scope, sql_dialect)

        select_parts, output_exprs = self._build_select(config, scope, sql_dialect)

        parts = [
            f"SELECT {', '.join(select_parts) if select_parts else '*'}",
            f"FROM {self._table_sql(primary, sql_dialect)}",
        ]
        parts.extend(join_parts)

        def filter_column(name: str, path: str) -> str:
            return self._column_sql(name, path, scope, primary, sql_dialect)

        where = filters.fold(config.filters, filter_column, "filters")
        if where is not None:
            parts.append(f"WHERE {where}")

        if config.grouping is not None:
            if config.grouping.columns:
                group_cols = [
                    self._column_sql(col, f"grouping.columns[{i}]", scope, primary, sql_dialect,
                                     output_aliases=output_exprs, alias_as_name=True)
                    for i, col in enumerate(config.grouping.columns)
                ]
                parts.append(f"GROUP BY {', '.join(group_cols)}")

            def having_column(name: str, path: str) -> str:
                return self._column_sql(name, path, scope, primary, sql_dialect,
                                        output_aliases=output_exprs)

            having = filters.fold(config.grouping.having, having_column, "grouping.having")
            if having is not None:
                parts.append(f"HAVING {having}")

        if config.ordering is not None and config.ordering.columns:
            order_cols = []
            for i, item in enumerate(config.ordering.columns):
                path = f"ordering.columns[{i}]"
                direction = _coerce_enum(SortDirection, item.direction, f"{path}.direction")
                col = self._column_sql(item.column, f"{path}.column", scope, primary, sql_dialect,
                                       output_aliases=output_exprs, alias_as_name=True)
                order_cols.append(f"{col} {direction.value.upper()}")
            parts.append(f"ORDER BY {', '.join(order_cols)}")

        compiled = CompiledQuery(
            sql=" ".join(parts),
            params=tuple(params.values),
            param_types=tuple(params.types),
            relations=relations,
            dialect=sql_dialect.name,
        )
        logger.debug(f"Compiled query {compiled.fingerprint()} with {len(compiled.params)} params")
        return compiled

    # -------------------------------------------------------------------------
    # Clause builders
    # -------------------------------------------------------------------------

    def _table_sql(self, table: _TableRef, dialect: PostgresDialect) -> str:
        sql = f"{dialect.quote_ident(table.schema)}.{dialect.quote_ident(table.name)}"
        if table.alias:
            sql += f" AS {dialect.quote_ident(table.alias)}"
        return sql

    def _build_joins(
        self,
        config: QueryBuilderConfig,
        scope: _Scope,
        dialect: PostgresDialect,
    ) -> Tuple[List[str], Tuple[str, ...]]:
        q = dialect.quote_ident
        parts = []
        relations = [scope.tables[0].qualified]

        for i, join in enumerate(config.joins):
            path = f"joins[{i}]"
            join_type = _coerce_enum(JoinType, join.type, f"{path}.type")
            left = scope.resolve_introduced(join.left_table, f"{path}.leftTable")
            right = scope.resolve(join.right_table, f"{path}.rightTable")
            if scope.is_introduced(right):
                raise CompilationError(
                    f"table '{join.right_table}' is already part of the query; "
                    f"declare it again with an alias to join it twice",
                    field=f"{path}.rightTable",
                    details={"table": join.right_table},
                )
            scope.introduce(right)
            if right.qualified not in relations:
                relations.append(right.qualified)

            parts.append(
                f"{dialect.JOIN_KEYWORDS[join_type.value]} {self._table_sql(right, dialect)} "
                f"ON {q(left.ref)}.{q(join.left_column)} = {q(right.ref)}.{q(join.right_column)}"
            )

        return parts, tuple(relations)

    def _build_select(
        self,
        config: QueryBuilderConfig,
        scope: _Scope,
        dialect: PostgresDialect,
    ) -> Tuple[List[str], Dict[str, str]]:
        """Returns rendered select items and a map of output alias -> expression."""
        q = dialect.quote_ident
        parts = []
        output_exprs: Dict[str, str] = {}

        for i, column in enumerate(config.columns):
            path = f"columns[{i}]"
            table = scope.resolve_introduced(column.table, f"{path}.table")

            aggregation = None
            if column.aggregation is not None:
                aggregation = _coerce_enum(Aggregation, column.aggregation, f"{path}.aggregation")

            if column.expression:
                _check_expression(column.expression, f"{path}.expression")
                inner = column.expression
            elif column.column == "*":
                inner = "*" if aggregation == Aggregation.COUNT else f"{q(table.ref)}.*"
            else:
                inner = f"{q(table.ref)}.{q(column.column)}"

            expr = f"{self.AGGREGATE_FUNCTIONS[aggregation]}({inner})" if aggregation else inner

            if column.alias:
                if column.alias in output_exprs:
                    raise CompilationError(
                        f"duplicate alias '{column.alias}'",
                        field=f"{path}.alias",
                    )
                output_exprs[column.alias] = expr
                parts.append(f"{expr} AS {q(column.alias)}")
            else:
                parts.append(expr)

        return parts, output_exprs

    def _column_sql(
        self,
        name: str,
        path: str,
        scope: _Scope,
        primary: _TableRef,
        dialect: PostgresDialect,
        output_aliases: Optional[Dict[str, str]] = None,
        alias_as_name: bool = False,
    ) -> str:
        """
        Render a column reference used by filters, grouping and ordering.

        ``table.column`` resolves against the declared tables; a bare name
        matching an output alias refers to that select item; any other bare
        name belongs to the FROM table.
        """
        q = dialect.quote_ident
        if not name:
            raise CompilationError("column name is required", field=path)

        if output_aliases and name in output_aliases:
            return q(name) if alias_as_name else output_aliases[name]

        if "." in name:
            table_ref, _, column = name.rpartition(".")
            table = scope.resolve_introduced(table_ref, path)
            return f"{q(table.ref)}.{q(column)}"

        return f"{q(primary.ref)}.{q(name)}"


def _check_expression(expression: str, field: str) -> None:
    for token in _FORBIDDEN_EXPRESSION_TOKENS:
        if token in expression:
            raise CompilationError(
                f"expression must be a single SQL expression (found '{token}')",
                field=field,
            )


def _as_config(config: Union[QueryBuilderConfig, Dict[str, Any]]) -> QueryBuilderConfig:
    if isinstance(config, QueryBuilderConfig):
        return config
    try:
        return QueryBuilderConfig.model_validate(config)
    except PydanticValidationError as e:
        raise ValidationError(
            "malformed query builder config",
            field="queryBuilderConfig",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


_default_compiler = QueryCompiler()


def compile_query(
    config: Union[QueryBuilderConfig, Dict[str, Any]],
    dialect: Optional[str] = None,
) -> CompiledQuery:
    """Compile with the default compiler."""
    return _default_compiler.compile(config, dialect)
