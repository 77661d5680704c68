"""
Domain models for managed database views.

Defines:
- QueryBuilderConfig and its parts (the UI-editable query definition)
- DatabaseView, ViewVersion, ViewDependency, PerformanceMetrics (persisted shapes)
- Request/response shapes for the view endpoints
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field, model_validator

from pgviews.domain.base import CamelCaseModel, FrozenCamelCaseModel


# =============================================================================
# Enumerations
# =============================================================================

class JoinType(str, Enum):
    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"


class Aggregation(str, Enum):
    SUM = "sum"
    COUNT = "count"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class FilterOperator(str, Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    LIKE = "like"
    IN = "in"
    NOT_IN = "not_in"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class DependencyType(str, Enum):
    TABLE = "table"
    VIEW = "view"
    FUNCTION = "function"


# =============================================================================
# Query builder config
# =============================================================================
#
# Enum-valued fields are kept as plain strings so that the compiler, not the
# request parser, reports unsupported values with a field path.

class SelectedTable(FrozenCamelCaseModel):
    schema_name: str = Field(alias="schema")
    name: str
    alias: Optional[str] = None


class JoinDefinition(FrozenCamelCaseModel):
    type: str = JoinType.INNER.value
    left_table: str
    left_column: str
    right_table: str
    right_column: str


class SelectedColumn(FrozenCamelCaseModel):
    table: str
    column: str
    alias: Optional[str] = None
    aggregation: Optional[str] = None
    expression: Optional[str] = None


class FilterCondition(FrozenCamelCaseModel):
    column: str
    operator: str
    value: Any = None
    logical_operator: str = LogicalOperator.AND.value


class GroupingConfig(FrozenCamelCaseModel):
    columns: Tuple[str, ...] = ()
    having: Tuple[FilterCondition, ...] = ()


class OrderingColumn(FrozenCamelCaseModel):
    column: str
    direction: str = SortDirection.ASC.value


class OrderingConfig(FrozenCamelCaseModel):
    columns: Tuple[OrderingColumn, ...] = ()


class QueryBuilderConfig(FrozenCamelCaseModel):
    """
    Structured, UI-editable query definition.

    Immutable; the compiler turns it into parameterized SQL.
    """
    tables: Tuple[SelectedTable, ...] = ()
    joins: Tuple[JoinDefinition, ...] = ()
    columns: Tuple[SelectedColumn, ...] = ()
    filters: Tuple[FilterCondition, ...] = ()
    grouping: Optional[GroupingConfig] = None
    ordering: Optional[OrderingConfig] = None


# =============================================================================
# Persisted shapes
# =============================================================================

class PerformanceMetrics(CamelCaseModel):
    """Plan-based performance estimate attached to a view. May be stale."""
    execution_time: float = 0.0  # ms
    planning_time: float = 0.0  # ms
    row_count: int = 0
    cost: float = 0.0
    last_analyzed: datetime


class ViewDependency(FrozenCamelCaseModel):
    """
    A base object a view reads from.

    Exactly one of depends_on_table / depends_on_view is set. Functions are
    recorded in depends_on_table.
    """
    view_id: Optional[str] = None
    depends_on_table: Optional[str] = None
    depends_on_view: Optional[str] = None
    dependency_type: DependencyType = DependencyType.TABLE

    @model_validator(mode="after")
    def _check_single_target(self) -> "ViewDependency":
        if (self.depends_on_table is None) == (self.depends_on_view is None):
            raise ValueError("exactly one of dependsOnTable / dependsOnView must be set")
        if self.dependency_type == DependencyType.VIEW and self.depends_on_view is None:
            raise ValueError("view dependencies must set dependsOnView")
        if self.dependency_type != DependencyType.VIEW and self.depends_on_table is None:
            raise ValueError(f"{self.dependency_type.value} dependencies must set dependsOnTable")
        return self

    @property
    def target(self) -> str:
        return self.depends_on_view or self.depends_on_table or ""


class DatabaseView(CamelCaseModel):
    """
    A managed view on a connection.

    sql_definition is always the last successfully compiled SQL text;
    query_builder_config is None when the view was authored as raw SQL.
    """
    id: str
    connection_id: str
    name: str
    schema_name: str = Field(alias="schema")
    description: Optional[str] = None
    sql_definition: str
    query_builder_config: Optional[QueryBuilderConfig] = None
    dependencies: List[str] = Field(default_factory=list)
    performance_metrics: Optional[PerformanceMetrics] = None
    created_by: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.name}"


class ViewVersion(FrozenCamelCaseModel):
    """Immutable history record. Never mutated or deleted."""
    id: str
    view_id: str
    version: str
    sql_definition: str
    change_notes: Optional[str] = None
    created_by: str
    created_at: datetime


# =============================================================================
# Requests / responses
# =============================================================================

class CreateViewRequest(CamelCaseModel):
    name: str
    schema_name: str = Field(default="public", alias="schema")
    description: Optional[str] = None
    sql_definition: Optional[str] = None
    query_builder_config: Optional[QueryBuilderConfig] = None
    change_notes: Optional[str] = None


class UpdateViewRequest(CamelCaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    sql_definition: Optional[str] = None
    query_builder_config: Optional[QueryBuilderConfig] = None
    change_notes: Optional[str] = None

    @property
    def changes_definition(self) -> bool:
        return self.sql_definition is not None or self.query_builder_config is not None


class ViewPreviewRequest(CamelCaseModel):
    sql_definition: Optional[str] = None
    query_builder_config: Optional[QueryBuilderConfig] = None
    limit: Optional[int] = None


class PreviewColumn(CamelCaseModel):
    name: str
    type: str


class ViewPreviewResult(CamelCaseModel):
    columns: List[PreviewColumn] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    execution_time: float = 0.0  # ms
    row_count: int = 0


class CompileRequest(CamelCaseModel):
    query_builder_config: QueryBuilderConfig
    dialect: str = "postgresql"


class CompileResponse(CamelCaseModel):
    sql: str
    params: List[Any] = Field(default_factory=list)
    param_types: List[str] = Field(default_factory=list)
    relations: List[str] = Field(default_factory=list)
    fingerprint: str


class AnalyzeRequest(CamelCaseModel):
    sql_definition: Optional[str] = None
    query_builder_config: Optional[QueryBuilderConfig] = None


class AnalyzeResponse(CamelCaseModel):
    dependencies: List[ViewDependency] = Field(default_factory=list)
    unresolved: List[str] = Field(default_factory=list)


class ImpactResponse(CamelCaseModel):
    object_name: str
    dependent_views: List[DatabaseView] = Field(default_factory=list)
