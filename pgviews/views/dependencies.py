"""
Dependency Analyzer - which base objects does a view read from?

Sources:
- QueryBuilderConfig: the declared tables (authoritative)
- CompiledQuery: the relations the compiler emitted
- raw SQL text: parsed with sqlglot; a keyword scan is the fallback when
  the statement cannot be parsed

Every identifier is classified through a SchemaCatalog. Anything the catalog
does not know is recorded as a table dependency and also reported as
unresolved, so callers can tell "confirmed table" from "assumed table".
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from sqlglot import exp
from sqlglot.errors import SqlglotError

from pgviews.core.errors import ExecutionError, ValidationError
from pgviews.views.catalog import DEFAULT_SCHEMA, SchemaCatalog, qualify
from pgviews.views.compiler import CompiledQuery
from pgviews.views.models import DependencyType, QueryBuilderConfig, ViewDependency
from pgviews.views.sql_text import identifier_name, parse_statements, scan_relations
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)

Source = Union[QueryBuilderConfig, CompiledQuery, str]
_Ref = Tuple[Optional[str], str]


@dataclass(frozen=True)
class DependencyAnalysis:
    """Set-valued analysis result. Iteration helpers return a stable order."""
    dependencies: FrozenSet[ViewDependency] = field(default_factory=frozenset)
    unresolved: FrozenSet[str] = field(default_factory=frozenset)

    def sorted_dependencies(self) -> List[ViewDependency]:
        return sorted(self.dependencies, key=lambda d: (d.dependency_type.value, d.target))

    def targets(self) -> List[str]:
        return sorted({d.target for d in self.dependencies})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dependencies": [d.to_json_dict() for d in self.sorted_dependencies()],
            "unresolved": sorted(self.unresolved),
        }


class DependencyAnalyzer:
    """
    Extracts ViewDependency records from a view definition.

    Without a catalog every identifier is unresolved and recorded as a table.
    """

    def __init__(self, catalog: Optional[SchemaCatalog] = None, default_schema: str = DEFAULT_SCHEMA):
        self.catalog = catalog
        self.default_schema = default_schema

    def analyze(self, source: Source, view_id: Optional[str] = None) -> DependencyAnalysis:
        functions: List[_Ref] = []
        if isinstance(source, QueryBuilderConfig):
            relations = [(t.schema_name, t.name) for t in source.tables]
        elif isinstance(source, CompiledQuery):
            if source.relations:
                relations = [self._split(r) for r in source.relations]
            else:
                relations, functions = self._from_sql(source.sql)
        elif isinstance(source, str):
            relations, functions = self._from_sql(source)
        else:
            raise ValidationError(
                f"cannot analyze dependencies of {type(source).__name__}",
                field="source",
            )
        return self._classify(relations, functions, view_id)

    def _split(self, qualified: str) -> _Ref:
        schema, _, name = qualified.rpartition(".")
        return (schema or None), name

    def _from_sql(self, sql: str) -> Tuple[List[_Ref], List[_Ref]]:
        try:
            statements = parse_statements(sql)
        except SqlglotError as e:
            logger.warning(f"Falling back to keyword scan, SQL did not parse: {str(e).splitlines()[0] if str(e) else e}")
            return scan_relations(sql), []

        relations: List[_Ref] = []
        functions: List[_Ref] = []
        for statement in statements:
            cte_names = {
                identifier_name(cte.args.get("alias").this)
                for cte in statement.find_all(exp.CTE)
                if cte.args.get("alias") is not None
            }
            for table in statement.find_all(exp.Table):
                name = identifier_name(table.this) if isinstance(table.this, exp.Identifier) else None
                if not name:
                    continue
                schema = identifier_name(table.args.get("db"))
                if schema is None and name in cte_names:
                    continue
                relations.append((schema, name))
            for func in statement.find_all(exp.Anonymous):
                name = func.name
                if name:
                    schema = None
                    if isinstance(func.parent, exp.Dot) and func.parent.expression is func:
                        schema = identifier_name(func.parent.this)
                    functions.append((schema, name.lower()))
        return relations, functions

    def lookup(self, schema: str, name: str) -> Optional[DependencyType]:
        if self.catalog is None:
            return None
        try:
            return self.catalog.classify(schema, name)
        except ExecutionError as e:
            logger.warning(f"Catalog lookup failed for {schema}.{name}: {e}")
            return None

    def _classify(self, relations: List[_Ref], functions: List[_Ref], view_id: Optional[str]) -> DependencyAnalysis:
        dependencies = set()
        unresolved = set()

        for schema, name in relations:
            schema = schema or self.default_schema
            target = qualify(schema, name)
            kind = self.lookup(schema, name)
            if kind is None:
                unresolved.add(target)
                kind = DependencyType.TABLE
            if kind == DependencyType.VIEW:
                dependencies.add(ViewDependency(
                    view_id=view_id, depends_on_view=target, dependency_type=kind,
                ))
            else:
                dependencies.add(ViewDependency(
                    view_id=view_id, depends_on_table=target, dependency_type=kind,
                ))

        # Function calls only count when the catalog knows them; built-ins are not dependencies.
        for schema, name in functions:
            schema = schema or self.default_schema
            if self.lookup(schema, name) == DependencyType.FUNCTION:
                dependencies.add(ViewDependency(
                    view_id=view_id,
                    depends_on_table=qualify(schema, name),
                    dependency_type=DependencyType.FUNCTION,
                ))

        if unresolved:
            logger.info(f"{len(unresolved)} unresolved identifier(s): {', '.join(sorted(unresolved))}")
        return DependencyAnalysis(frozenset(dependencies), frozenset(unresolved))
