"""
Managed view engine: compile query-builder configs to SQL, track dependencies
and versions, estimate plans and run bounded previews.
"""

from .compiler import CompiledQuery, QueryCompiler, compile_query
from .dependencies import DependencyAnalysis, DependencyAnalyzer
from .service import ViewService
from .versions import VersionManager

__all__ = [
    "CompiledQuery",
    "QueryCompiler",
    "compile_query",
    "DependencyAnalysis",
    "DependencyAnalyzer",
    "ViewService",
    "VersionManager",
]
