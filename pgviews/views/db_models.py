"""
SQLAlchemy models for view metadata.

- database_views: one row per managed view
- view_versions: append-only history, unique per (view_id, version)
- view_dependencies: dependency edges, replaced wholesale on each definition change

JSON columns use JSONB on PostgreSQL and plain JSON elsewhere (SQLite in tests).
"""

from sqlalchemy import (
    CheckConstraint, Column, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


class DatabaseViewDB(Base):
    __tablename__ = "database_views"

    id = Column(String(64), primary_key=True)
    connection_id = Column(String(128), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    schema_name = Column(String(255), nullable=False, default="public")
    description = Column(Text, nullable=True)

    sql_definition = Column(Text, nullable=False)
    query_builder_config_json = Column(JSONType, nullable=True)
    dependencies_json = Column(JSONType, nullable=False, default=list)
    performance_metrics_json = Column(JSONType, nullable=True)

    created_by = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "schema_name", "name", name="uq_view_name"),
    )


class ViewVersionDB(Base):
    """
    Immutable version record.

    No foreign key to database_views: history outlives the view row.
    major/minor are stored so history can be ordered numerically in SQL.
    """
    __tablename__ = "view_versions"

    id = Column(String(64), primary_key=True)
    view_id = Column(String(64), nullable=False)
    version = Column(String(32), nullable=False)
    major = Column(Integer, nullable=False)
    minor = Column(Integer, nullable=False)

    sql_definition = Column(Text, nullable=False)
    change_notes = Column(Text, nullable=True)
    created_by = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("view_id", "version", name="uq_view_version"),
        Index("ix_view_versions_order", "view_id", "major", "minor"),
    )


class ViewDependencyDB(Base):
    __tablename__ = "view_dependencies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    view_id = Column(String(64), nullable=False, index=True)
    depends_on_table = Column(String(511), nullable=True, index=True)
    depends_on_view = Column(String(511), nullable=True, index=True)
    dependency_type = Column(String(16), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(depends_on_table IS NULL) <> (depends_on_view IS NULL)",
            name="ck_dependency_single_target",
        ),
        CheckConstraint(
            "dependency_type IN ('table', 'view', 'function')",
            name="ck_dependency_type",
        ),
    )
