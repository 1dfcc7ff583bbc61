# ptrs_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .importer import (
    ColumnMap,
    Dataset,
    DatasetRow,
    ExecutionRun,
    ExecutionRunStatus,
    FieldMapEntry,
    GovEntityRef,
    ImportRun,
    ImportRunStatus,
    RawRow,
    RuleScope,
    RulesetRule,
    StagedRow,
)
from .tenant import Tenant

__all__ = [
    "db",
    "BaseModel",
    "Tenant",
    "ImportRun",
    "ImportRunStatus",
    "RawRow",
    "Dataset",
    "DatasetRow",
    "ColumnMap",
    "FieldMapEntry",
    "RulesetRule",
    "RuleScope",
    "StagedRow",
    "ExecutionRun",
    "ExecutionRunStatus",
    "GovEntityRef",
]
