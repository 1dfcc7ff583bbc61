"""Importer pipeline models."""

from .schema import (
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

__all__ = [
    "ColumnMap",
    "Dataset",
    "DatasetRow",
    "ExecutionRun",
    "ExecutionRunStatus",
    "FieldMapEntry",
    "GovEntityRef",
    "ImportRun",
    "ImportRunStatus",
    "RawRow",
    "RuleScope",
    "RulesetRule",
    "StagedRow",
]
