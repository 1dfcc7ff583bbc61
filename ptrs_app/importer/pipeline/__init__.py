"""Payment-times pipeline services."""

from .column_map import ColumnMapResolver, ColumnMapService, Resolution
from .composer import JoinIndex, RowComposer, build_join_indexes, canonicalize_row, compose_row, normalize_join_key
from .exclusions import (
    PREDICATE_REGISTRY,
    ExclusionPredicate,
    GovernmentEntityPredicate,
    apply_exclusions,
    build_predicates,
    load_gov_entities,
    predicate_fingerprints,
    preview_exclusions,
    register_predicate,
)
from .execution import ExecutionRunTracker, StageInputs, collect_stage_inputs, compute_input_hash
from .raw_store import IngestSummary, RawImportStore, SampleResult
from .report_metrics import MetricsEngine, mode_int, percentile
from .rules import RulesetService, apply_rules, parse_rule, validate_cross_row_rule
from .run_service import ImportRunService, RunDetails
from .stage_service import StageService, StageSummary, stage_run
from .staging import StagedPreview, StagingStore
from .validation import ValidationReport, ValidationService

__all__ = [
    "ColumnMapResolver",
    "ColumnMapService",
    "ExclusionPredicate",
    "ExecutionRunTracker",
    "GovernmentEntityPredicate",
    "ImportRunService",
    "IngestSummary",
    "JoinIndex",
    "MetricsEngine",
    "PREDICATE_REGISTRY",
    "RawImportStore",
    "Resolution",
    "RowComposer",
    "RulesetService",
    "RunDetails",
    "SampleResult",
    "StageInputs",
    "StageService",
    "StageSummary",
    "StagedPreview",
    "StagingStore",
    "ValidationReport",
    "ValidationService",
    "apply_exclusions",
    "apply_rules",
    "build_join_indexes",
    "build_predicates",
    "canonicalize_row",
    "collect_stage_inputs",
    "compose_row",
    "compute_input_hash",
    "load_gov_entities",
    "mode_int",
    "normalize_join_key",
    "parse_rule",
    "percentile",
    "predicate_fingerprints",
    "preview_exclusions",
    "register_predicate",
    "stage_run",
    "validate_cross_row_rule",
]
