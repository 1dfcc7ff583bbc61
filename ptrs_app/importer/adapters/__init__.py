"""Source adapters for the payment-times importer."""

from .csv_rows import CSVHeaderError, CSVRowError, CSVStatistics, DelimitedRowReader, SourceRow, dedupe_headers

__all__ = [
    "CSVHeaderError",
    "CSVRowError",
    "CSVStatistics",
    "DelimitedRowReader",
    "SourceRow",
    "dedupe_headers",
]
