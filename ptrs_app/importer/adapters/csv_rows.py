"""Streaming reader for delimited payment files.

Headers are taken as-is from the source (no contract validation happens at
ingest time; mapping to canonical fields is a later step). Blank and
duplicate header names are made unique so every cell keeps a stable key.
Rows are yielded lazily: the next record is only parsed once the consumer
asks for it, which lets batch flushes apply backpressure to the reader.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from typing import IO, Iterator, Sequence

from ptrs_app.errors import ValidationError


class CSVHeaderError(ValidationError):
    """Raised when the header row is missing, empty or unreadable."""


class CSVRowError(ValidationError):
    """Raised when a data row cannot be tokenised or decoded."""


@dataclass(frozen=True)
class SourceRow:
    """A parsed data row keyed by the deduplicated headers."""

    row_no: int
    source_line: int
    data: dict[str, str]


@dataclass
class CSVStatistics:
    rows_processed: int = 0
    rows_skipped_blank: int = 0
    rows_with_extra_cells: int = 0


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff").strip()


def dedupe_headers(raw_headers: Sequence[str | None]) -> tuple[str, ...]:
    """
    Make header names unique.

    Blank names become ``column_<position>`` (1-based). Repeats keep the first
    occurrence and suffix later ones ``_1``, ``_2``... skipping any suffix that
    collides with another header.
    """

    sanitized = [_sanitize_header(header) for header in raw_headers]
    originals = {name for name in sanitized if name}
    used: set[str] = set()
    counters: dict[str, int] = {}
    result: list[str] = []
    for index, name in enumerate(sanitized):
        if not name:
            name = f"column_{index + 1}"
        if name in used:
            counter = counters.get(name, 0)
            while True:
                counter += 1
                candidate = f"{name}_{counter}"
                if candidate not in used and candidate not in originals:
                    break
            counters[name] = counter
            name = candidate
        used.add(name)
        result.append(name)
    return tuple(result)


def _is_empty_line(record: Sequence[str]) -> bool:
    return len(record) == 0 or (len(record) == 1 and record[0].strip() in ("", "\ufeff"))


def _row_is_blank(values: Sequence[str]) -> bool:
    return all(value is None or value.strip() == "" for value in values)


def _as_text_stream(file_obj: IO) -> IO[str]:
    if isinstance(file_obj, (io.RawIOBase, io.BufferedIOBase)):
        return io.TextIOWrapper(file_obj, encoding="utf-8-sig", newline="")
    return file_obj


class DelimitedRowReader:
    """Pull-based reader yielding :class:`SourceRow` objects."""

    def __init__(
        self,
        file_obj: IO,
        *,
        delimiter: str = ",",
        skip_blank_rows: bool = True,
    ) -> None:
        self._file_obj = _as_text_stream(file_obj)
        self.delimiter = delimiter
        self.skip_blank_rows = skip_blank_rows
        self.statistics = CSVStatistics()
        self._headers: tuple[str, ...] | None = None

    @property
    def headers(self) -> tuple[str, ...] | None:
        return self._headers

    def _read_header(self, reader) -> tuple[str, ...]:
        try:
            for record in reader:
                if _is_empty_line(record):
                    continue
                if _row_is_blank([_sanitize_header(cell) for cell in record]):
                    raise CSVHeaderError("Header row is empty; every column name is blank.")
                return dedupe_headers(record)
        except csv.Error as exc:
            raise CSVHeaderError(f"Header row could not be parsed: {exc}") from exc
        except UnicodeDecodeError as exc:
            raise CSVHeaderError("Header row is not valid UTF-8 text.") from exc
        raise CSVHeaderError("File is empty; a header row is required.")

    def _next_record(self, reader, row_no: int) -> list[str] | None:
        try:
            return next(reader, None)
        except csv.Error as exc:
            raise CSVRowError(
                f"Row {row_no} (line {reader.line_num}) could not be parsed: {exc}", row_no=row_no
            ) from exc
        except UnicodeDecodeError as exc:
            raise CSVRowError(
                f"Row {row_no} (line {reader.line_num}) is not valid UTF-8 text.", row_no=row_no
            ) from exc

    def iter_rows(self) -> Iterator[SourceRow]:
        reader = csv.reader(self._file_obj, delimiter=self.delimiter)
        headers = self._read_header(reader)
        self._headers = headers
        width = len(headers)
        row_no = 0
        while True:
            record = self._next_record(reader, row_no + 1)
            if record is None:
                break
            if _is_empty_line(record):
                continue
            if self.skip_blank_rows and _row_is_blank(record):
                self.statistics.rows_skipped_blank += 1
                continue
            # Cells beyond the header width are dropped; the statistic records how often.
            if len(record) > width:
                self.statistics.rows_with_extra_cells += 1
            padded = list(record[:width]) + [""] * max(0, width - len(record))
            row_no += 1
            self.statistics.rows_processed += 1
            yield SourceRow(
                row_no=row_no,
                source_line=reader.line_num,
                data=dict(zip(headers, padded)),
            )
