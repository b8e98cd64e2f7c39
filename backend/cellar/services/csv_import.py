"""CSV bulk import: create one bottle per row, chunk by chunk.

Rows are fully loaded before the import starts, so there is no cursor and no
resume: a failed row is counted and logged and the loop moves on. Only an
import with nothing to do is rejected up front.
"""

import csv
import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from cellar.schemas.bottle import BottleInput, ImportFailure
from cellar.services.bottles import BottleService

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50

T = TypeVar("T")


class EmptyImportError(Exception):
    """Raised when there are no rows, or no valid rows, to import."""


class ImportResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    failures: list[ImportFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.success_count > 0


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield successive slices of *items* of at most *size* elements."""
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    for start in range(0, len(items), size):
        yield items[start : start + size]


def read_csv_rows(path: Path) -> list[dict[str, str]]:
    """Load every row of *path* as a header-keyed dict.

    Comma- and semicolon-separated exports are both accepted.
    """
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        sample = handle.read(4096)
        handle.seek(0)
        try:
            dialect: Any = csv.Sniffer().sniff(sample, delimiters=",;")
        except csv.Error:
            dialect = csv.excel
        reader = csv.DictReader(handle, dialect=dialect)
        if not reader.fieldnames:
            raise EmptyImportError(f"{path} has no header row")
        return [
            {key.strip(): value for key, value in row.items() if key is not None}
            for row in reader
        ]


def _reason(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
    return str(exc) or type(exc).__name__


class CsvImportService:
    def import_rows(
        self,
        rows: Sequence[Any],
        create: Callable[[Any], object],
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        validate: Callable[[Any], Any] | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> ImportResult:
        """Create one entity per row and count the outcomes.

        *validate* turns a raw row into the value passed to *create*; a row it
        rejects is a failure. Row numbers in the result are 1-based, header
        excluded. Raises EmptyImportError when there are no rows or no row
        passes validation.
        """
        if not rows:
            raise EmptyImportError("No data rows to import")

        result = ImportResult()
        prepared: list[tuple[int, Any]] = []
        for row_number, row in enumerate(rows, start=1):
            if validate is None:
                prepared.append((row_number, row))
                continue
            try:
                prepared.append((row_number, validate(row)))
            except Exception as exc:
                self._record_failure(result, row_number, exc)
        if not prepared:
            raise EmptyImportError(f"None of the {len(rows)} rows are valid")

        logger.info("importing %d rows (%d rejected by validation)", len(prepared), result.failure_count)
        done = result.failure_count
        for chunk in chunked(prepared, chunk_size):
            for row_number, value in chunk:
                try:
                    create(value)
                except Exception as exc:
                    self._record_failure(result, row_number, exc)
                else:
                    result.success_count += 1
            done += len(chunk)
            logger.info(
                "import progress: %d/%d rows (%d ok, %d failed)",
                done,
                len(rows),
                result.success_count,
                result.failure_count,
            )
            if on_progress is not None:
                on_progress(done, len(rows))

        logger.info(
            "import finished: %d imported, %d failed", result.success_count, result.failure_count
        )
        return result

    def import_file(
        self,
        path: Path,
        owner: str,
        db: Session,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> ImportResult:
        """Read a cellar export and create its bottles for *owner*."""
        rows = read_csv_rows(path)
        service = BottleService()

        def create(data: BottleInput) -> object:
            try:
                return service.create(data, owner, db)
            except Exception:
                db.rollback()
                raise

        return self.import_rows(
            rows,
            create,
            chunk_size=chunk_size,
            validate=BottleInput.model_validate,
            on_progress=on_progress,
        )

    def _record_failure(self, result: ImportResult, row_number: int, exc: Exception) -> None:
        reason = _reason(exc)
        logger.warning("row %d failed: %s", row_number, reason)
        result.failure_count += 1
        result.failures.append(ImportFailure(row_number=row_number, reason=reason))


def validate_all(rows: Iterable[dict[str, str]]) -> tuple[list[BottleInput], list[ImportFailure]]:
    """Validate rows without importing them (used for dry runs)."""
    valid: list[BottleInput] = []
    failures: list[ImportFailure] = []
    for row_number, row in enumerate(rows, start=1):
        try:
            valid.append(BottleInput.model_validate(row))
        except ValidationError as exc:
            failures.append(ImportFailure(row_number=row_number, reason=_reason(exc)))
    return valid, failures
