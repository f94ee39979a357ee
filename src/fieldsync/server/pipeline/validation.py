"""Validation pipeline driver.

Runs the validation levels in order over a package's staged records. A level
that finds errors, or even crashes, does not stop later levels: only the
commit step enforces blocking errors.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from fieldsync.core.types import ValidationStatus
from fieldsync.server.pipeline.staging import load_staging
from fieldsync.server.pipeline.validators import VALIDATORS, Findings, StagingBatch, Validator

logger = logging.getLogger(__name__)


@dataclass
class LevelResult:
    """Outcome of one validation level.

    ``error_count`` is -1 when the level itself crashed; ``failure`` then
    holds the exception text.
    """

    validator_name: str
    level: int
    error_count: int
    warning_count: int
    records_checked: int
    duration_ms: float
    failure: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "validatorName": self.validator_name,
            "level": self.level,
            "errorCount": self.error_count,
            "warningCount": self.warning_count,
            "recordsChecked": self.records_checked,
            "durationMs": round(self.duration_ms, 3),
            "failure": self.failure,
        }


@dataclass
class ValidationReport:
    """Aggregated result of every level for a package."""

    levels: list[LevelResult] = field(default_factory=list)
    total_errors: int = 0
    total_warnings: int = 0
    invalid_records: int = 0
    warning_records: int = 0
    valid_records: int = 0

    @property
    def crashed_levels(self) -> list[LevelResult]:
        return [r for r in self.levels if r.failure is not None]

    @property
    def has_blocking_errors(self) -> bool:
        return self.invalid_records > 0 or bool(self.crashed_levels)

    def to_dict(self) -> dict[str, object]:
        return {
            "levels": [r.to_dict() for r in self.levels],
            "totalErrors": self.total_errors,
            "totalWarnings": self.total_warnings,
            "invalidRecords": self.invalid_records,
            "warningRecords": self.warning_records,
            "validRecords": self.valid_records,
        }


def run_level(validator: Validator, batch: StagingBatch) -> LevelResult:
    """Run one level, timing it and containing any crash."""
    findings = Findings()
    started = time.perf_counter()
    try:
        checked = validator.check(batch, findings)
    except Exception as e:
        duration = (time.perf_counter() - started) * 1000
        logger.exception(
            "Validator %s (level %d) crashed on package %d",
            validator.name,
            validator.level,
            batch.package_id,
        )
        return LevelResult(
            validator_name=validator.name,
            level=validator.level,
            error_count=-1,
            warning_count=findings.warnings,
            records_checked=0,
            duration_ms=round(duration, 3),
            failure=str(e) or type(e).__name__,
        )
    duration = (time.perf_counter() - started) * 1000
    logger.debug(
        "Validator %s: %d errors, %d warnings, %d records in %.1f ms",
        validator.name,
        findings.errors,
        findings.warnings,
        checked,
        duration,
    )
    return LevelResult(
        validator_name=validator.name,
        level=validator.level,
        error_count=findings.errors,
        warning_count=findings.warnings,
        records_checked=checked,
        duration_ms=round(duration, 3),
    )


def run_validation(
    session: Session,
    package_id: int,
    vocabulary_codes: dict[str, set[int]] | None = None,
    validators: tuple[Validator, ...] = VALIDATORS,
) -> ValidationReport:
    """Validate every staged record of a package.

    Records are annotated in place; the caller owns the transaction.

    Args:
        session: Open database session.
        package_id: Package whose staging partition is validated.
        vocabulary_codes: Active vocabulary name -> allowed codes.
        validators: Levels to run, in order.

    Returns:
        ValidationReport with per-level results and record totals.
    """
    batch = StagingBatch(
        package_id=package_id,
        records=load_staging(session, package_id),
        vocabulary_codes=vocabulary_codes or {},
    )
    report = ValidationReport()
    for validator in sorted(validators, key=lambda v: v.level):
        report.levels.append(run_level(validator, batch))

    for records in batch.records.values():
        for record in records:
            record.finalize_validation()
            report.total_errors += len(record.errors)
            report.total_warnings += len(record.warnings)
            if record.validation_status == ValidationStatus.INVALID.value:
                report.invalid_records += 1
            elif record.validation_status == ValidationStatus.WARNING.value:
                report.warning_records += 1
            else:
                report.valid_records += 1
    session.flush()

    logger.info(
        "Validated package %d: %d invalid, %d with warnings, %d valid records",
        package_id,
        report.invalid_records,
        report.warning_records,
        report.valid_records,
    )
    return report
