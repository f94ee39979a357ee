"""Shared types for fieldsync.

This module defines the enums used by the pipeline, the sync protocol and
the persistence layer. Values are stored as-is in the database, so they must
never be renamed.
"""

from __future__ import annotations

from enum import Enum


class PackageStatus(str, Enum):
    """Aggregate status of an import package."""

    PENDING = "Pending"
    VALIDATING = "Validating"
    VALIDATION_FAILED = "ValidationFailed"
    STAGING = "Staging"
    QUARANTINED = "Quarantined"
    REVIEWING_CONFLICTS = "ReviewingConflicts"
    READY_TO_COMMIT = "ReadyToCommit"
    COMMITTING = "Committing"
    COMPLETED = "Completed"
    PARTIALLY_COMPLETED = "PartiallyCompleted"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class ValidationStatus(str, Enum):
    """Validation status of a staging record."""

    PENDING = "Pending"
    VALID = "Valid"
    WARNING = "Warning"
    INVALID = "Invalid"


class EntityKind(str, Enum):
    """Entity kinds carried by a package, in commit dependency order."""

    BUILDING = "building"
    PROPERTY_UNIT = "property_unit"
    HOUSEHOLD = "household"
    PERSON = "person"
    RELATION = "relation"
    EVIDENCE = "evidence"
    CLAIM = "claim"
    SURVEY = "survey"


class ConflictType(str, Enum):
    """Kind of detected duplicate."""

    PERSON_DUPLICATE = "PersonDuplicate"
    PERSON_DUPLICATE_WITHIN_BATCH = "PersonDuplicate_WithinBatch"
    PROPERTY_DUPLICATE = "PropertyDuplicate"
    PROPERTY_DUPLICATE_WITHIN_BATCH = "PropertyDuplicate_WithinBatch"


class ConflictStatus(str, Enum):
    """Review status of a conflict."""

    PENDING_REVIEW = "PendingReview"
    RESOLVED = "Resolved"
    IGNORED = "Ignored"


class ResolutionAction(str, Enum):
    """Decision taken for a conflict."""

    KEEP_BOTH = "KeepBoth"
    MERGE = "Merge"
    KEEP_FIRST = "KeepFirst"
    KEEP_SECOND = "KeepSecond"
    IGNORED = "Ignored"


class ConfidenceLevel(str, Enum):
    """Confidence tier of a duplicate match."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class ConflictPriority(str, Enum):
    """Review priority of a conflict."""

    LOW = "Low"
    NORMAL = "Normal"
    HIGH = "High"


class EntitySource(str, Enum):
    """Where a conflict participant lives."""

    STAGING = "staging"
    PRODUCTION = "production"


class SyncSessionStatus(str, Enum):
    """Status of a device sync session."""

    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    PARTIALLY_COMPLETED = "PartiallyCompleted"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


class TransferStatus(str, Enum):
    """Transfer status of a building assignment."""

    PENDING = "Pending"
    TRANSFERRED = "Transferred"
    FAILED = "Failed"
