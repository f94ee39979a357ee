"""Conflict resolution workflow.

States:
    PENDING_REVIEW -> RESOLVED
    PENDING_REVIEW -> IGNORED

A conflict is worked on as an immutable :class:`ConflictState` snapshot.
Every operation validates the current state and returns a new snapshot, or
raises :class:`ConflictWorkflowError`. ``load_state``/``store_state`` move
snapshots in and out of the ORM row.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from fieldsync.core.types import ConflictPriority, ConflictStatus, ResolutionAction

if TYPE_CHECKING:
    from fieldsync.server.models import ConflictResolution

logger = logging.getLogger(__name__)

FIRST = "first"
SECOND = "second"

# Fields a Merge may take from either side, per entity type
MERGEABLE_FIELDS: dict[str, frozenset[str]] = {
    "Person": frozenset(
        {
            "first_name_arabic",
            "father_name_arabic",
            "family_name_arabic",
            "mother_name_arabic",
            "national_id",
            "year_of_birth",
            "gender",
            "nationality",
            "mobile_number",
            "phone_number",
        }
    ),
    "Building": frozenset(
        {
            "building_type",
            "building_status",
            "damage_level",
            "number_of_property_units",
            "number_of_apartments",
            "number_of_shops",
            "number_of_floors",
            "latitude",
            "longitude",
            "building_geometry_wkt",
            "address",
            "notes",
        }
    ),
    "PropertyUnit": frozenset(
        {"unit_type", "unit_status", "floor_number", "area_square_meters", "description"}
    ),
}

TERMINAL_CONFLICT_STATUSES = frozenset({ConflictStatus.RESOLVED, ConflictStatus.IGNORED})


class ConflictWorkflowError(Exception):
    """Raised when a conflict operation is not allowed in its current state."""


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class ConflictState:
    """Snapshot of the mutable part of a conflict."""

    conflict_number: str
    entity_type: str
    first_entity_id: str
    second_entity_id: str
    detected_at: datetime
    status: ConflictStatus = ConflictStatus.PENDING_REVIEW
    priority: ConflictPriority = ConflictPriority.NORMAL
    resolution_action: ResolutionAction | None = None
    assigned_to: str | None = None
    assigned_at: datetime | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_reason: str | None = None
    resolution_notes: str | None = None
    merged_entity_id: str | None = None
    discarded_entity_id: str | None = None
    merge_mapping: dict[str, str] | None = None
    target_resolution_hours: int | None = None
    is_overdue: bool = False
    is_auto_resolved: bool = False
    auto_resolution_rule: str | None = None
    is_escalated: bool = False
    escalation_reason: str | None = None
    escalated_by: str | None = None
    escalated_at: datetime | None = None
    review_history: tuple[dict[str, object], ...] = field(default_factory=tuple)

    @property
    def is_open(self) -> bool:
        return self.status == ConflictStatus.PENDING_REVIEW

    @property
    def review_attempt_count(self) -> int:
        return len(self.review_history)


def _require_open(state: ConflictState, operation: str) -> None:
    if not state.is_open:
        raise ConflictWorkflowError(
            f"Cannot {operation} conflict {state.conflict_number}: it is {state.status.value}"
        )


def assign(
    state: ConflictState,
    user: str,
    target_resolution_hours: int | None = None,
    now: datetime | None = None,
) -> ConflictState:
    """Assign the conflict to a reviewer, optionally resetting its SLA."""
    _require_open(state, "assign")
    return replace(
        state,
        assigned_to=user,
        assigned_at=_now(now),
        target_resolution_hours=(
            target_resolution_hours
            if target_resolution_hours is not None
            else state.target_resolution_hours
        ),
    )


def _validate_merge(
    state: ConflictState,
    merged_entity_id: str | None,
    discarded_entity_id: str | None,
    merge_mapping: dict[str, str] | None,
) -> None:
    if not merged_entity_id or not discarded_entity_id:
        raise ConflictWorkflowError("Merge requires both a surviving and a discarded entity id")
    pair = {state.first_entity_id, state.second_entity_id}
    if {merged_entity_id, discarded_entity_id} != pair:
        raise ConflictWorkflowError(
            "Merge entity ids must be the two participants of the conflict"
        )
    if not merge_mapping:
        raise ConflictWorkflowError("Merge requires a field mapping")
    allowed = MERGEABLE_FIELDS.get(state.entity_type, frozenset())
    unknown = sorted(set(merge_mapping) - allowed)
    if unknown:
        raise ConflictWorkflowError(
            f"Fields not mergeable for {state.entity_type}: {', '.join(unknown)}"
        )
    bad = sorted(k for k, v in merge_mapping.items() if v not in (FIRST, SECOND))
    if bad:
        raise ConflictWorkflowError(
            f"Merge mapping values must be '{FIRST}' or '{SECOND}': {', '.join(bad)}"
        )


def resolve(
    state: ConflictState,
    action: ResolutionAction,
    user: str,
    reason: str,
    notes: str | None = None,
    merged_entity_id: str | None = None,
    discarded_entity_id: str | None = None,
    merge_mapping: dict[str, str] | None = None,
    now: datetime | None = None,
) -> ConflictState:
    """Resolve the conflict with a decision.

    KeepFirst and KeepSecond fill in the surviving and discarded ids
    themselves. Merge needs both ids and a ``{field: "first"|"second"}``
    mapping over the entity type's mergeable fields.

    Raises:
        ConflictWorkflowError: If the conflict is closed or the decision is
            incomplete.
    """
    _require_open(state, "resolve")
    if action == ResolutionAction.IGNORED:
        raise ConflictWorkflowError("Use ignore() to dismiss a conflict")
    if not reason:
        raise ConflictWorkflowError("A resolution reason is required")

    mapping = None
    if action == ResolutionAction.MERGE:
        _validate_merge(state, merged_entity_id, discarded_entity_id, merge_mapping)
        mapping = dict(merge_mapping or {})
    elif action == ResolutionAction.KEEP_FIRST:
        merged_entity_id, discarded_entity_id = state.first_entity_id, state.second_entity_id
    elif action == ResolutionAction.KEEP_SECOND:
        merged_entity_id, discarded_entity_id = state.second_entity_id, state.first_entity_id
    else:
        merged_entity_id = discarded_entity_id = None

    return replace(
        state,
        status=ConflictStatus.RESOLVED,
        resolution_action=action,
        resolved_by=user,
        resolved_at=_now(now),
        resolution_reason=reason,
        resolution_notes=notes,
        merged_entity_id=merged_entity_id,
        discarded_entity_id=discarded_entity_id,
        merge_mapping=mapping,
        is_overdue=False,
    )


def auto_resolve(
    state: ConflictState,
    action: ResolutionAction,
    rule: str,
    now: datetime | None = None,
) -> ConflictState:
    """Resolve the conflict by a named rule rather than a reviewer."""
    if action == ResolutionAction.MERGE:
        raise ConflictWorkflowError("Merge cannot be applied automatically")
    resolved = resolve(
        state, action, user="system", reason=f"Auto-resolved by rule {rule}", now=now
    )
    return replace(resolved, is_auto_resolved=True, auto_resolution_rule=rule)


def ignore(
    state: ConflictState, user: str, reason: str, now: datetime | None = None
) -> ConflictState:
    """Dismiss the conflict; both records are kept."""
    _require_open(state, "ignore")
    return replace(
        state,
        status=ConflictStatus.IGNORED,
        resolution_action=ResolutionAction.IGNORED,
        resolved_by=user,
        resolved_at=_now(now),
        resolution_reason=reason,
        is_overdue=False,
    )


def escalate(
    state: ConflictState, user: str, reason: str, now: datetime | None = None
) -> ConflictState:
    """Escalate the conflict. Escalation always raises priority to High."""
    _require_open(state, "escalate")
    return replace(
        state,
        is_escalated=True,
        escalation_reason=reason,
        escalated_by=user,
        escalated_at=_now(now),
        priority=ConflictPriority.HIGH,
    )


def record_review_attempt(
    state: ConflictState, notes: str, now: datetime | None = None
) -> ConflictState:
    """Append a review attempt to the history without changing the status."""
    _require_open(state, "review")
    entry = {
        "attemptNumber": state.review_attempt_count + 1,
        "date": _now(now).isoformat(),
        "notes": notes,
    }
    return replace(state, review_history=(*state.review_history, entry))


def update_priority(state: ConflictState, priority: ConflictPriority) -> ConflictState:
    """Change the review priority. An escalated conflict stays High."""
    _require_open(state, "reprioritize")
    if state.is_escalated and priority != ConflictPriority.HIGH:
        raise ConflictWorkflowError(
            f"Cannot lower priority of escalated conflict {state.conflict_number}"
        )
    return replace(state, priority=priority)


def check_if_overdue(state: ConflictState, now: datetime | None = None) -> bool:
    """Whether an open conflict has outlived its target resolution time.

    Computed on demand; closed conflicts and conflicts without a target are
    never overdue.
    """
    if state.target_resolution_hours is None or not state.is_open:
        return False
    deadline = _aware(state.detected_at) + timedelta(hours=state.target_resolution_hours)
    return _now(now) > deadline


# === ORM bridge ===


def load_state(conflict: ConflictResolution) -> ConflictState:
    """Snapshot a ConflictResolution row."""
    return ConflictState(
        conflict_number=conflict.conflict_number,
        entity_type=conflict.entity_type,
        first_entity_id=conflict.first_entity_id,
        second_entity_id=conflict.second_entity_id,
        detected_at=_aware(conflict.detected_at),
        status=ConflictStatus(conflict.status),
        priority=ConflictPriority(conflict.priority),
        resolution_action=(
            ResolutionAction(conflict.resolution_action) if conflict.resolution_action else None
        ),
        assigned_to=conflict.assigned_to,
        assigned_at=conflict.assigned_at,
        resolved_by=conflict.resolved_by,
        resolved_at=conflict.resolved_at,
        resolution_reason=conflict.resolution_reason,
        resolution_notes=conflict.resolution_notes,
        merged_entity_id=conflict.merged_entity_id,
        discarded_entity_id=conflict.discarded_entity_id,
        merge_mapping=(
            json.loads(conflict.merge_mapping_json) if conflict.merge_mapping_json else None
        ),
        target_resolution_hours=conflict.target_resolution_hours,
        is_overdue=conflict.is_overdue,
        is_auto_resolved=conflict.is_auto_resolved,
        auto_resolution_rule=conflict.auto_resolution_rule,
        is_escalated=conflict.is_escalated,
        escalation_reason=conflict.escalation_reason,
        escalated_by=conflict.escalated_by,
        escalated_at=conflict.escalated_at,
        review_history=tuple(json.loads(conflict.review_history_json or "[]")),
    )


def store_state(conflict: ConflictResolution, state: ConflictState) -> None:
    """Write a snapshot back onto its ConflictResolution row."""
    previous = conflict.status
    conflict.status = state.status.value
    conflict.priority = state.priority.value
    conflict.resolution_action = state.resolution_action.value if state.resolution_action else None
    conflict.assigned_to = state.assigned_to
    conflict.assigned_at = state.assigned_at
    conflict.resolved_by = state.resolved_by
    conflict.resolved_at = state.resolved_at
    conflict.resolution_reason = state.resolution_reason
    conflict.resolution_notes = state.resolution_notes
    conflict.merged_entity_id = state.merged_entity_id
    conflict.discarded_entity_id = state.discarded_entity_id
    conflict.merge_mapping_json = (
        json.dumps(state.merge_mapping) if state.merge_mapping is not None else None
    )
    conflict.target_resolution_hours = state.target_resolution_hours
    conflict.is_overdue = state.is_overdue
    conflict.is_auto_resolved = state.is_auto_resolved
    conflict.auto_resolution_rule = state.auto_resolution_rule
    conflict.is_escalated = state.is_escalated
    conflict.escalation_reason = state.escalation_reason
    conflict.escalated_by = state.escalated_by
    conflict.escalated_at = state.escalated_at
    conflict.review_attempt_count = state.review_attempt_count
    conflict.review_history_json = json.dumps(list(state.review_history), ensure_ascii=False)
    if previous != conflict.status:
        logger.info("Conflict %s: %s -> %s", state.conflict_number, previous, conflict.status)
