"""Guarded transitions and the job lease.

Every state change in the system goes through ``guarded_update``: an UPDATE
whose WHERE clause carries the expected prior state, followed by an
affected-row check. Zero rows means another actor moved the record first and
the caller gets a ``Conflict``; there is no retry.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import Conflict, NotFound
from .store import Clause, JobState, JobVariant, SQLiteStore, utcnow


logger = logging.getLogger("scribedesk.transitions")


S = JobState
DU = JobVariant.DIRECT_UPLOAD
NEG = JobVariant.NEGOTIATION

# (variant, action) -> (allowed prior states, next state)
TRANSITIONS: Dict[Tuple[JobVariant, str], Tuple[Tuple[JobState, ...], JobState]] = {
    (DU, "claim"): ((S.OPEN,), S.CLAIMED),
    (DU, "release"): ((S.CLAIMED, S.IN_PROGRESS), S.OPEN),
    (DU, "start"): ((S.CLAIMED,), S.IN_PROGRESS),
    (DU, "complete"): ((S.CLAIMED, S.IN_PROGRESS), S.COMPLETED),
    (DU, "review"): ((S.COMPLETED,), S.CLIENT_COMPLETED),
    (NEG, "accept"): ((S.PENDING, S.CLIENT_COUNTER), S.ACCEPTED_AWAITING_PAYMENT),
    (NEG, "counter"): ((S.PENDING, S.CLIENT_COUNTER), S.TRANSCRIBER_COUNTER),
    (NEG, "reject"): ((S.PENDING, S.CLIENT_COUNTER), S.REJECTED),
    (NEG, "accept_counter"): ((S.TRANSCRIBER_COUNTER,), S.ACCEPTED_AWAITING_PAYMENT),
    (NEG, "reject_counter"): ((S.TRANSCRIBER_COUNTER,), S.REJECTED),
    (NEG, "counter_back"): ((S.TRANSCRIBER_COUNTER,), S.CLIENT_COUNTER),
    (NEG, "hire"): ((S.ACCEPTED_AWAITING_PAYMENT,), S.HIRED),
    # Real flows can skip an explicit "start work" step
    (NEG, "complete"): ((S.ACCEPTED, S.HIRED, S.ACCEPTED_AWAITING_PAYMENT), S.COMPLETED),
    (NEG, "cancel"): ((S.PENDING, S.TRANSCRIBER_COUNTER, S.CLIENT_COUNTER, S.ACCEPTED_AWAITING_PAYMENT), S.CANCELLED),
}

# Timestamp stamped when a job enters a state
STAMPS: Dict[JobState, str] = {
    S.CLAIMED: "taken_at",
    S.ACCEPTED_AWAITING_PAYMENT: "accepted_at",
    S.COMPLETED: "completed_at",
    S.CLIENT_COMPLETED: "client_completed_at",
}


def allowed_from(variant: JobVariant, action: str) -> Tuple[JobState, ...]:
    return TRANSITIONS[(variant, action)][0]


def guarded_update(
    store: SQLiteStore,
    table: str,
    entity_id: int,
    expected: Mapping[str, Any],
    new_fields: Mapping[str, Any],
    conn: Optional[sqlite3.Connection] = None,
    extra: Optional[Clause] = None,
    state_column: str = "state",
) -> None:
    """Conditional update that raises instead of returning a count.

    Raises NotFound if the row does not exist and Conflict if it exists but no
    longer matches ``expected``.
    """
    affected = store.conditional_update(table, entity_id, expected, new_fields, conn=conn, extra=extra)
    if affected == 1:
        return
    row = store.get(table, entity_id, conn=conn)
    if row is None:
        raise NotFound(f"{table} record {entity_id} not found.")
    current = row.get(state_column)
    logger.warning(f"Conflict on {table} {entity_id}: expected {dict(expected)}, found {state_column}={current}")
    raise Conflict(f"{table} record {entity_id} is no longer in the expected state (currently '{current}').", current_state=current)


def transition_job(
    store: SQLiteStore,
    job_id: int,
    variant: JobVariant,
    action: str,
    fields: Optional[Mapping[str, Any]] = None,
    expected: Optional[Mapping[str, Any]] = None,
    conn: Optional[sqlite3.Connection] = None,
    extra: Optional[Clause] = None,
) -> JobState:
    from_states, to_state = TRANSITIONS[(variant, action)]
    now = utcnow()
    new_fields: Dict[str, Any] = {"state": to_state, "updated_at": now}
    if to_state in STAMPS:
        new_fields[STAMPS[to_state]] = now
    new_fields.update(fields or {})
    guard: Dict[str, Any] = {"variant": variant, "state": list(from_states)}
    guard.update(expected or {})
    guarded_update(store, "jobs", job_id, guard, new_fields, conn=conn, extra=extra)
    logger.info(f"Job {job_id} ({variant.value}) {action}: -> {to_state.value}")
    return to_state


# --- lease: the record that a transcriber holds an active job ---


def acquire_lease(store: SQLiteStore, transcriber_id: int, job_id: int, conn: sqlite3.Connection) -> None:
    """Point the transcriber at ``job_id``. Must run inside the transition's transaction."""
    affected = store.conditional_update(
        "participants",
        transcriber_id,
        {"current_job_id": None},
        {"current_job_id": job_id, "updated_at": utcnow()},
        conn=conn,
    )
    if affected == 0:
        raise Conflict(f"Transcriber {transcriber_id} already holds an active job.")


def release_lease(store: SQLiteStore, transcriber_id: int, job_id: int, conn: Optional[sqlite3.Connection] = None) -> bool:
    """Clear the lease if it still points at ``job_id``. Idempotent; safe to retry."""
    affected = store.conditional_update(
        "participants",
        transcriber_id,
        {"current_job_id": job_id},
        {"current_job_id": None, "updated_at": utcnow()},
        conn=conn,
    )
    return affected == 1
