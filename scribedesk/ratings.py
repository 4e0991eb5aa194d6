"""Rating feedback loop.

Every rating write is followed by a full recompute of the rated participant's
average for that role, persisted onto their reputation row in the same
transaction. Reputation then feeds the eligibility gate.
"""

from __future__ import annotations

import logging
import sqlite3
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Optional, Sequence, Tuple

from .errors import Conflict, InvalidInput, NotFound
from .store import JobState, Participant, Rating, Role, SQLiteStore, utcnow


logger = logging.getLogger("scribedesk.ratings")

RATEABLE_ROLES = (Role.CLIENT, Role.TRANSCRIBER)


def mean_rating(scores: Sequence[int]) -> Optional[float]:
    """Arithmetic mean rounded half-up to one decimal; None for no scores."""
    if not scores:
        return None
    avg = Decimal(sum(scores)) / Decimal(len(scores))
    return float(avg.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def _role(value: Any, what: str) -> Role:
    try:
        return Role(value)
    except ValueError as e:
        raise InvalidInput(f"Unknown {what}: {value!r}") from e


def validate_score(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise InvalidInput("A score between 1 and 5 is required.")
    return value


class RatingFeedbackLoop:
    def __init__(self, store: SQLiteStore, default_transcriber: float = 0.0, default_client: float = 5.0) -> None:
        self.store = store
        self.default_transcriber = default_transcriber
        self.default_client = default_client

    def default_for(self, role: Role) -> float:
        return self.default_transcriber if role == Role.TRANSCRIBER else self.default_client

    def record_rating(
        self,
        rater_id: int,
        rater_role: Any,
        rated_user_id: int,
        rated_role: Any,
        score: Any,
        comment: Optional[str] = None,
        job_id: Optional[int] = None,
    ) -> Tuple[Rating, float]:
        """Write one rating and return it with the participant's new average.

        Without a job (admin path) the rating is an upsert per
        (rater, rated, role). With a job (client rating the transcriber of a
        completed job) it is one-shot and a repeat is a Conflict.
        """
        rater_role = _role(rater_role, "rater role")
        rated_role = _role(rated_role, "rated role")
        if rated_role not in RATEABLE_ROLES:
            raise InvalidInput(f"Participants cannot be rated as {rated_role.value}.")
        score = validate_score(score)

        rater = self.store.load_participant(rater_id)
        if rater is None or rater.role != rater_role:
            raise NotFound(f"Rater {rater_id} not found.")
        rated = self.store.load_participant(rated_user_id)
        if rated is None or rated.role != rated_role:
            raise NotFound(f"{rated_role.value.capitalize()} {rated_user_id} not found.")

        now = utcnow()
        with self.store.transaction() as conn:
            if job_id is None:
                rating_id = self._upsert_standing(conn, rater, rated, rated_role, score, comment, now)
            else:
                rating_id = self._insert_for_job(conn, rater, rated, rated_role, job_id, score, comment, now)
            average = self._recompute(conn, rated_user_id, rated_role)

        rating = Rating.from_row(self.store.get("ratings", rating_id))
        logger.info(f"Updated {rated_role.value} {rated_user_id} average rating to {average}")
        return rating, average

    def _upsert_standing(self, conn, rater: Participant, rated: Participant, rated_role: Role, score: int, comment, now: str) -> int:
        if rater.role != Role.ADMIN:
            raise InvalidInput("Only administrators can rate a participant outside a completed job.")
        rows = self.store.query(
            "ratings",
            {"rater_id": rater.participant_id, "rated_user_id": rated.participant_id, "rated_role": rated_role, "job_id": None},
            limit=1,
            conn=conn,
        )
        if rows:
            rating_id = int(rows[0]["id"])
            self.store.conditional_update("ratings", rating_id, {}, {"score": score, "comment": comment, "updated_at": now}, conn=conn)
            return rating_id
        return self.store.insert(
            "ratings",
            {
                "rater_id": rater.participant_id,
                "rater_role": rater.role,
                "rated_user_id": rated.participant_id,
                "rated_role": rated_role,
                "job_id": None,
                "score": score,
                "comment": comment,
                "created_at": now,
                "updated_at": now,
            },
            conn=conn,
        )

    def _insert_for_job(self, conn, rater: Participant, rated: Participant, rated_role: Role, job_id: int, score: int, comment, now: str) -> int:
        job = self.store.load_job(job_id, conn=conn)
        if job is None or job.client_id != rater.participant_id or job.transcriber_id != rated.participant_id:
            raise NotFound(f"Job {job_id} not found or not accessible.")
        if rater.role != Role.CLIENT or rated_role != Role.TRANSCRIBER:
            raise InvalidInput("Only the client can rate the transcriber of a job.")
        if job.state not in (JobState.COMPLETED, JobState.CLIENT_COMPLETED):
            raise Conflict("Only completed jobs can be rated.", current_state=job.state.value)
        try:
            return self.store.insert(
                "ratings",
                {
                    "rater_id": rater.participant_id,
                    "rater_role": rater.role,
                    "rated_user_id": rated.participant_id,
                    "rated_role": rated_role,
                    "job_id": job_id,
                    "score": score,
                    "comment": comment,
                    "created_at": now,
                    "updated_at": now,
                },
                conn=conn,
            )
        except Conflict as e:
            raise Conflict("You have already rated this transcriber for this job.") from e

    def _recompute(self, conn: sqlite3.Connection, participant_id: int, role: Role) -> float:
        rows = self.store.fetch(
            "SELECT score FROM ratings WHERE rated_user_id=? AND rated_role=?",
            (participant_id, role),
            conn=conn,
        )
        scores = [int(r["score"]) for r in rows]
        average = mean_rating(scores)
        if average is None:
            average = self.default_for(role)
        self.store.execute(
            """
            INSERT INTO reputations(participant_id, role, average_rating, rating_count, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(participant_id, role) DO UPDATE SET
              average_rating=excluded.average_rating,
              rating_count=excluded.rating_count,
              updated_at=excluded.updated_at
            """,
            (participant_id, role, average, len(scores), utcnow()),
            conn=conn,
        )
        return average

    def recompute(self, participant_id: int, role: Any) -> float:
        role = _role(role, "role")
        with self.store.transaction() as conn:
            return self._recompute(conn, participant_id, role)

    def average(self, participant_id: int, role: Any) -> float:
        role = _role(role, "role")
        rows = self.store.query("reputations", {"participant_id": participant_id, "role": role}, limit=1)
        if not rows:
            return self.default_for(role)
        return float(rows[0]["average_rating"])

    def ratings_for(self, participant_id: int, role: Any) -> List[Rating]:
        role = _role(role, "role")
        rows = self.store.query(
            "ratings",
            {"rated_user_id": participant_id, "rated_role": role},
            order_by="created_at DESC, id DESC",
        )
        return [Rating.from_row(row) for row in rows]
