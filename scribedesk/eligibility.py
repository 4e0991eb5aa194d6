"""Eligibility gate: may this transcriber claim this class of job?"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from .errors import NotFound
from .store import Clause, Participant, Role, SQLiteStore, VettingStatus


logger = logging.getLogger("scribedesk.eligibility")


@dataclass
class Eligibility:
    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


class EligibilityGate:
    """Evaluates online / idle / vetted / reputation checks. Never mutates anything."""

    def __init__(self, store: SQLiteStore, threshold: float = 4.0, default_rating: float = 0.0) -> None:
        self.store = store
        self.threshold = threshold
        self.default_rating = default_rating

    def evaluate(self, transcriber: Participant, restricted: bool) -> Eligibility:
        reasons: List[str] = []
        if not transcriber.is_online:
            reasons.append("You are currently offline. Please go online.")
        if transcriber.current_job_id is not None:
            reasons.append("You already have an active job. Please complete your current job first.")
        if transcriber.vetting_status != VettingStatus.ACTIVE:
            reasons.append("You are not an active transcriber. Please complete your assessment.")
        if restricted:
            rating = transcriber.average_rating if transcriber.average_rating is not None else self.default_rating
            if rating < self.threshold:
                reasons.append(f"Only transcribers rated {self.threshold:g} or higher can take these jobs.")
        if reasons:
            return Eligibility(False, " ".join(reasons))
        return Eligibility(True, "eligible")

    def check(self, transcriber_id: int, restricted: bool) -> Eligibility:
        transcriber = self.store.load_participant(transcriber_id)
        if transcriber is None or transcriber.role != Role.TRANSCRIBER:
            raise NotFound(f"Transcriber {transcriber_id} not found.")
        result = self.evaluate(transcriber, restricted)
        if not result:
            logger.info(f"Transcriber {transcriber_id} not eligible: {result.reason}")
        return result

    def sql_predicate(self, transcriber_id: int, restricted: bool) -> Clause:
        """The same rules as ``evaluate``, as a clause to AND into an atomic UPDATE."""
        sql = """
            EXISTS (
              SELECT 1 FROM participants p
              LEFT JOIN reputations r ON r.participant_id = p.id AND r.role = 'transcriber'
              WHERE p.id=? AND p.role='transcriber' AND p.is_online=1
                AND p.current_job_id IS NULL AND p.vetting_status='active'
        """
        params: List[object] = [transcriber_id]
        if restricted:
            sql += " AND COALESCE(r.average_rating, ?) >= ?"
            params.extend([self.default_rating, self.threshold])
        sql += ")"
        return sql, params

    def eligible_transcribers(self, restricted: bool = False) -> List[Participant]:
        rows = self.store.fetch(
            """
            SELECT p.*, r.average_rating AS average_rating
            FROM participants p
            LEFT JOIN reputations r ON r.participant_id = p.id AND r.role = 'transcriber'
            WHERE p.role='transcriber'
            ORDER BY COALESCE(r.average_rating, ?) DESC, p.id
            """,
            (self.default_rating,),
        )
        candidates = [Participant.from_row(row) for row in rows]
        return [t for t in candidates if self.evaluate(t, restricted)]
