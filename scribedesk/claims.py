"""Claim engine: exclusive, race-free assignment of an open job to one transcriber."""

from __future__ import annotations

import logging
from typing import Optional

from .eligibility import EligibilityGate
from .errors import Conflict, NotFound
from .ledger import PaymentLedger
from .notifications import NotificationSink
from .store import Job, JobState, JobVariant, SQLiteStore, utcnow
from .transitions import acquire_lease, release_lease, transition_job


logger = logging.getLogger("scribedesk.claims")


class ClaimEngine:
    def __init__(
        self,
        store: SQLiteStore,
        gate: EligibilityGate,
        notifier: NotificationSink,
        ledger: Optional[PaymentLedger] = None,
    ) -> None:
        self.store = store
        self.gate = gate
        self.notifier = notifier
        # A job paid for up front follows its holder until completion
        self.ledger = ledger

    def claim(self, job_id: int, transcriber_id: int) -> Job:
        """Move ``job_id`` from open to claimed by ``transcriber_id``.

        The job UPDATE matches on id, state='open', transcriber_id IS NULL and
        the transcriber's eligibility, all in one statement; the lease is taken
        in the same transaction. Losing the race raises Conflict.
        """
        job = self.store.load_job(job_id)
        if job is None or job.variant != JobVariant.DIRECT_UPLOAD:
            raise NotFound(f"Job {job_id} not found.")

        now = utcnow()
        with self.store.transaction() as conn:
            affected = self.store.conditional_update(
                "jobs",
                job_id,
                {"variant": JobVariant.DIRECT_UPLOAD, "state": JobState.OPEN, "transcriber_id": None},
                {"transcriber_id": transcriber_id, "state": JobState.CLAIMED, "taken_at": now, "updated_at": now},
                conn=conn,
                extra=self.gate.sql_predicate(transcriber_id, job.restricted),
            )
            if affected == 0:
                current = self.store.load_job(job_id, conn=conn)
                if current is not None and current.state == JobState.OPEN:
                    verdict = self.gate.check(transcriber_id, job.restricted)
                    logger.info(f"Claim of job {job_id} by {transcriber_id} refused: {verdict.reason}")
                    raise Conflict(f"You cannot take this job. {verdict.reason}", current_state=current.state.value)
                state = current.state.value if current else None
                logger.warning(f"Claim of job {job_id} by {transcriber_id} lost: job is '{state}'")
                raise Conflict("Job not found, already taken, or no longer available.", current_state=state)
            acquire_lease(self.store, transcriber_id, job_id, conn)
            if self.ledger is not None:
                self.ledger.assign_payee(job_id, JobVariant.DIRECT_UPLOAD, transcriber_id, conn=conn)

        claimed = self.store.load_job(job_id)
        logger.info(f"Job {job_id} claimed by transcriber {transcriber_id}")
        self.notifier.notify(
            claimed.client_id,
            "job_claimed",
            {"job_id": job_id, "transcriber_id": transcriber_id, "state": claimed.state.value},
        )
        self.notifier.broadcast("job_no_longer_available", {"job_id": job_id, "state": claimed.state.value})
        return claimed

    def release(self, job_id: int, transcriber_id: int) -> Job:
        """Hand a claimed job back to the open pool; the explicit release path."""
        job = self.store.load_job(job_id)
        if job is None or job.variant != JobVariant.DIRECT_UPLOAD or job.transcriber_id != transcriber_id:
            raise NotFound(f"Job {job_id} not found or not assigned to you.")

        with self.store.transaction() as conn:
            transition_job(
                self.store,
                job_id,
                JobVariant.DIRECT_UPLOAD,
                "release",
                fields={"transcriber_id": None, "taken_at": None},
                expected={"transcriber_id": transcriber_id},
                conn=conn,
            )
            release_lease(self.store, transcriber_id, job_id, conn=conn)
            if self.ledger is not None:
                self.ledger.assign_payee(job_id, JobVariant.DIRECT_UPLOAD, None, conn=conn)

        released = self.store.load_job(job_id)
        self.notifier.notify(released.client_id, "job_released", {"job_id": job_id, "state": released.state.value})
        self.notifier.broadcast("job_available", {"job_id": job_id, "price": str(released.price), "currency": released.currency})
        return released
