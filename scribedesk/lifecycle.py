"""Job state machine for both job variants.

Every transition is a row in ``transitions.TRANSITIONS`` applied through the
guarded update, so a caller who lost a race gets a Conflict instead of
overwriting another actor's change. Notifications go out only after commit.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from .eligibility import EligibilityGate
from .errors import Conflict, InvalidInput, MarketError, NotFound
from .ledger import PaymentLedger, to_money
from .notifications import NotificationSink
from .ratings import validate_score
from .store import Job, JobState, JobVariant, Role, SQLiteStore, utcnow
from .transitions import acquire_lease, release_lease, transition_job


logger = logging.getLogger("scribedesk.lifecycle")

# Negotiation states that block a second offer between the same pair
OPEN_NEGOTIATION_STATES = (
    JobState.PENDING,
    JobState.TRANSCRIBER_COUNTER,
    JobState.CLIENT_COUNTER,
    JobState.ACCEPTED_AWAITING_PAYMENT,
)


def validate_terms(price: Any, currency: Any, deadline_hours: Any, requirements: Any) -> Tuple[Decimal, str, int, str]:
    amount = to_money(price, "price")
    if amount <= 0:
        raise InvalidInput("Price must be a positive amount.")
    if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
        raise InvalidInput(f"Invalid currency code: {currency!r}")
    if isinstance(deadline_hours, bool) or not isinstance(deadline_hours, int) or deadline_hours <= 0:
        raise InvalidInput("Deadline must be a positive whole number of hours.")
    if not isinstance(requirements, str) or not requirements.strip():
        raise InvalidInput("Requirements must not be empty.")
    return amount, currency.upper(), deadline_hours, requirements.strip()


class JobStateMachine:
    def __init__(self, store: SQLiteStore, gate: EligibilityGate, ledger: PaymentLedger, notifier: NotificationSink) -> None:
        self.store = store
        self.gate = gate
        self.ledger = ledger
        self.notifier = notifier

    # --- lookups ---

    def get(self, job_id: int, conn: Optional[sqlite3.Connection] = None) -> Job:
        job = self.store.load_job(job_id, conn=conn)
        if job is None:
            raise NotFound(f"Job {job_id} not found.")
        return job

    def _require_client(self, client_id: int) -> None:
        client = self.store.load_participant(client_id)
        if client is None or client.role != Role.CLIENT:
            raise NotFound(f"Client {client_id} not found.")

    def _as_client(self, job_id: int, client_id: int, variant: JobVariant) -> Job:
        job = self.store.load_job(job_id)
        if job is None or job.variant != variant or job.client_id != client_id:
            raise NotFound(f"Job {job_id} not found or not accessible.")
        return job

    def _as_offered_transcriber(self, job_id: int, transcriber_id: int) -> Job:
        job = self.store.load_job(job_id)
        if job is None or job.variant != JobVariant.NEGOTIATION or job.offered_to != transcriber_id:
            raise NotFound(f"Negotiation {job_id} not found or not accessible.")
        return job

    def _insert_job(self, fields: Dict[str, Any], conn: sqlite3.Connection) -> int:
        now = utcnow()
        row = {"created_at": now, "updated_at": now}
        row.update(fields)
        return self.store.insert("jobs", row, conn=conn)

    # --- creation ---

    def create_direct_upload(
        self,
        client_id: int,
        price: Any,
        currency: Any,
        deadline_hours: Any,
        requirements: Any,
        restricted: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Create an open direct-upload job, visible to every eligible transcriber."""
        amount, currency, deadline_hours, requirements = validate_terms(price, currency, deadline_hours, requirements)
        self._require_client(client_id)
        with self.store.transaction() as conn:
            job_id = self._insert_job(
                {
                    "variant": JobVariant.DIRECT_UPLOAD,
                    "client_id": client_id,
                    "state": JobState.OPEN,
                    "restricted": bool(restricted),
                    "price": amount,
                    "currency": currency,
                    "deadline_hours": deadline_hours,
                    "requirements": requirements,
                    "details_json": json.dumps(details or {}),
                },
                conn,
            )
        job = self.get(job_id)
        logger.info(f"Direct upload job {job_id} created by client {client_id}: {amount} {currency}")
        self.notifier.broadcast(
            "new_direct_job_available",
            {"job_id": job_id, "price": str(amount), "currency": currency, "restricted": job.restricted},
        )
        return job

    def create_negotiation(
        self,
        client_id: int,
        transcriber_id: int,
        price: Any,
        currency: Any,
        deadline_hours: Any,
        requirements: Any,
        details: Optional[Dict[str, Any]] = None,
    ) -> Job:
        """Send an offer to one named transcriber, who must be online, idle and vetted."""
        amount, currency, deadline_hours, requirements = validate_terms(price, currency, deadline_hours, requirements)
        self._require_client(client_id)
        verdict = self.gate.check(transcriber_id, restricted=False)
        if not verdict:
            raise Conflict(f"Transcriber is not available for new work. {verdict.reason}")

        with self.store.transaction() as conn:
            existing = self.store.query(
                "jobs",
                {
                    "variant": JobVariant.NEGOTIATION,
                    "client_id": client_id,
                    "offered_to": transcriber_id,
                    "state": list(OPEN_NEGOTIATION_STATES),
                },
                limit=1,
                conn=conn,
            )
            if existing:
                raise Conflict(
                    "You already have an active negotiation with this transcriber.",
                    current_state=existing[0]["state"],
                )
            job_id = self._insert_job(
                {
                    "variant": JobVariant.NEGOTIATION,
                    "client_id": client_id,
                    "offered_to": transcriber_id,
                    "state": JobState.PENDING,
                    "price": amount,
                    "currency": currency,
                    "deadline_hours": deadline_hours,
                    "requirements": requirements,
                    "details_json": json.dumps(details or {}),
                },
                conn,
            )
        job = self.get(job_id)
        logger.info(f"Negotiation {job_id} opened by client {client_id} with transcriber {transcriber_id}")
        self.notifier.notify(
            transcriber_id,
            "new_negotiation_request",
            {"job_id": job_id, "client_id": client_id, "price": str(amount), "currency": currency},
        )
        return job

    # --- negotiation, transcriber side ---

    def transcriber_accept(self, job_id: int, transcriber_id: int) -> Job:
        self._as_offered_transcriber(job_id, transcriber_id)
        transition_job(
            self.store,
            job_id,
            JobVariant.NEGOTIATION,
            "accept",
            fields={"transcriber_id": transcriber_id},
            expected={"offered_to": transcriber_id, "transcriber_id": None},
        )
        job = self.get(job_id)
        self.notifier.notify(job.client_id, "negotiation_accepted", {"job_id": job_id, "state": job.state.value})
        return job

    def transcriber_counter(self, job_id: int, transcriber_id: int, price: Any, comment: Optional[str] = None) -> Job:
        amount = to_money(price, "price")
        if amount <= 0:
            raise InvalidInput("Price must be a positive amount.")
        self._as_offered_transcriber(job_id, transcriber_id)
        transition_job(
            self.store,
            job_id,
            JobVariant.NEGOTIATION,
            "counter",
            fields={"price": amount, "transcriber_response": comment},
            expected={"offered_to": transcriber_id},
        )
        job = self.get(job_id)
        self.notifier.notify(
            job.client_id,
            "negotiation_countered",
            {"job_id": job_id, "price": str(amount), "state": job.state.value},
        )
        return job

    def transcriber_reject(self, job_id: int, transcriber_id: int, reason: Optional[str] = None) -> Job:
        self._as_offered_transcriber(job_id, transcriber_id)
        transition_job(
            self.store,
            job_id,
            JobVariant.NEGOTIATION,
            "reject",
            fields={"transcriber_response": reason},
            expected={"offered_to": transcriber_id},
        )
        job = self.get(job_id)
        self.notifier.notify(job.client_id, "negotiation_rejected", {"job_id": job_id, "state": job.state.value})
        return job

    # --- negotiation, client side ---

    def client_accept_counter(self, job_id: int, client_id: int) -> Job:
        job = self._as_client(job_id, client_id, JobVariant.NEGOTIATION)
        transition_job(
            self.store,
            job_id,
            JobVariant.NEGOTIATION,
            "accept_counter",
            fields={"transcriber_id": job.offered_to},
            expected={"client_id": client_id, "transcriber_id": None},
        )
        job = self.get(job_id)
        self.notifier.notify(job.offered_to, "negotiation_accepted", {"job_id": job_id, "state": job.state.value})
        return job

    def client_reject_counter(self, job_id: int, client_id: int, response: Optional[str] = None) -> Job:
        self._as_client(job_id, client_id, JobVariant.NEGOTIATION)
        transition_job(
            self.store,
            job_id,
            JobVariant.NEGOTIATION,
            "reject_counter",
            fields={"client_response": response},
            expected={"client_id": client_id},
        )
        job = self.get(job_id)
        self.notifier.notify(job.offered_to, "negotiation_rejected", {"job_id": job_id, "state": job.state.value})
        return job

    def client_counter_back(self, job_id: int, client_id: int, price: Any, response: Optional[str] = None) -> Job:
        amount = to_money(price, "price")
        if amount <= 0:
            raise InvalidInput("Price must be a positive amount.")
        self._as_client(job_id, client_id, JobVariant.NEGOTIATION)
        transition_job(
            self.store,
            job_id,
            JobVariant.NEGOTIATION,
            "counter_back",
            fields={"price": amount, "client_response": response},
            expected={"client_id": client_id},
        )
        job = self.get(job_id)
        self.notifier.notify(
            job.offered_to,
            "negotiation_countered",
            {"job_id": job_id, "price": str(amount), "state": job.state.value},
        )
        return job

    def cancel(self, job_id: int, client_id: int, reason: Optional[str] = None) -> Job:
        """Withdraw an unpaid negotiation. Terminal; never produces a ledger entry."""
        self._as_client(job_id, client_id, JobVariant.NEGOTIATION)
        transition_job(
            self.store,
            job_id,
            JobVariant.NEGOTIATION,
            "cancel",
            fields={"client_response": reason},
            expected={"client_id": client_id},
        )
        job = self.get(job_id)
        self.notifier.notify(job.offered_to, "negotiation_cancelled", {"job_id": job_id, "state": job.state.value})
        return job

    def hire(self, job_id: int, conn: sqlite3.Connection) -> None:
        """accepted_awaiting_payment -> hired, taking the transcriber's lease.

        Runs inside the caller's payment transaction so the settlement, the
        state change and the lease commit together or not at all.
        """
        job = self.get(job_id, conn=conn)
        if job.transcriber_id is None:
            raise Conflict(f"Negotiation {job_id} has no accepted transcriber.", current_state=job.state.value)
        transition_job(
            self.store,
            job_id,
            JobVariant.NEGOTIATION,
            "hire",
            expected={"transcriber_id": job.transcriber_id},
            conn=conn,
        )
        acquire_lease(self.store, job.transcriber_id, job_id, conn)

    # --- work ---

    def start(self, job_id: int, transcriber_id: int) -> Job:
        job = self.store.load_job(job_id)
        if job is None or job.variant != JobVariant.DIRECT_UPLOAD or job.transcriber_id != transcriber_id:
            raise NotFound(f"Job {job_id} not found or not assigned to you.")
        transition_job(
            self.store,
            job_id,
            JobVariant.DIRECT_UPLOAD,
            "start",
            expected={"transcriber_id": transcriber_id},
        )
        job = self.get(job_id)
        self.notifier.notify(job.client_id, "direct_job_started", {"job_id": job_id, "state": job.state.value})
        return job

    def complete(self, job_id: int, actor_id: int, comment: Optional[str] = None) -> Job:
        """Finish the work, release the lease and make the settlement payable.

        Direct uploads are completed by their transcriber; negotiations by
        either party. The state write, lease release and job counters share one
        transaction. The ledger step runs after commit: a missing entry is
        logged, and a failure is logged and left for ``advance_to_pending``.
        """
        job = self.get(job_id)
        allowed = {job.transcriber_id}
        if job.variant == JobVariant.NEGOTIATION:
            allowed.add(job.client_id)
        if job.transcriber_id is None or actor_id not in allowed:
            raise NotFound(f"Job {job_id} not found or not accessible.")

        fields: Dict[str, Any] = {}
        if comment is not None:
            fields["transcriber_comment" if actor_id == job.transcriber_id else "client_feedback_comment"] = comment
        now = utcnow()
        with self.store.transaction() as conn:
            transition_job(
                self.store,
                job_id,
                job.variant,
                "complete",
                fields=fields,
                expected={"transcriber_id": job.transcriber_id},
                conn=conn,
            )
            release_lease(self.store, job.transcriber_id, job_id, conn=conn)
            self.store.execute(
                "UPDATE participants SET completed_jobs = completed_jobs + 1, updated_at=? WHERE id IN (?, ?)",
                (now, job.transcriber_id, job.client_id),
                conn=conn,
            )

        completed = self.get(job_id)
        try:
            entry = self.ledger.advance_to_pending(completed)
        except MarketError as e:
            logger.error(f"Job {job_id} completed but its ledger entry was not advanced: {e.message}")
        else:
            if entry is None:
                logger.warning(f"Job {job_id} completed without a ledger entry")

        payload = {"job_id": job_id, "variant": completed.variant.value, "state": completed.state.value}
        self.notifier.notify(completed.client_id, "job_completed", payload)
        self.notifier.notify(completed.transcriber_id, "job_completed", payload)
        return completed

    def client_review(self, job_id: int, client_id: int, score: Optional[int] = None, comment: Optional[str] = None) -> Job:
        """completed -> client_completed for a direct upload, storing the client's feedback."""
        if score is not None:
            score = validate_score(score)
        self._as_client(job_id, client_id, JobVariant.DIRECT_UPLOAD)
        transition_job(
            self.store,
            job_id,
            JobVariant.DIRECT_UPLOAD,
            "review",
            fields={"client_feedback_rating": score, "client_feedback_comment": comment},
            expected={"client_id": client_id},
        )
        job = self.get(job_id)
        if job.transcriber_id is not None:
            self.notifier.notify(
                job.transcriber_id,
                "direct_job_client_completed",
                {"job_id": job_id, "state": job.state.value, "rating": score},
            )
        return job
