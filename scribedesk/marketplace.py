"""Transcription marketplace orchestrator."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from .claims import ClaimEngine
from .config import Settings
from .currency import HttpRateProvider, RateProvider, StaticRateProvider
from .eligibility import EligibilityGate
from .errors import Conflict, InvalidInput, MarketError, NotFound
from .ledger import PaymentLedger, to_money, to_timestamp
from .lifecycle import JobStateMachine
from .notifications import BestEffortSink, EventHub, FanoutSink, NotificationSink, WebhookSink
from .payouts import EarningsSummary, PayoutAggregator, PayoutBatch
from .pricing import PricingRule, Quote, load_rules, quote
from .ratings import RatingFeedbackLoop, validate_score
from .store import (
    ACTIVE_STATES,
    Job,
    JobState,
    JobVariant,
    LedgerEntry,
    Participant,
    PayoutState,
    Rating,
    Role,
    SQLiteStore,
    VettingStatus,
    utcnow,
)
from .transitions import release_lease


logger = logging.getLogger("scribedesk.marketplace")


class Marketplace:
    """Wires the marketplace components together; the one object the API and CLI use."""

    def __init__(
        self,
        store: SQLiteStore,
        settings: Optional[Settings] = None,
        notifier: Optional[NotificationSink] = None,
        rates: Optional[RateProvider] = None,
        pricing_rules: Optional[Sequence[PricingRule]] = None,
    ) -> None:
        """Initialize the marketplace.

        Args:
            store: Backing store shared by every component
            settings: Tunables; defaults apply when omitted
            notifier: Extra sink (e.g. a webhook) fed alongside the in-process event hub
            rates: Exchange-rate source for foreign-currency payments
            pricing_rules: Direct-upload pricing rules; read from settings when omitted
        """
        self.settings = settings or Settings()
        self.store = store
        self.events = EventHub()
        sinks: List[NotificationSink] = [self.events]
        if notifier is not None:
            sinks.append(notifier)
        self.notifier = BestEffortSink(FanoutSink(sinks))

        self._initialize_components()
        self.rates = rates or StaticRateProvider(self.settings.static_rates, self.settings.base_currency)
        if pricing_rules is None:
            pricing_rules = load_rules(self.settings.pricing_rules_path)
        self.pricing_rules: List[PricingRule] = list(pricing_rules)

    def _initialize_components(self) -> None:
        s = self.settings
        self.gate = EligibilityGate(self.store, s.reputation_threshold, s.default_transcriber_rating)
        self.ledger = PaymentLedger(self.store, self.notifier, s.transcriber_share)
        self.claims = ClaimEngine(self.store, self.gate, self.notifier, self.ledger)
        self.lifecycle = JobStateMachine(self.store, self.gate, self.ledger, self.notifier)
        self.payouts = PayoutAggregator(self.store, self.ledger, s.payout_weekday)
        self.ratings = RatingFeedbackLoop(self.store, s.default_transcriber_rating, s.default_client_rating)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Marketplace":
        store = SQLiteStore(settings.db_path)
        notifier = WebhookSink(settings.webhook_url) if settings.webhook_url else None
        rates = HttpRateProvider(settings.rates_url) if settings.rates_url else None
        logger.info(f"Marketplace using store {settings.db_path}")
        return cls(store, settings, notifier=notifier, rates=rates)

    # --- participants ---

    def register_participant(
        self,
        role: Any,
        full_name: str,
        email: str,
        vetting_status: Optional[Any] = None,
    ) -> Participant:
        try:
            role = Role(role)
        except ValueError as e:
            raise InvalidInput(f"Unknown role: {role!r}") from e
        if not isinstance(full_name, str) or not full_name.strip():
            raise InvalidInput("Full name is required.")
        if not isinstance(email, str) or "@" not in email:
            raise InvalidInput(f"Invalid email address: {email!r}")
        vetting = None
        if role == Role.TRANSCRIBER:
            try:
                vetting = VettingStatus(vetting_status or VettingStatus.PENDING_ASSESSMENT)
            except ValueError as e:
                raise InvalidInput(f"Unknown vetting status: {vetting_status!r}") from e
        now = utcnow()
        try:
            participant_id = self.store.insert(
                "participants",
                {
                    "role": role,
                    "full_name": full_name.strip(),
                    "email": email.strip().lower(),
                    "is_online": False,
                    "vetting_status": vetting,
                    "created_at": now,
                    "updated_at": now,
                },
            )
        except Conflict as e:
            raise Conflict(f"A participant with email {email} already exists.") from e
        logger.info(f"Registered {role.value} {participant_id}")
        return self.get_participant(participant_id)

    def get_participant(self, participant_id: int) -> Participant:
        participant = self.store.load_participant(participant_id)
        if participant is None:
            raise NotFound(f"Participant {participant_id} not found.")
        if participant.average_rating is None and participant.role != Role.ADMIN:
            participant.average_rating = self.ratings.default_for(participant.role)
        return participant

    def _transcriber(self, transcriber_id: int) -> Participant:
        participant = self.store.load_participant(transcriber_id)
        if participant is None or participant.role != Role.TRANSCRIBER:
            raise NotFound(f"Transcriber {transcriber_id} not found.")
        return participant

    def set_online(self, transcriber_id: int, online: bool) -> Participant:
        """Toggle availability. Going offline leaves any held lease in place."""
        self._transcriber(transcriber_id)
        self.store.conditional_update(
            "participants",
            transcriber_id,
            {"role": Role.TRANSCRIBER},
            {"is_online": bool(online), "updated_at": utcnow()},
        )
        return self.get_participant(transcriber_id)

    def set_vetting_status(self, transcriber_id: int, status: Any) -> Participant:
        try:
            status = VettingStatus(status)
        except ValueError as e:
            raise InvalidInput(f"Unknown vetting status: {status!r}") from e
        self._transcriber(transcriber_id)
        self.store.conditional_update(
            "participants",
            transcriber_id,
            {"role": Role.TRANSCRIBER},
            {"vetting_status": status, "updated_at": utcnow()},
        )
        logger.info(f"Transcriber {transcriber_id} vetting status set to {status.value}")
        return self.get_participant(transcriber_id)

    def eligible_transcribers(self, restricted: bool = False) -> List[Participant]:
        return self.gate.eligible_transcribers(restricted)

    # --- jobs ---

    def get_job(self, job_id: int) -> Job:
        return self.lifecycle.get(job_id)

    def list_jobs(
        self,
        client_id: Optional[int] = None,
        transcriber_id: Optional[int] = None,
        state: Optional[Any] = None,
        variant: Optional[Any] = None,
    ) -> List[Job]:
        filters: Dict[str, Any] = {}
        if client_id is not None:
            filters["client_id"] = client_id
        if transcriber_id is not None:
            filters["transcriber_id"] = transcriber_id
        try:
            if state is not None:
                filters["state"] = JobState(state)
            if variant is not None:
                filters["variant"] = JobVariant(variant)
        except ValueError as e:
            raise InvalidInput(str(e)) from e
        rows = self.store.query("jobs", filters, order_by="created_at DESC, id DESC")
        return [Job.from_row(row) for row in rows]

    def available_jobs(self, transcriber_id: int) -> List[Job]:
        """Open direct-upload jobs this transcriber could claim right now."""
        if not self.gate.check(transcriber_id, restricted=False):
            return []
        restricted_ok = bool(self.gate.check(transcriber_id, restricted=True))
        jobs = self.list_jobs(state=JobState.OPEN, variant=JobVariant.DIRECT_UPLOAD)
        return [job for job in jobs if restricted_ok or not job.restricted]

    def quote(
        self,
        duration_minutes: float,
        audio_quality: Optional[str] = None,
        deadline_type: Optional[str] = None,
        special_requirements: Sequence[str] = (),
    ) -> Quote:
        return quote(self.pricing_rules, duration_minutes, audio_quality, deadline_type, special_requirements)

    def submit_direct_upload(
        self,
        client_id: int,
        requirements: str,
        duration_minutes: Optional[float] = None,
        audio_quality: Optional[str] = None,
        deadline_type: Optional[str] = None,
        special_requirements: Sequence[str] = (),
        price: Optional[Any] = None,
        deadline_hours: Optional[int] = None,
        currency: Optional[str] = None,
        restricted: bool = False,
    ) -> Job:
        """Create a direct-upload job, pricing it from the rules unless a price is given."""
        details: Dict[str, Any] = {
            "audio_quality": audio_quality,
            "deadline_type": deadline_type,
            "special_requirements": list(special_requirements),
            "duration_minutes": duration_minutes,
        }
        if price is None:
            if duration_minutes is None:
                raise InvalidInput("Either a price or an audio length is required.")
            q = self.quote(duration_minutes, audio_quality, deadline_type, special_requirements)
            price = q.amount
            deadline_hours = deadline_hours or q.deadline_hours
            details["price_per_minute"] = str(q.price_per_minute)
        return self.lifecycle.create_direct_upload(
            client_id,
            price,
            currency or self.settings.base_currency,
            deadline_hours,
            requirements,
            restricted=restricted,
            details=details,
        )

    def create_negotiation(self, client_id: int, transcriber_id: int, price: Any, deadline_hours: int, requirements: str, currency: Optional[str] = None) -> Job:
        return self.lifecycle.create_negotiation(
            client_id, transcriber_id, price, currency or self.settings.base_currency, deadline_hours, requirements
        )

    def claim(self, job_id: int, transcriber_id: int) -> Job:
        return self.claims.claim(job_id, transcriber_id)

    def release(self, job_id: int, transcriber_id: int) -> Job:
        return self.claims.release(job_id, transcriber_id)

    def start(self, job_id: int, transcriber_id: int) -> Job:
        return self.lifecycle.start(job_id, transcriber_id)

    def complete_job(self, job_id: int, actor_id: int, comment: Optional[str] = None, score: Optional[int] = None) -> Job:
        """Complete a job; a client completing a negotiation may rate the transcriber at once."""
        if score is not None:
            score = validate_score(score)
        job = self.lifecycle.complete(job_id, actor_id, comment=comment)
        if score is not None and actor_id == job.client_id:
            self.store.conditional_update(
                "jobs", job_id, {"state": job.state}, {"client_feedback_rating": score, "updated_at": utcnow()}
            )
            self.ratings.record_rating(job.client_id, Role.CLIENT, job.transcriber_id, Role.TRANSCRIBER, score, comment, job_id=job_id)
            job = self.get_job(job_id)
        return job

    def review(self, job_id: int, client_id: int, score: int, comment: Optional[str] = None) -> Job:
        """Client sign-off on a completed direct upload, with a rating for the transcriber."""
        score = validate_score(score)
        job = self.lifecycle.client_review(job_id, client_id, score, comment)
        self.ratings.record_rating(client_id, Role.CLIENT, job.transcriber_id, Role.TRANSCRIBER, score, comment, job_id=job_id)
        return job

    # --- negotiations ---

    def transcriber_accept(self, job_id: int, transcriber_id: int) -> Job:
        return self.lifecycle.transcriber_accept(job_id, transcriber_id)

    def transcriber_counter(self, job_id: int, transcriber_id: int, price: Any, comment: Optional[str] = None) -> Job:
        return self.lifecycle.transcriber_counter(job_id, transcriber_id, price, comment)

    def transcriber_reject(self, job_id: int, transcriber_id: int, reason: Optional[str] = None) -> Job:
        return self.lifecycle.transcriber_reject(job_id, transcriber_id, reason)

    def client_accept_counter(self, job_id: int, client_id: int) -> Job:
        return self.lifecycle.client_accept_counter(job_id, client_id)

    def client_reject_counter(self, job_id: int, client_id: int, response: Optional[str] = None) -> Job:
        return self.lifecycle.client_reject_counter(job_id, client_id, response)

    def client_counter_back(self, job_id: int, client_id: int, price: Any, response: Optional[str] = None) -> Job:
        return self.lifecycle.client_counter_back(job_id, client_id, price, response)

    def cancel(self, job_id: int, client_id: int, reason: Optional[str] = None) -> Job:
        return self.lifecycle.cancel(job_id, client_id, reason)

    # --- payments ---

    def settle_payment(
        self,
        job_id: int,
        client_id: int,
        amount: Any,
        reference: Optional[str] = None,
        currency_paid: Optional[str] = None,
        transaction_date: Optional[str] = None,
    ) -> LedgerEntry:
        """Record the client's payment for a job.

        ``amount`` is in the job's currency and must equal the agreed price to
        the cent. A negotiation is hired in the same transaction; a job that
        is already completed has its entry made payable straight away.
        """
        job = self.lifecycle.get(job_id)
        if job.client_id != client_id:
            raise NotFound(f"Job {job_id} not found or not accessible.")
        gross = to_money(amount, "amount")
        if gross != job.price:
            raise InvalidInput(f"Payment amount {gross} does not match the agreed price {job.price} {job.currency}.")
        transaction_date = to_timestamp(transaction_date)

        exchange_rate = None
        if currency_paid and currency_paid.upper() != job.currency:
            exchange_rate = self.rates.snapshot(job.currency, currency_paid)

        with self.store.transaction() as conn:
            current = self.lifecycle.get(job_id, conn=conn)
            entry = self.ledger.record_settlement(
                current,
                gross,
                current.currency,
                exchange_rate=exchange_rate,
                currency_paid=currency_paid,
                reference=reference,
                transaction_date=transaction_date,
                conn=conn,
            )
            if current.state in (JobState.COMPLETED, JobState.CLIENT_COMPLETED):
                entry = self.ledger.advance_to_pending(current, conn=conn)
            elif current.variant == JobVariant.NEGOTIATION:
                self.lifecycle.hire(job_id, conn)

        job = self.get_job(job_id)
        self.notifier.notify(
            client_id,
            "payment_successful",
            {"job_id": job_id, "entry_id": entry.entry_id, "amount": str(gross), "currency": job.currency},
        )
        if job.variant == JobVariant.NEGOTIATION and job.state == JobState.HIRED:
            self.notifier.notify(job.transcriber_id, "job_hired", {"job_id": job_id, "state": job.state.value})
        return self.ledger.get(entry.entry_id)

    def payment_history(self, transcriber_id: Optional[int] = None, client_id: Optional[int] = None) -> List[LedgerEntry]:
        return self.ledger.entries(transcriber_id=transcriber_id, client_id=client_id)

    def payout_batches(self, transcriber_id: Optional[int] = None) -> List[PayoutBatch]:
        return self.payouts.batches(transcriber_id)

    def earnings(self, transcriber_id: Optional[int] = None, today: Optional[date] = None) -> EarningsSummary:
        return self.payouts.summary(transcriber_id, today)

    def mark_paid_out(self, entry_id: int) -> LedgerEntry:
        return self.ledger.mark_paid_out(entry_id)

    # --- ratings ---

    def rate(
        self,
        rater_id: int,
        rater_role: Any,
        rated_user_id: int,
        rated_role: Any,
        score: Any,
        comment: Optional[str] = None,
        job_id: Optional[int] = None,
    ) -> Rating:
        rating, _ = self.ratings.record_rating(rater_id, rater_role, rated_user_id, rated_role, score, comment, job_id)
        return rating

    # --- maintenance ---

    def reconcile_leases(self) -> List[int]:
        """Clear leases that point at a job the transcriber no longer actively holds.

        Idempotent; returns the ids of the transcribers whose lease was cleared.
        """
        q_marks = ",".join(["?"] * len(ACTIVE_STATES))
        rows = self.store.fetch(
            f"""
            SELECT p.id AS participant_id, p.current_job_id AS job_id
            FROM participants p
            LEFT JOIN jobs j ON j.id = p.current_job_id
            WHERE p.current_job_id IS NOT NULL
              AND (j.id IS NULL OR j.transcriber_id IS NULL OR j.transcriber_id != p.id
                   OR j.state NOT IN ({q_marks}))
            """,
            tuple(ACTIVE_STATES),
        )
        cleared: List[int] = []
        for row in rows:
            if release_lease(self.store, row["participant_id"], row["job_id"]):
                logger.info(f"Released stale lease of transcriber {row['participant_id']} on job {row['job_id']}")
                cleared.append(row["participant_id"])
        return cleared

    def reconcile_ledger(self) -> List[int]:
        """Advance entries of completed jobs still awaiting completion; returns their ids."""
        advanced: List[int] = []
        for entry in self.ledger.entries(states=[PayoutState.AWAITING_COMPLETION]):
            job = self.store.load_job(entry.job_id)
            if job is None or job.state not in (JobState.COMPLETED, JobState.CLIENT_COMPLETED):
                continue
            try:
                updated = self.ledger.advance_to_pending(job)
            except MarketError as e:
                logger.error(f"Ledger entry {entry.entry_id} still awaiting completion: {e.message}")
                continue
            if updated is not None and updated.payout_state == PayoutState.PENDING:
                advanced.append(entry.entry_id)
        return advanced

    def stats(self) -> Dict[str, Any]:
        return {"jobs": self.store.counts(), "last_event": self.events.last_seq}

    def close(self) -> None:
        """Close the HTTP clients held by the notifier and the rate provider."""
        self.notifier.close()
        self.rates.close()
