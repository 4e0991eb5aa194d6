"""Payment ledger: one settlement entry per billable job.

Payout state only moves forward: awaiting_completion -> pending -> paid_out.
"""

from __future__ import annotations

import logging
import sqlite3
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional

from .errors import Conflict, InvalidInput, NotFound
from .notifications import NotificationSink
from .store import (
    Job,
    JobState,
    JobVariant,
    LedgerEntry,
    PayoutState,
    SQLiteStore,
    parse_timestamp,
    utcnow,
)
from .transitions import guarded_update


logger = logging.getLogger("scribedesk.ledger")

CENT = Decimal("0.01")


def to_money(value: Any, what: str = "amount") -> Decimal:
    try:
        amount = Decimal(str(value))
        if amount.is_finite():
            # Overflows the decimal context for absurdly large values
            return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise InvalidInput(f"Invalid {what}: {value!r}") from e
    raise InvalidInput(f"Invalid {what}: {value!r}")


def to_timestamp(value: Any) -> Optional[str]:
    """Normalize a caller-supplied ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidInput(f"Invalid transaction date: {value!r}")
    try:
        return parse_timestamp(value).isoformat()
    except ValueError as e:
        raise InvalidInput(f"Invalid transaction date: {value!r}") from e


def transcriber_share(gross: Decimal, share: Decimal) -> Decimal:
    return (gross * share).quantize(CENT, rounding=ROUND_HALF_UP)


class PaymentLedger:
    def __init__(self, store: SQLiteStore, notifier: NotificationSink, share: Decimal = Decimal("0.80")) -> None:
        self.store = store
        self.notifier = notifier
        self.share = share

    def record_settlement(
        self,
        job: Job,
        gross_amount: Any,
        currency: str,
        exchange_rate: Optional[Decimal] = None,
        currency_paid: Optional[str] = None,
        reference: Optional[str] = None,
        transaction_date: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> LedgerEntry:
        """Create the job's settlement entry in awaiting_completion.

        The share is always computed from the gross amount in its own currency;
        the exchange rate is kept for audit display only.
        """
        gross = to_money(gross_amount, "gross amount")
        when = to_timestamp(transaction_date)
        if gross <= 0:
            raise InvalidInput("Gross amount must be positive.")
        if job.state in (JobState.REJECTED, JobState.CANCELLED):
            raise Conflict(f"Job {job.job_id} is {job.state.value}; it cannot be settled.", current_state=job.state.value)

        now = utcnow()
        fields = {
            "job_id": job.job_id,
            "job_variant": job.variant,
            "client_id": job.client_id,
            "transcriber_id": job.transcriber_id,
            "gross_amount": gross,
            "transcriber_share": transcriber_share(gross, self.share),
            "currency": currency.upper(),
            "currency_paid": currency_paid.upper() if currency_paid else None,
            "exchange_rate": exchange_rate,
            "reference": reference,
            "payout_state": PayoutState.AWAITING_COMPLETION,
            "transaction_date": when or now,
            "created_at": now,
            "updated_at": now,
        }
        try:
            entry_id = self.store.insert("ledger_entries", fields, conn=conn)
        except Conflict as e:
            logger.warning(f"Duplicate settlement refused for {job.variant.value} job {job.job_id}")
            raise Conflict(f"Job {job.job_id} already has a settlement entry.") from e
        logger.info(f"Recorded settlement {entry_id} for {job.variant.value} job {job.job_id}: {gross} {currency}")
        return self.store.load_ledger_entry(entry_id, conn=conn)

    def entry_for_job(self, job_id: int, variant: JobVariant, conn: Optional[sqlite3.Connection] = None) -> Optional[LedgerEntry]:
        rows = self.store.query("ledger_entries", {"job_id": job_id, "job_variant": variant}, limit=1, conn=conn)
        return LedgerEntry.from_row(rows[0]) if rows else None

    def advance_to_pending(self, job: Job, conn: Optional[sqlite3.Connection] = None) -> Optional[LedgerEntry]:
        """awaiting_completion -> pending for the job's entry.

        Returns None when the job has no entry. Idempotent: an entry already
        past awaiting_completion is returned unchanged.
        """
        entry = self.entry_for_job(job.job_id, job.variant, conn=conn)
        if entry is None:
            return None
        if entry.payout_state != PayoutState.AWAITING_COMPLETION:
            return entry
        new_fields = {"payout_state": PayoutState.PENDING, "updated_at": utcnow()}
        if job.transcriber_id is not None:
            # The payee is whoever completed the job, not whoever held it at payment time
            new_fields["transcriber_id"] = job.transcriber_id
        affected = self.store.conditional_update(
            "ledger_entries",
            entry.entry_id,
            {"payout_state": PayoutState.AWAITING_COMPLETION},
            new_fields,
            conn=conn,
        )
        if affected:
            logger.info(f"Ledger entry {entry.entry_id} for job {job.job_id} now pending payout")
        return self.store.load_ledger_entry(entry.entry_id, conn=conn)

    def assign_payee(
        self,
        job_id: int,
        variant: JobVariant,
        transcriber_id: Optional[int],
        conn: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Point an unsettled entry at the job's current holder (None after a release)."""
        return self.store.execute(
            "UPDATE ledger_entries SET transcriber_id=?, updated_at=? "
            "WHERE job_id=? AND job_variant=? AND payout_state=?",
            (transcriber_id, utcnow(), job_id, variant, PayoutState.AWAITING_COMPLETION),
            conn=conn,
        )

    def mark_paid_out(self, entry_id: int) -> LedgerEntry:
        """pending -> paid_out. Irreversible; a second call is a Conflict."""
        now = utcnow()
        guarded_update(
            self.store,
            "ledger_entries",
            entry_id,
            {"payout_state": PayoutState.PENDING},
            {"payout_state": PayoutState.PAID_OUT, "paid_out_at": now, "updated_at": now},
            state_column="payout_state",
        )
        entry = self.store.load_ledger_entry(entry_id)
        logger.info(f"Ledger entry {entry_id} paid out: {entry.transcriber_share} {entry.currency}")
        if entry.transcriber_id is not None:
            self.notifier.notify(
                entry.transcriber_id,
                "payout_processed",
                {"entry_id": entry_id, "amount": str(entry.transcriber_share), "currency": entry.currency},
            )
        return entry

    def get(self, entry_id: int) -> LedgerEntry:
        entry = self.store.load_ledger_entry(entry_id)
        if entry is None:
            raise NotFound(f"Payment record {entry_id} not found.")
        return entry

    def entries(
        self,
        transcriber_id: Optional[int] = None,
        client_id: Optional[int] = None,
        states: Optional[Iterable[PayoutState]] = None,
    ) -> List[LedgerEntry]:
        filters: dict = {}
        if transcriber_id is not None:
            filters["transcriber_id"] = transcriber_id
        if client_id is not None:
            filters["client_id"] = client_id
        if states is not None:
            filters["payout_state"] = list(states)
        rows = self.store.query("ledger_entries", filters, order_by="transaction_date, id")
        return [LedgerEntry.from_row(row) for row in rows]
