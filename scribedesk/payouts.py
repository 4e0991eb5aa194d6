"""Weekly payout batches.

A pure projection over ledger rows: recomputed on every query, never stored.
An entry belongs to the batch of the next Friday on or after its transaction
date; a Friday transaction lands in that same Friday's batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from .store import LedgerEntry, PayoutState, SQLiteStore, UNPAID_PAYOUT_STATES, parse_timestamp
from .ledger import PaymentLedger


FRIDAY = 4  # date.weekday(): Monday == 0

Moment = Union[date, datetime, str]


def _as_date(moment: Moment) -> date:
    if isinstance(moment, str):
        moment = parse_timestamp(moment)
    if isinstance(moment, datetime):
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        return moment.date()
    return moment


def week_ending(moment: Moment, payout_weekday: int = FRIDAY) -> date:
    day = _as_date(moment)
    return day + timedelta(days=(payout_weekday - day.weekday() + 7) % 7)


def cutoff(moment: Moment, payout_weekday: int = FRIDAY) -> datetime:
    """End of the payout day for ``moment``'s batch."""
    return datetime.combine(week_ending(moment, payout_weekday), time.max, tzinfo=timezone.utc)


@dataclass
class PayoutBatch:
    week_ending: date
    entries: List[LedgerEntry] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((e.transcriber_share for e in self.entries), Decimal("0.00"))

    @property
    def cutoff(self) -> datetime:
        return datetime.combine(self.week_ending, time.max, tzinfo=timezone.utc)

    def to_dict(self) -> Dict[str, object]:
        return {
            "date": self.week_ending.isoformat(),
            "total_amount": str(self.total),
            "payouts": [e.to_dict() for e in self.entries],
        }


def aggregate(entries: Iterable[LedgerEntry], payout_weekday: int = FRIDAY) -> List[PayoutBatch]:
    """Scatter unpaid entries into weekly batches, sorted by week ending."""
    batches: Dict[date, PayoutBatch] = {}
    for entry in entries:
        if entry.payout_state not in UNPAID_PAYOUT_STATES:
            continue
        key = week_ending(entry.transaction_date, payout_weekday)
        batches.setdefault(key, PayoutBatch(key)).entries.append(entry)
    return [batches[key] for key in sorted(batches)]


@dataclass
class EarningsSummary:
    upcoming: Decimal
    total_paid_out: Decimal
    paid_out_this_month: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "total_upcoming_payouts": str(self.upcoming),
            "total_earnings": str(self.total_paid_out),
            "monthly_earnings": str(self.paid_out_this_month),
        }


def summarize(entries: Iterable[LedgerEntry], today: Optional[date] = None) -> EarningsSummary:
    today = today or datetime.now(timezone.utc).date()
    upcoming = Decimal("0.00")
    paid = Decimal("0.00")
    month = Decimal("0.00")
    for entry in entries:
        if entry.payout_state in UNPAID_PAYOUT_STATES:
            upcoming += entry.transcriber_share
        elif entry.payout_state == PayoutState.PAID_OUT:
            paid += entry.transcriber_share
            when = _as_date(entry.transaction_date)
            if (when.year, when.month) == (today.year, today.month):
                month += entry.transcriber_share
    return EarningsSummary(upcoming, paid, month)


class PayoutAggregator:
    """Reads the ledger on every call; holds nothing between calls."""

    def __init__(self, store: SQLiteStore, ledger: PaymentLedger, payout_weekday: int = FRIDAY) -> None:
        self.store = store
        self.ledger = ledger
        self.payout_weekday = payout_weekday

    def batches(self, transcriber_id: Optional[int] = None) -> List[PayoutBatch]:
        entries = self.ledger.entries(transcriber_id=transcriber_id, states=UNPAID_PAYOUT_STATES)
        return aggregate(entries, self.payout_weekday)

    def summary(self, transcriber_id: Optional[int] = None, today: Optional[date] = None) -> EarningsSummary:
        return summarize(self.ledger.entries(transcriber_id=transcriber_id), today)
