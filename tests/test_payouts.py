from datetime import date, datetime, time, timezone
from decimal import Decimal

import pytest

from scribedesk.payouts import aggregate, cutoff, summarize, week_ending
from scribedesk.store import JobVariant, LedgerEntry, PayoutState

# 2024-05-03 is a Friday
FRIDAY = date(2024, 5, 3)


def _entry(entry_id, when, share, state=PayoutState.PENDING, transcriber_id=1):
    return LedgerEntry(
        entry_id=entry_id,
        job_id=entry_id,
        job_variant=JobVariant.DIRECT_UPLOAD,
        client_id=9,
        transcriber_id=transcriber_id,
        gross_amount=(Decimal(share) / Decimal("0.80")).quantize(Decimal("0.01")),
        transcriber_share=Decimal(share),
        currency="USD",
        currency_paid=None,
        exchange_rate=None,
        reference=None,
        payout_state=state,
        transaction_date=when,
        paid_out_at=None,
    )


@pytest.mark.parametrize(
    "moment, expected",
    [
        (date(2024, 5, 3), date(2024, 5, 3)),  # Friday stays
        (date(2024, 5, 4), date(2024, 5, 10)),  # Saturday, six days later
        (date(2024, 5, 2), date(2024, 5, 3)),  # Thursday, next day
        (date(2024, 5, 5), date(2024, 5, 10)),  # Sunday
        (date(2024, 5, 6), date(2024, 5, 10)),  # Monday
        ("2024-05-03T23:59:59+00:00", date(2024, 5, 3)),
        # Late Friday evening in New York is already Saturday in UTC
        ("2024-05-03T21:00:00-05:00", date(2024, 5, 10)),
        (datetime(2024, 12, 28, 10, 0, tzinfo=timezone.utc), date(2025, 1, 3)),
    ],
)
def test_week_ending(moment, expected):
    assert week_ending(moment) == expected


def test_cutoff_is_end_of_friday():
    assert cutoff(date(2024, 5, 1)) == datetime.combine(FRIDAY, time.max, tzinfo=timezone.utc)


def test_aggregate_groups_sorts_and_totals():
    entries = [
        _entry(1, "2024-05-08T10:00:00+00:00", "12.00"),
        _entry(2, "2024-05-03T08:00:00+00:00", "80.00"),
        _entry(3, "2024-05-01T08:00:00+00:00", "4.40", state=PayoutState.AWAITING_COMPLETION),
        _entry(4, "2024-05-04T08:00:00+00:00", "7.60"),
    ]
    batches = aggregate(entries)
    assert [b.week_ending for b in batches] == [date(2024, 5, 3), date(2024, 5, 10)]
    assert [e.entry_id for e in batches[0].entries] == [2, 3]
    assert batches[0].total == Decimal("84.40")
    assert batches[1].total == Decimal("19.60")


def test_aggregate_skips_paid_out_entries():
    entries = [
        _entry(1, "2024-05-03T08:00:00+00:00", "80.00", state=PayoutState.PAID_OUT),
        _entry(2, "2024-05-03T09:00:00+00:00", "8.00"),
    ]
    [batch] = aggregate(entries)
    assert [e.entry_id for e in batch.entries] == [2]
    assert batch.total == Decimal("8.00")


def test_batch_totals_sum_to_member_shares():
    shares = ["0.01", "19.99", "3.33", "80.00", "47.47", "12.12", "0.80"]
    dates = [f"2024-0{m}-{d:02d}T12:00:00+00:00" for m, d in [(4, 1), (4, 7), (5, 2), (5, 3), (5, 11), (6, 20), (6, 30)]]
    entries = [_entry(i, when, share) for i, (when, share) in enumerate(zip(dates, shares), start=1)]
    batches = aggregate(entries)
    assert sum((b.total for b in batches), Decimal("0")) == sum(Decimal(s) for s in shares)
    assert sum(len(b.entries) for b in batches) == len(entries)


def test_batch_total_tracks_membership():
    [batch] = aggregate([_entry(1, "2024-05-03T08:00:00+00:00", "8.00")])
    batch.entries.append(_entry(2, "2024-05-03T09:00:00+00:00", "2.00"))
    assert batch.total == Decimal("10.00")


def test_batch_to_dict():
    [batch] = aggregate([_entry(1, "2024-05-02T08:00:00+00:00", "8.00")])
    data = batch.to_dict()
    assert data["date"] == "2024-05-03"
    assert data["total_amount"] == "8.00"
    assert data["payouts"][0]["id"] == 1


def test_summarize_splits_upcoming_and_paid():
    entries = [
        _entry(1, "2024-05-03T08:00:00+00:00", "80.00", state=PayoutState.PAID_OUT),
        _entry(2, "2024-04-03T08:00:00+00:00", "20.00", state=PayoutState.PAID_OUT),
        _entry(3, "2024-05-08T08:00:00+00:00", "8.00"),
        _entry(4, "2024-05-09T08:00:00+00:00", "1.50", state=PayoutState.AWAITING_COMPLETION),
    ]
    summary = summarize(entries, today=date(2024, 5, 20))
    assert summary.upcoming == Decimal("9.50")
    assert summary.total_paid_out == Decimal("100.00")
    assert summary.paid_out_this_month == Decimal("80.00")


def test_aggregator_reads_current_ledger(market, direct_job, make_transcriber, client_id):
    tid = make_transcriber()
    first = direct_job()
    market.settle_payment(first.job_id, client_id, "100.00", transaction_date="2024-05-02T10:00:00+00:00")
    market.claim(first.job_id, tid)
    market.complete_job(first.job_id, tid)

    [batch] = market.payout_batches(tid)
    assert batch.week_ending == date(2024, 5, 3)
    assert batch.total == Decimal("80.00")

    market.mark_paid_out(batch.entries[0].entry_id)
    # Nothing cached: the paid entry drops out immediately
    assert market.payout_batches(tid) == []
    assert market.earnings(tid, today=date(2024, 5, 20)).paid_out_this_month == Decimal("80.00")
