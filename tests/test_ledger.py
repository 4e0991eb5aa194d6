from decimal import Decimal

import pytest

from scribedesk.errors import Conflict, InvalidInput, NotFound
from scribedesk.ledger import to_money, transcriber_share
from scribedesk.store import PayoutState


@pytest.mark.parametrize(
    "gross, share",
    [
        ("100.00", "80.00"),
        ("33.33", "26.66"),
        ("0.05", "0.04"),
        ("10.005", "8.01"),
        ("12.5", "10.00"),
    ],
)
def test_share_is_rounded_half_up_to_cents(gross, share):
    assert transcriber_share(to_money(gross), Decimal("0.80")) == Decimal(share)


def test_to_money_rejects_garbage():
    with pytest.raises(InvalidInput):
        to_money("ten dollars")
    with pytest.raises(InvalidInput):
        to_money("NaN")


def test_record_settlement_creates_one_entry(market, direct_job):
    job = direct_job()
    entry = market.ledger.record_settlement(job, "100.00", "usd", reference="ref-1")
    assert entry.payout_state == PayoutState.AWAITING_COMPLETION
    assert entry.currency == "USD"
    assert entry.transcriber_share == Decimal("80.00")
    assert entry.transcriber_id is None
    with pytest.raises(Conflict):
        market.ledger.record_settlement(job, "100.00", "USD")
    assert len(market.payment_history()) == 1


def test_non_positive_gross_is_invalid(market, direct_job):
    job = direct_job()
    with pytest.raises(InvalidInput):
        market.ledger.record_settlement(job, "0.00", "USD")
    assert market.payment_history() == []


def test_commission_share_is_configurable(store, direct_job, market):
    from scribedesk.ledger import PaymentLedger

    ledger = PaymentLedger(store, market.notifier, share=Decimal("0.75"))
    entry = ledger.record_settlement(direct_job(), "100.00", "USD")
    assert entry.transcriber_share == Decimal("75.00")


def test_exchange_rate_is_audit_only(market, direct_job):
    job = direct_job()
    entry = market.ledger.record_settlement(job, "100.00", "USD", exchange_rate=Decimal("129.50"), currency_paid="kes")
    assert entry.exchange_rate == Decimal("129.50")
    assert entry.currency_paid == "KES"
    assert entry.transcriber_share == Decimal("80.00")


def test_advance_to_pending_is_idempotent(market, direct_job, make_transcriber, client_id):
    job = direct_job()
    market.settle_payment(job.job_id, client_id, "100.00")
    tid = make_transcriber()
    market.claim(job.job_id, tid)
    completed = market.complete_job(job.job_id, tid)
    first = market.ledger.advance_to_pending(completed)
    second = market.ledger.advance_to_pending(completed)
    assert first.payout_state == second.payout_state == PayoutState.PENDING
    # Paid before anyone claimed it; the transcriber is filled in on completion
    assert first.transcriber_id == tid


def test_advance_without_entry_returns_none(market, direct_job):
    assert market.ledger.advance_to_pending(direct_job()) is None


def test_mark_paid_out_requires_pending(market, direct_job, client_id):
    job = direct_job()
    entry = market.settle_payment(job.job_id, client_id, "100.00")
    with pytest.raises(Conflict) as e:
        market.mark_paid_out(entry.entry_id)
    assert e.value.current_state == "awaiting_completion"
    unchanged = market.ledger.get(entry.entry_id)
    assert unchanged.payout_state == PayoutState.AWAITING_COMPLETION
    assert unchanged.paid_out_at is None


def test_mark_paid_out_unknown_entry(market):
    with pytest.raises(NotFound):
        market.mark_paid_out(31337)


def test_paid_out_notifies_transcriber(market, direct_job, make_transcriber, client_id):
    job = direct_job()
    market.settle_payment(job.job_id, client_id, "100.00")
    tid = make_transcriber()
    market.claim(job.job_id, tid)
    market.complete_job(job.job_id, tid)
    [entry] = market.payment_history(transcriber_id=tid)
    market.mark_paid_out(entry.entry_id)
    [event] = market.events.named("payout_processed")
    assert event.participant_id == tid
    assert event.payload["amount"] == "80.00"


def test_payment_amount_must_match_price(market, direct_job, client_id):
    job = direct_job(price="100.00")
    with pytest.raises(InvalidInput):
        market.settle_payment(job.job_id, client_id, "99.99")
    assert market.payment_history() == []


def test_payment_by_other_client_is_not_found(market, direct_job, make_client):
    job = direct_job()
    with pytest.raises(NotFound):
        market.settle_payment(job.job_id, make_client(), "100.00")


def test_foreign_currency_payment_snapshots_rate(store, pricing_rules, direct_job, client_id):
    from scribedesk.config import Settings
    from scribedesk.currency import StaticRateProvider
    from scribedesk.marketplace import Marketplace

    market = Marketplace(
        store,
        Settings(db_path=store.db_path),
        rates=StaticRateProvider({"KES": Decimal("130")}),
        pricing_rules=pricing_rules,
    )
    job = direct_job()
    entry = market.settle_payment(job.job_id, client_id, "100.00", currency_paid="KES")
    assert entry.exchange_rate == Decimal("130")
    assert entry.currency == "USD"
    assert entry.transcriber_share == Decimal("80.00")


def test_released_job_pays_the_transcriber_who_completes_it(market, direct_job, make_transcriber, client_id):
    job = direct_job()
    first, second = make_transcriber("First"), make_transcriber("Second")
    market.claim(job.job_id, first)
    entry = market.settle_payment(job.job_id, client_id, "100.00")
    assert entry.transcriber_id == first

    market.release(job.job_id, first)
    assert market.ledger.get(entry.entry_id).transcriber_id is None
    assert market.payment_history(transcriber_id=first) == []

    market.claim(job.job_id, second)
    market.complete_job(job.job_id, second)
    settled = market.ledger.get(entry.entry_id)
    assert settled.payout_state == PayoutState.PENDING
    assert settled.transcriber_id == second
    assert market.payout_batches(first) == []
    assert market.earnings(second).upcoming == Decimal("80.00")


def test_completion_overrides_a_stale_payee(market, direct_job, make_transcriber, client_id):
    job = direct_job()
    tid = make_transcriber()
    entry = market.settle_payment(job.job_id, client_id, "100.00")
    market.claim(job.job_id, tid)
    # Entry recorded against someone who no longer holds the job
    market.store.execute("UPDATE ledger_entries SET transcriber_id=? WHERE id=?", (make_transcriber(), entry.entry_id))
    completed = market.complete_job(job.job_id, tid)
    assert market.ledger.advance_to_pending(completed).transcriber_id == tid


@pytest.mark.parametrize("value", ["1e30", "-1e40", "Infinity", "1E+1000"])
def test_to_money_rejects_out_of_range(value):
    with pytest.raises(InvalidInput):
        to_money(value)


def test_oversized_price_is_invalid(market, client_id):
    with pytest.raises(InvalidInput):
        market.submit_direct_upload(client_id, "Keynote", price="1e30", deadline_hours=24)
    assert market.list_jobs() == []


def test_transaction_date_is_normalized(market, direct_job, client_id):
    job = direct_job()
    entry = market.settle_payment(job.job_id, client_id, "100.00", transaction_date="2024-05-02T10:00:00")
    assert entry.transaction_date == "2024-05-02T10:00:00+00:00"


@pytest.mark.parametrize("when", ["yesterday", "2024-13-45", 20240502])
def test_bad_transaction_date_writes_nothing(market, direct_job, client_id, when):
    job = direct_job()
    with pytest.raises(InvalidInput):
        market.settle_payment(job.job_id, client_id, "100.00", transaction_date=when)
    assert market.payment_history() == []
    assert market.payout_batches() == []
    with pytest.raises(InvalidInput):
        market.ledger.record_settlement(job, "100.00", "USD", transaction_date=when)
    assert market.payment_history() == []
