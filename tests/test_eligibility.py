import pytest

from scribedesk.eligibility import EligibilityGate
from scribedesk.errors import NotFound
from scribedesk.store import Participant, Role, VettingStatus


def _snapshot(**overrides):
    fields = dict(
        participant_id=1,
        role=Role.TRANSCRIBER,
        full_name="T",
        email="t@example.com",
        is_online=True,
        vetting_status=VettingStatus.ACTIVE,
        current_job_id=None,
        completed_jobs=0,
        average_rating=None,
    )
    fields.update(overrides)
    return Participant(**fields)


def _exists(store, clause):
    sql, params = clause
    return store.fetch(f"SELECT {sql} AS ok", params)[0]["ok"] == 1


def test_online_idle_active_transcriber_is_allowed(store):
    gate = EligibilityGate(store)
    result = gate.evaluate(_snapshot(), restricted=False)
    assert result
    assert result.reason == "eligible"


@pytest.mark.parametrize(
    "overrides, fragment",
    [
        ({"is_online": False}, "offline"),
        ({"current_job_id": 12}, "active job"),
        ({"vetting_status": VettingStatus.PENDING_ASSESSMENT}, "not an active transcriber"),
    ],
)
def test_each_failed_check_gives_a_reason(store, overrides, fragment):
    result = EligibilityGate(store).evaluate(_snapshot(**overrides), restricted=False)
    assert not result
    assert fragment in result.reason


def test_all_reasons_are_reported(store):
    result = EligibilityGate(store).evaluate(_snapshot(is_online=False, current_job_id=3), restricted=False)
    assert "offline" in result.reason and "active job" in result.reason


def test_restricted_jobs_need_the_threshold(store):
    gate = EligibilityGate(store, threshold=4.0, default_rating=0.0)
    assert not gate.evaluate(_snapshot(average_rating=None), restricted=True)
    assert not gate.evaluate(_snapshot(average_rating=3.9), restricted=True)
    assert gate.evaluate(_snapshot(average_rating=4.0), restricted=True)
    # Reputation never matters for unrestricted work
    assert gate.evaluate(_snapshot(average_rating=None), restricted=False)


def test_check_unknown_or_non_transcriber_is_not_found(market, client_id):
    with pytest.raises(NotFound):
        market.gate.check(9999, restricted=False)
    with pytest.raises(NotFound):
        market.gate.check(client_id, restricted=False)


def test_check_loads_reputation(market, make_transcriber):
    rated = make_transcriber(rating=5)
    unrated = make_transcriber()
    assert market.gate.check(rated, restricted=True)
    assert not market.gate.check(unrated, restricted=True)


def test_sql_predicate_agrees_with_evaluate(market, store, make_transcriber):
    good = make_transcriber(rating=5)
    offline = make_transcriber(online=False)
    unvetted = make_transcriber(vetting="under_review")
    unrated = make_transcriber()
    gate = market.gate
    assert _exists(store, gate.sql_predicate(good, restricted=True))
    assert not _exists(store, gate.sql_predicate(offline, restricted=False))
    assert not _exists(store, gate.sql_predicate(unvetted, restricted=False))
    assert _exists(store, gate.sql_predicate(unrated, restricted=False))
    assert not _exists(store, gate.sql_predicate(unrated, restricted=True))


def test_gate_does_not_mutate(market, store, make_transcriber):
    tid = make_transcriber(online=False)
    before = store.get("participants", tid)
    market.gate.check(tid, restricted=True)
    assert store.get("participants", tid) == before


def test_eligible_transcribers_best_first(market, make_transcriber):
    low = make_transcriber(rating=4)
    high = make_transcriber(rating=5)
    make_transcriber(online=False, rating=5)
    ids = [t.participant_id for t in market.eligible_transcribers(restricted=True)]
    assert ids == [high, low]
