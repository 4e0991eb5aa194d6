import pytest

from scribedesk.errors import Conflict, InvalidInput, NotFound
from scribedesk.ratings import mean_rating


@pytest.mark.parametrize(
    "scores, expected",
    [
        ([5, 5, 5, 5], 5.0),
        ([5, 5, 5, 5, 3], 4.6),
        ([4, 5], 4.5),
        ([1, 2, 2], 1.7),
        ([4, 4, 5], 4.3),
        ([], None),
    ],
)
def test_mean_rating(scores, expected):
    assert mean_rating(scores) == expected


def test_fifth_rating_of_three_moves_average_to_4_6(market, make_admin, make_transcriber):
    tid = make_transcriber()
    for _ in range(4):
        market.rate(make_admin(), "admin", tid, "transcriber", 5)
    assert market.ratings.average(tid, "transcriber") == 5.0
    market.rate(make_admin(), "admin", tid, "transcriber", 3)
    assert market.ratings.average(tid, "transcriber") == 4.6
    assert market.get_participant(tid).average_rating == 4.6


def test_recompute_is_idempotent(market, make_admin, make_transcriber):
    tid = make_transcriber()
    for score in (5, 4, 4):
        market.rate(make_admin(), "admin", tid, "transcriber", score)
    first = market.ratings.recompute(tid, "transcriber")
    second = market.ratings.recompute(tid, "transcriber")
    assert first == second == 4.3


def test_admin_rating_is_an_upsert(market, make_admin, make_transcriber):
    tid = make_transcriber()
    admin = make_admin()
    market.rate(admin, "admin", tid, "transcriber", 2, "Missed deadline")
    market.rate(admin, "admin", tid, "transcriber", 5, "Resolved")
    [rating] = market.ratings.ratings_for(tid, "transcriber")
    assert rating.score == 5
    assert rating.comment == "Resolved"
    assert market.ratings.average(tid, "transcriber") == 5.0


def test_admin_can_rate_clients(market, make_admin, client_id):
    assert market.ratings.average(client_id, "client") == 5.0
    market.rate(make_admin(), "admin", client_id, "client", 3)
    assert market.ratings.average(client_id, "client") == 3.0


def test_defaults_without_ratings(market, make_transcriber, client_id):
    tid = make_transcriber()
    assert market.ratings.average(tid, "transcriber") == 0.0
    assert market.get_participant(tid).average_rating == 0.0
    assert market.get_participant(client_id).average_rating == 5.0


@pytest.mark.parametrize("score", [0, 6, -1, "5", 4.5, True, None])
def test_score_must_be_whole_one_to_five(market, make_admin, make_transcriber, score):
    tid = make_transcriber()
    with pytest.raises(InvalidInput):
        market.rate(make_admin(), "admin", tid, "transcriber", score)
    assert market.ratings.ratings_for(tid, "transcriber") == []


def test_unknown_or_wrong_role_is_not_found(market, make_admin, make_transcriber, client_id):
    admin = make_admin()
    with pytest.raises(NotFound):
        market.rate(admin, "admin", 9999, "transcriber", 4)
    with pytest.raises(NotFound):
        market.rate(admin, "admin", client_id, "transcriber", 4)
    with pytest.raises(NotFound):
        market.rate(client_id, "admin", make_transcriber(), "transcriber", 4)


def test_admins_are_not_rateable(market, make_admin):
    with pytest.raises(InvalidInput):
        market.rate(make_admin(), "admin", make_admin(), "admin", 4)


def test_non_admin_needs_a_job(market, make_transcriber, client_id):
    with pytest.raises(InvalidInput):
        market.rate(client_id, "client", make_transcriber(), "transcriber", 4)


def test_job_rating_is_one_shot(market, direct_job, make_transcriber, client_id):
    job = direct_job()
    tid = make_transcriber()
    market.claim(job.job_id, tid)
    market.complete_job(job.job_id, tid)
    market.rate(client_id, "client", tid, "transcriber", 4, job_id=job.job_id)
    with pytest.raises(Conflict):
        market.rate(client_id, "client", tid, "transcriber", 5, job_id=job.job_id)
    assert market.ratings.average(tid, "transcriber") == 4.0


def test_job_rating_needs_completed_job(market, direct_job, make_transcriber, client_id):
    job = direct_job()
    tid = make_transcriber()
    market.claim(job.job_id, tid)
    with pytest.raises(Conflict):
        market.rate(client_id, "client", tid, "transcriber", 4, job_id=job.job_id)


def test_job_rating_by_stranger_is_not_found(market, direct_job, make_transcriber, make_client):
    job = direct_job()
    tid = make_transcriber()
    market.claim(job.job_id, tid)
    market.complete_job(job.job_id, tid)
    with pytest.raises(NotFound):
        market.rate(make_client(), "client", tid, "transcriber", 4, job_id=job.job_id)


def test_rating_feeds_eligibility(market, direct_job, make_admin, make_transcriber):
    job = direct_job(restricted=True)
    tid = make_transcriber()
    assert not market.gate.check(tid, restricted=True)
    market.rate(make_admin(), "admin", tid, "transcriber", 4)
    assert market.gate.check(tid, restricted=True)
    assert market.available_jobs(tid)[0].job_id == job.job_id
