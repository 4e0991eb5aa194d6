from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import Settings
from .errors import Conflict, MarketError
from .marketplace import Marketplace


NEGOTIATION_ACTIONS = ("accept", "counter", "reject", "accept_counter", "reject_counter", "counter_back", "cancel")


def _require(payload: Dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if payload.get(k) is None]
    if missing:
        raise HTTPException(400, f"missing field(s): {', '.join(missing)}")


def _int(payload: Dict[str, Any], key: str) -> int:
    value = payload[key]
    if isinstance(value, bool):
        raise HTTPException(400, f"{key} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise HTTPException(400, f"{key} must be an integer")


def _number(payload: Dict[str, Any], key: str) -> float:
    value = payload[key]
    if isinstance(value, bool):
        raise HTTPException(400, f"{key} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        raise HTTPException(400, f"{key} must be a number")


def create_app(marketplace: Marketplace) -> FastAPI:
    # Shutdown signal for long-lived streams (SSE) to terminate promptly on reload
    shutdown_event: asyncio.Event = asyncio.Event()

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        try:
            yield
        finally:
            shutdown_event.set()
            marketplace.close()

    app = FastAPI(title="ScribeDesk API", lifespan=app_lifespan)

    @app.exception_handler(MarketError)
    async def market_error(request: Request, exc: MarketError):
        body: Dict[str, Any] = {"error": exc.message}
        if isinstance(exc, Conflict) and exc.current_state is not None:
            body["current_state"] = exc.current_state
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.get("/api/status")
    def status():
        return marketplace.stats()

    # --- participants ---

    @app.post("/api/participants", status_code=201)
    def register(payload: Dict[str, Any]):
        _require(payload, "role", "full_name", "email")
        participant = marketplace.register_participant(
            payload["role"], payload["full_name"], payload["email"], payload.get("vetting_status")
        )
        return participant.to_dict()

    @app.get("/api/participants/{participant_id}")
    def participant(participant_id: int):
        return marketplace.get_participant(participant_id).to_dict()

    @app.post("/api/participants/{participant_id}/online")
    def online(participant_id: int, payload: Dict[str, Any]):
        _require(payload, "online")
        return marketplace.set_online(participant_id, bool(payload["online"])).to_dict()

    @app.post("/api/participants/{participant_id}/vetting")
    def vetting(participant_id: int, payload: Dict[str, Any]):
        _require(payload, "status")
        return marketplace.set_vetting_status(participant_id, payload["status"]).to_dict()

    @app.get("/api/participants/{participant_id}/ratings")
    def participant_ratings(participant_id: int, role: str = "transcriber"):
        ratings = marketplace.ratings.ratings_for(participant_id, role)
        return {
            "average": marketplace.ratings.average(participant_id, role),
            "ratings": [r.to_dict() for r in ratings],
        }

    @app.get("/api/transcribers/eligible")
    def eligible(restricted: bool = False):
        return [t.to_dict() for t in marketplace.eligible_transcribers(restricted)]

    # --- jobs ---

    @app.post("/api/quotes")
    def quotes(payload: Dict[str, Any]):
        _require(payload, "duration_minutes")
        q = marketplace.quote(
            _number(payload, "duration_minutes"),
            payload.get("audio_quality"),
            payload.get("deadline_type"),
            payload.get("special_requirements") or (),
        )
        return q.to_dict()

    @app.get("/api/jobs")
    def jobs(
        client_id: Optional[int] = None,
        transcriber_id: Optional[int] = None,
        state: Optional[str] = None,
        variant: Optional[str] = None,
    ):
        return [j.to_dict() for j in marketplace.list_jobs(client_id, transcriber_id, state, variant)]

    @app.get("/api/jobs/available")
    def available(transcriber_id: int):
        return [j.to_dict() for j in marketplace.available_jobs(transcriber_id)]

    @app.get("/api/jobs/{job_id}")
    def job(job_id: int):
        return marketplace.get_job(job_id).to_dict()

    @app.post("/api/jobs/direct", status_code=201)
    def direct_upload(payload: Dict[str, Any]):
        _require(payload, "client_id", "requirements")
        created = marketplace.submit_direct_upload(
            _int(payload, "client_id"),
            payload["requirements"],
            duration_minutes=payload.get("duration_minutes"),
            audio_quality=payload.get("audio_quality"),
            deadline_type=payload.get("deadline_type"),
            special_requirements=payload.get("special_requirements") or (),
            price=payload.get("price"),
            deadline_hours=payload.get("deadline_hours"),
            currency=payload.get("currency"),
            restricted=bool(payload.get("restricted", False)),
        )
        return created.to_dict()

    @app.post("/api/jobs/{job_id}/claim")
    def claim(job_id: int, payload: Dict[str, Any]):
        _require(payload, "transcriber_id")
        return marketplace.claim(job_id, _int(payload, "transcriber_id")).to_dict()

    @app.post("/api/jobs/{job_id}/release")
    def release(job_id: int, payload: Dict[str, Any]):
        _require(payload, "transcriber_id")
        return marketplace.release(job_id, _int(payload, "transcriber_id")).to_dict()

    @app.post("/api/jobs/{job_id}/start")
    def start(job_id: int, payload: Dict[str, Any]):
        _require(payload, "transcriber_id")
        return marketplace.start(job_id, _int(payload, "transcriber_id")).to_dict()

    @app.post("/api/jobs/{job_id}/complete")
    def complete(job_id: int, payload: Dict[str, Any]):
        _require(payload, "actor_id")
        done = marketplace.complete_job(
            job_id, _int(payload, "actor_id"), comment=payload.get("comment"), score=payload.get("score")
        )
        return done.to_dict()

    @app.post("/api/jobs/{job_id}/review")
    def review(job_id: int, payload: Dict[str, Any]):
        _require(payload, "client_id", "score")
        return marketplace.review(job_id, _int(payload, "client_id"), payload["score"], payload.get("comment")).to_dict()

    # --- negotiations ---

    @app.post("/api/negotiations", status_code=201)
    def negotiate(payload: Dict[str, Any]):
        _require(payload, "client_id", "transcriber_id", "price", "deadline_hours", "requirements")
        created = marketplace.create_negotiation(
            _int(payload, "client_id"),
            _int(payload, "transcriber_id"),
            payload["price"],
            payload["deadline_hours"],
            payload["requirements"],
            currency=payload.get("currency"),
        )
        return created.to_dict()

    @app.post("/api/negotiations/{job_id}/action")
    def negotiation_action(job_id: int, payload: Dict[str, Any]):
        _require(payload, "action", "actor_id")
        action = payload["action"]
        actor = _int(payload, "actor_id")
        comment = payload.get("comment")
        if action == "accept":
            result = marketplace.transcriber_accept(job_id, actor)
        elif action == "counter":
            _require(payload, "price")
            result = marketplace.transcriber_counter(job_id, actor, payload["price"], comment)
        elif action == "reject":
            result = marketplace.transcriber_reject(job_id, actor, comment)
        elif action == "accept_counter":
            result = marketplace.client_accept_counter(job_id, actor)
        elif action == "reject_counter":
            result = marketplace.client_reject_counter(job_id, actor, comment)
        elif action == "counter_back":
            _require(payload, "price")
            result = marketplace.client_counter_back(job_id, actor, payload["price"], comment)
        elif action == "cancel":
            result = marketplace.cancel(job_id, actor, comment)
        else:
            raise HTTPException(400, f"invalid action; expected one of {', '.join(NEGOTIATION_ACTIONS)}")
        return result.to_dict()

    # --- payments and payouts ---

    @app.post("/api/payments", status_code=201)
    def pay(payload: Dict[str, Any]):
        _require(payload, "job_id", "client_id", "amount")
        entry = marketplace.settle_payment(
            _int(payload, "job_id"),
            _int(payload, "client_id"),
            payload["amount"],
            reference=payload.get("reference"),
            currency_paid=payload.get("currency_paid"),
            transaction_date=payload.get("transaction_date"),
        )
        return entry.to_dict()

    @app.get("/api/payments")
    def payments(transcriber_id: Optional[int] = None, client_id: Optional[int] = None):
        return [e.to_dict() for e in marketplace.payment_history(transcriber_id, client_id)]

    @app.get("/api/payouts")
    def payouts(transcriber_id: Optional[int] = None):
        batches = marketplace.payout_batches(transcriber_id)
        summary = marketplace.earnings(transcriber_id)
        return {"summary": summary.to_dict(), "batches": [b.to_dict() for b in batches]}

    @app.post("/api/payouts/{entry_id}/paid")
    def paid(entry_id: int):
        return marketplace.mark_paid_out(entry_id).to_dict()

    @app.post("/api/ratings", status_code=201)
    def rate(payload: Dict[str, Any]):
        _require(payload, "rater_id", "rater_role", "rated_user_id", "rated_role", "score")
        rating = marketplace.rate(
            _int(payload, "rater_id"),
            payload["rater_role"],
            _int(payload, "rated_user_id"),
            payload["rated_role"],
            payload["score"],
            payload.get("comment"),
            payload.get("job_id"),
        )
        return {
            "rating": rating.to_dict(),
            "average": marketplace.ratings.average(rating.rated_user_id, rating.rated_role),
        }

    @app.post("/api/maintenance/reconcile")
    def reconcile():
        return {
            "released_leases": marketplace.reconcile_leases(),
            "advanced_entries": marketplace.reconcile_ledger(),
        }

    # Events as server-sent events, polled from the in-process hub
    async def event_stream(request: Request, since: int, participant_id: Optional[int], follow: bool):
        last = since
        while True:
            if shutdown_event.is_set() or await request.is_disconnected():
                break
            for event in marketplace.events.events_since(last, participant_id):
                last = event.seq
                yield f"id: {event.seq}\nevent: {event.event}\ndata: {json.dumps(event.to_dict())}\n\n"
            if not follow:
                break
            await asyncio.sleep(1)

    @app.get("/api/events")
    async def events(request: Request, since: int = 0, participant_id: Optional[int] = None, follow: bool = True):
        return StreamingResponse(event_stream(request, since, participant_id, follow), media_type="text/event-stream")

    return app


def app_factory():
    """Build FastAPI app from environment settings. Used by uvicorn with --factory."""
    settings = Settings.from_env()
    return create_app(Marketplace.from_settings(settings))
