from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class JobVariant(str, Enum):
    NEGOTIATION = "negotiation"
    DIRECT_UPLOAD = "direct_upload"


class JobState(str, Enum):
    # shared shape
    OPEN = "open"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    # direct upload review step
    CLIENT_COMPLETED = "client_completed"
    # negotiation sub-states
    PENDING = "pending"
    TRANSCRIBER_COUNTER = "transcriber_counter"
    CLIENT_COUNTER = "client_counter"
    ACCEPTED_AWAITING_PAYMENT = "accepted_awaiting_payment"
    ACCEPTED = "accepted"
    HIRED = "hired"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# States in which the bound transcriber holds the job lease
ACTIVE_STATES = (JobState.CLAIMED, JobState.IN_PROGRESS, JobState.ACCEPTED, JobState.HIRED)
TERMINAL_STATES = (JobState.COMPLETED, JobState.CLIENT_COMPLETED, JobState.REJECTED, JobState.CANCELLED)


class PayoutState(str, Enum):
    AWAITING_COMPLETION = "awaiting_completion"
    PENDING = "pending"
    PAID_OUT = "paid_out"


UNPAID_PAYOUT_STATES = (PayoutState.AWAITING_COMPLETION, PayoutState.PENDING)


class Role(str, Enum):
    CLIENT = "client"
    TRANSCRIBER = "transcriber"
    ADMIN = "admin"


class VettingStatus(str, Enum):
    PENDING_ASSESSMENT = "pending_assessment"
    UNDER_REVIEW = "under_review"
    ACTIVE = "active"
    REJECTED = "rejected"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decimal(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


@dataclass
class Participant:
    participant_id: int
    role: Role
    full_name: str
    email: str
    is_online: bool
    vetting_status: Optional[VettingStatus]
    current_job_id: Optional[int]
    completed_jobs: int
    average_rating: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Participant":
        return cls(
            participant_id=int(row["id"]),
            role=Role(row["role"]),
            full_name=row["full_name"],
            email=row["email"],
            is_online=bool(row["is_online"]),
            vetting_status=VettingStatus(row["vetting_status"]) if row.get("vetting_status") else None,
            current_job_id=row.get("current_job_id"),
            completed_jobs=int(row.get("completed_jobs") or 0),
            average_rating=row.get("average_rating"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.participant_id,
            "role": self.role.value,
            "full_name": self.full_name,
            "email": self.email,
            "is_online": self.is_online,
            "vetting_status": self.vetting_status.value if self.vetting_status else None,
            "current_job_id": self.current_job_id,
            "completed_jobs": self.completed_jobs,
            "average_rating": self.average_rating,
        }


@dataclass
class Job:
    """One unit of work. ``variant`` selects which transitions apply."""

    job_id: int
    variant: JobVariant
    client_id: int
    transcriber_id: Optional[int]
    offered_to: Optional[int]
    state: JobState
    restricted: bool
    price: Decimal
    currency: str
    deadline_hours: int
    requirements: str
    transcriber_response: Optional[str] = None
    client_response: Optional[str] = None
    transcriber_comment: Optional[str] = None
    client_feedback_comment: Optional[str] = None
    client_feedback_rating: Optional[int] = None
    created_at: Optional[str] = None
    accepted_at: Optional[str] = None
    taken_at: Optional[str] = None
    completed_at: Optional[str] = None
    client_completed_at: Optional[str] = None
    updated_at: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Job":
        return cls(
            job_id=int(row["id"]),
            variant=JobVariant(row["variant"]),
            client_id=int(row["client_id"]),
            transcriber_id=row["transcriber_id"],
            offered_to=row["offered_to"],
            state=JobState(row["state"]),
            restricted=bool(row["restricted"]),
            price=Decimal(row["price"]),
            currency=row["currency"],
            deadline_hours=int(row["deadline_hours"]),
            requirements=row["requirements"],
            transcriber_response=row["transcriber_response"],
            client_response=row["client_response"],
            transcriber_comment=row["transcriber_comment"],
            client_feedback_comment=row["client_feedback_comment"],
            client_feedback_rating=row["client_feedback_rating"],
            created_at=row["created_at"],
            accepted_at=row["accepted_at"],
            taken_at=row["taken_at"],
            completed_at=row["completed_at"],
            client_completed_at=row["client_completed_at"],
            updated_at=row["updated_at"],
            details=json.loads(row.get("details_json") or "{}"),
        )

    @property
    def holds_lease(self) -> bool:
        return self.state in ACTIVE_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "variant": self.variant.value,
            "client_id": self.client_id,
            "transcriber_id": self.transcriber_id,
            "offered_to": self.offered_to,
            "state": self.state.value,
            "restricted": self.restricted,
            "price": str(self.price),
            "currency": self.currency,
            "deadline_hours": self.deadline_hours,
            "requirements": self.requirements,
            "transcriber_response": self.transcriber_response,
            "client_response": self.client_response,
            "transcriber_comment": self.transcriber_comment,
            "client_feedback_comment": self.client_feedback_comment,
            "client_feedback_rating": self.client_feedback_rating,
            "created_at": self.created_at,
            "accepted_at": self.accepted_at,
            "taken_at": self.taken_at,
            "completed_at": self.completed_at,
            "client_completed_at": self.client_completed_at,
            "updated_at": self.updated_at,
            "details": self.details,
        }


@dataclass
class LedgerEntry:
    entry_id: int
    job_id: int
    job_variant: JobVariant
    client_id: int
    transcriber_id: Optional[int]
    gross_amount: Decimal
    transcriber_share: Decimal
    currency: str
    currency_paid: Optional[str]
    exchange_rate: Optional[Decimal]
    reference: Optional[str]
    payout_state: PayoutState
    transaction_date: str
    paid_out_at: Optional[str]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            entry_id=int(row["id"]),
            job_id=int(row["job_id"]),
            job_variant=JobVariant(row["job_variant"]),
            client_id=int(row["client_id"]),
            transcriber_id=row["transcriber_id"],
            gross_amount=Decimal(row["gross_amount"]),
            transcriber_share=Decimal(row["transcriber_share"]),
            currency=row["currency"],
            currency_paid=row["currency_paid"],
            exchange_rate=_decimal(row["exchange_rate"]),
            reference=row["reference"],
            payout_state=PayoutState(row["payout_state"]),
            transaction_date=row["transaction_date"],
            paid_out_at=row["paid_out_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "job_id": self.job_id,
            "job_variant": self.job_variant.value,
            "client_id": self.client_id,
            "transcriber_id": self.transcriber_id,
            "gross_amount": str(self.gross_amount),
            "transcriber_share": str(self.transcriber_share),
            "currency": self.currency,
            "currency_paid": self.currency_paid,
            "exchange_rate": str(self.exchange_rate) if self.exchange_rate is not None else None,
            "reference": self.reference,
            "payout_state": self.payout_state.value,
            "transaction_date": self.transaction_date,
            "paid_out_at": self.paid_out_at,
        }


@dataclass
class Rating:
    rating_id: int
    rater_id: int
    rater_role: Role
    rated_user_id: int
    rated_role: Role
    job_id: Optional[int]
    score: int
    comment: Optional[str]
    created_at: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Rating":
        return cls(
            rating_id=int(row["id"]),
            rater_id=int(row["rater_id"]),
            rater_role=Role(row["rater_role"]),
            rated_user_id=int(row["rated_user_id"]),
            rated_role=Role(row["rated_role"]),
            job_id=row["job_id"],
            score=int(row["score"]),
            comment=row["comment"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.rating_id,
            "rater_id": self.rater_id,
            "rater_role": self.rater_role.value,
            "rated_user_id": self.rated_user_id,
            "rated_role": self.rated_role.value,
            "job_id": self.job_id,
            "score": self.score,
            "comment": self.comment,
            "created_at": self.created_at,
        }
