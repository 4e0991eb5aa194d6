"""Direct-upload pricing rules and quotes.

Rules are tried most-specific first; the first active rule whose conditions
all hold sets the price per minute.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import InvalidInput


logger = logging.getLogger("scribedesk.pricing")

CENT = Decimal("0.01")
MIN_DEADLINE_HOURS = 2
MAX_DEADLINE_HOURS = 168


@dataclass
class PricingRule:
    price_per_minute: Any
    name: str = ""
    audio_quality: Optional[str] = None
    deadline_type: Optional[str] = None
    special_requirements: List[str] = field(default_factory=list)
    min_duration_minutes: Optional[float] = None
    max_duration_minutes: Optional[float] = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PricingRule":
        return cls(
            price_per_minute=data.get("price_per_minute", data.get("price_per_minute_usd")),
            name=data.get("name") or "",
            audio_quality=data.get("audio_quality") or None,
            deadline_type=data.get("deadline_type") or None,
            special_requirements=list(data.get("special_requirements") or []),
            min_duration_minutes=data.get("min_duration_minutes"),
            max_duration_minutes=data.get("max_duration_minutes"),
            is_active=bool(data.get("is_active", True)),
        )

    @property
    def specificity(self) -> int:
        score = 0
        if self.special_requirements:
            score += 8
        if self.audio_quality:
            score += 4
        if self.deadline_type:
            score += 2
        if self.min_duration_minutes is not None and self.min_duration_minutes > 0:
            score += 1
        if self.max_duration_minutes is not None:
            score += 1
        return score

    def rate(self) -> Optional[Decimal]:
        """The price per minute in cents precision, or None when unusable."""
        if isinstance(self.price_per_minute, bool):
            return None
        try:
            value = Decimal(str(self.price_per_minute))
            if not value.is_finite() or value < 0:
                return None
            return value.quantize(CENT, rounding=ROUND_HALF_UP)
        except (InvalidOperation, ValueError):
            return None

    def matches(
        self,
        audio_quality: Optional[str],
        deadline_type: Optional[str],
        duration_minutes: Optional[float],
        special_requirements: Sequence[str],
    ) -> bool:
        if self.audio_quality and self.audio_quality != audio_quality:
            return False
        if self.deadline_type and self.deadline_type != deadline_type:
            return False
        if self.special_requirements and not all(r in special_requirements for r in self.special_requirements):
            return False
        if duration_minutes is not None and duration_minutes > 0:
            if self.min_duration_minutes is not None and duration_minutes < self.min_duration_minutes:
                return False
            if self.max_duration_minutes is not None and duration_minutes > self.max_duration_minutes:
                return False
        elif self.min_duration_minutes is not None and self.min_duration_minutes > 0:
            return False
        return True


@dataclass
class Quote:
    amount: Decimal
    deadline_hours: int
    price_per_minute: Decimal
    duration_minutes: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quote_amount": str(self.amount),
            "agreed_deadline_hours": self.deadline_hours,
            "price_per_minute": str(self.price_per_minute),
            "audio_length_minutes": self.duration_minutes,
        }


def price_per_minute(
    rules: Iterable[PricingRule],
    audio_quality: Optional[str] = None,
    deadline_type: Optional[str] = None,
    duration_minutes: Optional[float] = None,
    special_requirements: Sequence[str] = (),
) -> Optional[Decimal]:
    # sorted() is stable, so equally specific rules keep their configured order
    active = sorted((r for r in rules if r.is_active), key=lambda r: r.specificity, reverse=True)
    for rule in active:
        if not rule.matches(audio_quality, deadline_type, duration_minutes, special_requirements):
            continue
        rate = rule.rate()
        if rate is None:
            logger.warning(f"Pricing rule '{rule.name}' matched but has an invalid price: {rule.price_per_minute!r}")
            continue
        return rate
    return None


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def suggested_deadline(duration_minutes: float, deadline_type: Optional[str]) -> int:
    if deadline_type == "urgent":
        hours = max(2, _round_half_up(duration_minutes * 0.5))
    elif deadline_type == "standard":
        hours = max(12, _round_half_up(duration_minutes))
    elif deadline_type == "flexible":
        hours = max(24, _round_half_up(duration_minutes * 2))
    else:
        hours = 24
    return max(MIN_DEADLINE_HOURS, min(hours, MAX_DEADLINE_HOURS))


def quote(
    rules: Iterable[PricingRule],
    duration_minutes: float,
    audio_quality: Optional[str] = None,
    deadline_type: Optional[str] = None,
    special_requirements: Sequence[str] = (),
) -> Quote:
    try:
        minutes = Decimal(str(duration_minutes))
    except (InvalidOperation, ValueError) as e:
        raise InvalidInput(f"Invalid audio length: {duration_minutes!r}") from e
    if isinstance(duration_minutes, bool) or not minutes.is_finite() or minutes <= 0:
        raise InvalidInput("Audio length must be a positive number of minutes.")
    duration_minutes = float(minutes)
    rate = price_per_minute(rules, audio_quality, deadline_type, duration_minutes, special_requirements)
    if rate is None:
        raise InvalidInput("No pricing rule matched for the provided job parameters.")
    try:
        amount = (minutes * rate).quantize(CENT, rounding=ROUND_HALF_UP)
        deadline = suggested_deadline(duration_minutes, deadline_type)
    except InvalidOperation as e:
        raise InvalidInput(f"Audio length out of range: {duration_minutes!r}") from e
    return Quote(amount, deadline, rate, duration_minutes)


def load_rules(path: Optional[str]) -> List[PricingRule]:
    """Read rules from a JSON file holding a list of rule objects. No path, no rules."""
    if not path:
        return []
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidInput(f"Could not read pricing rules from {path}: {e}") from e
    if isinstance(raw, dict):
        raw = raw.get("pricing_rules", [])
    return [PricingRule.from_dict(item) for item in raw]
