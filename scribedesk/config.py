"""Environment-driven settings.

Every knob is read from a ``SCRIBEDESK_*`` variable once, when ``Settings.from_env``
is called. CLI flags override the resulting values.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional


DEFAULT_DB = str(Path.cwd() / "scribedesk.db")


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


@dataclass
class Settings:
    db_path: str = DEFAULT_DB
    # Share of the gross amount that goes to the transcriber
    transcriber_share: Decimal = Decimal("0.80")
    reputation_threshold: float = 4.0
    default_transcriber_rating: float = 0.0
    default_client_rating: float = 5.0
    base_currency: str = "USD"
    # date.weekday() of the payout day; Friday
    payout_weekday: int = 4
    pricing_rules_path: Optional[str] = None
    webhook_url: Optional[str] = None
    rates_url: Optional[str] = None
    static_rates: Dict[str, Decimal] = field(default_factory=dict)
    log_dir: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        rates_raw = os.getenv("SCRIBEDESK_STATIC_RATES")
        static_rates: Dict[str, Decimal] = {}
        if rates_raw:
            # e.g. {"KES": "129.5", "NGN": "1550"}
            static_rates = {k.upper(): Decimal(str(v)) for k, v in json.loads(rates_raw).items()}
        return cls(
            db_path=os.getenv("SCRIBEDESK_DB_PATH", DEFAULT_DB),
            transcriber_share=_env_decimal("SCRIBEDESK_TRANSCRIBER_SHARE", "0.80"),
            reputation_threshold=_env_float("SCRIBEDESK_REPUTATION_THRESHOLD", 4.0),
            default_transcriber_rating=_env_float("SCRIBEDESK_DEFAULT_TRANSCRIBER_RATING", 0.0),
            default_client_rating=_env_float("SCRIBEDESK_DEFAULT_CLIENT_RATING", 5.0),
            base_currency=os.getenv("SCRIBEDESK_BASE_CURRENCY", "USD").upper(),
            payout_weekday=int(os.getenv("SCRIBEDESK_PAYOUT_WEEKDAY", "4")),
            pricing_rules_path=os.getenv("SCRIBEDESK_PRICING_RULES") or None,
            webhook_url=os.getenv("SCRIBEDESK_WEBHOOK_URL") or None,
            rates_url=os.getenv("SCRIBEDESK_RATES_URL") or None,
            static_rates=static_rates,
            log_dir=os.getenv("SCRIBEDESK_LOG_DIR") or None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )
