from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


@dataclass(frozen=True)
class BillingConfig:
    webhook_secret: Optional[str]


@lru_cache(maxsize=1)
def load_billing_config() -> BillingConfig:
    return BillingConfig(
        webhook_secret=(os.getenv("STRIPE_WEBHOOK_SECRET", "") or "").strip() or None,
    )
