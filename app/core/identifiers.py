"""
Payment identifiers.

Intent id:      PAY_<epoch millis>_<9 random base36 chars, uppercase>
Receipt number: RCP<epoch millis><0-999>

The receipt format alone is not collision-free; uniqueness is enforced by the
unique constraint on payment_intents.receipt_number and the caller retries.
"""

import secrets
import string
from typing import Optional

from app.core.clock import epoch_millis

BASE36_ALPHABET = string.digits + string.ascii_uppercase
INTENT_RANDOM_LENGTH = 9


def generate_intent_id(now_ms: Optional[int] = None) -> str:
    """
    Generate a payment intent id.

    Examples:
        PAY_1760870400000_K3ZQ81M0A
        PAY_1760870400123_00F9XBC2T

    Production-safe: uses secrets for random part.
    """
    millis = epoch_millis() if now_ms is None else now_ms
    random_part = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(INTENT_RANDOM_LENGTH))
    return f"PAY_{millis}_{random_part}"


def generate_receipt_number(now_ms: Optional[int] = None) -> str:
    millis = epoch_millis() if now_ms is None else now_ms
    return f"RCP{millis}{secrets.randbelow(1000)}"
