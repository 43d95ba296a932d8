"""
Linked gateway accounts and their token bookkeeping.

LinkedAccount is stored as a plain dict (asdict) under one ledger key;
from_dict() tolerates records written by older versions (missing fields
take their defaults, unknown fields are dropped).
"""
import secrets
import string
import time
from dataclasses import dataclass, field, asdict, fields
from datetime import datetime, timezone
from typing import Optional

DEFAULT_TOKENS_LIMIT = 100_000

_ID_ALPHABET = string.ascii_lowercase + string.digits


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_account_id() -> str:
    """acct_<epoch ms>_<9 random chars>"""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"acct_{int(time.time() * 1000)}_{suffix}"


@dataclass
class LinkedAccount:
    id: str
    display_name: str
    external_user_id: Optional[str] = None
    is_active: bool = False
    tokens_used: int = 0
    tokens_limit: int = DEFAULT_TOKENS_LIMIT
    last_token_check: Optional[str] = None
    account_created_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    email: Optional[str] = None
    quota: Optional[dict] = None      # used, limit, storage_used, storage_limit
    subscription: str = "free"
    auth_token: Optional[str] = None  # API key for gateway + quota calls

    @classmethod
    def from_dict(cls, data: dict) -> "LinkedAccount":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)

    def public_dict(self) -> dict:
        """Serialized form without the credential."""
        data = self.to_dict()
        data.pop("auth_token", None)
        data["has_token"] = bool(self.auth_token)
        return data


@dataclass
class TokenMetrics:
    used: int
    limit: int
    remaining: int
    percentage: float


def token_metrics(account: LinkedAccount) -> TokenMetrics:
    """Display-ready counters. A zero limit yields 0%, never a division error."""
    used = max(0, int(account.tokens_used or 0))
    limit = max(0, int(account.tokens_limit or 0))
    percentage = (used / limit * 100) if limit > 0 else 0.0
    return TokenMetrics(
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        percentage=percentage,
    )


def format_tokens(tokens: int) -> str:
    """1234 → '1.2K', 3400000 → '3.4M'"""
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)


def token_status(percentage: float) -> str:
    """good < 50 ≤ medium < 80 ≤ critical"""
    if percentage < 50:
        return "good"
    if percentage < 80:
        return "medium"
    return "critical"
