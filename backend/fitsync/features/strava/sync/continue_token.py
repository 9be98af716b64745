"""
Continue tokens.

Opaque, versioned, signed encoding of import progress:

    base64url(json{v, run_id, page, after_cursor, stats, started_at}) + "." + base64url(hmac)

`page` is the next page to fetch; every page before it is committed.
Decoding reproduces exactly what was encoded, so a resumed run never
goes back to an already-committed page.
"""

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass, field, asdict
from typing import Optional

from .config import CONTINUE_TOKEN_VERSION
from .errors import InvalidContinueTokenError

STAT_KEYS = ("imported", "duplicates", "updated", "failed")


@dataclass
class ImportStats:
    imported: int = 0
    duplicates: int = 0
    updated: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ImportStats":
        return cls(**{key: int(data.get(key, 0)) for key in STAT_KEYS})

    def copy(self) -> "ImportStats":
        return ImportStats(**self.to_dict())

    def minus(self, other: "ImportStats") -> "ImportStats":
        return ImportStats(**{
            key: getattr(self, key) - getattr(other, key) for key in STAT_KEYS
        })

    @property
    def total(self) -> int:
        return self.imported + self.duplicates + self.updated + self.failed


@dataclass
class ContinueState:
    """Decoded continue token."""
    run_id: str
    page: int
    after_cursor: Optional[int]
    started_at: int
    stats: ImportStats = field(default_factory=ImportStats)

    def is_ahead_of(self, other: "ContinueState") -> bool:
        """True if self resumes later than other within the same run."""
        return self.page > other.page


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def encode_continue_token(state: ContinueState, secret: str) -> str:
    payload = {
        "v": CONTINUE_TOKEN_VERSION,
        "run_id": state.run_id,
        "page": state.page,
        "after_cursor": state.after_cursor,
        "started_at": state.started_at,
        "stats": state.stats.to_dict(),
    }
    body = _b64encode(json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    return f"{body}.{_sign(body, secret)}"


def _non_negative_int(value, name: str, allow_none: bool = False) -> Optional[int]:
    if value is None and allow_none:
        return None
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise InvalidContinueTokenError(f"Continue token field {name} is invalid")
    return value


def decode_continue_token(token: str, secret: str) -> ContinueState:
    """
    Verify and decode a continue token.

    Raises:
        InvalidContinueTokenError: Malformed, tampered or incompatible version
    """
    if not token or not isinstance(token, str) or token.count(".") != 1:
        raise InvalidContinueTokenError("Malformed continue token")

    body, signature = token.split(".")
    try:
        valid = hmac.compare_digest(signature.encode("utf-8"), _sign(body, secret).encode("ascii"))
    except UnicodeError as e:
        raise InvalidContinueTokenError("Malformed continue token") from e
    if not valid:
        raise InvalidContinueTokenError("Continue token signature mismatch")

    try:
        payload = json.loads(_b64decode(body))
    except (binascii.Error, ValueError) as e:
        raise InvalidContinueTokenError("Malformed continue token") from e
    if not isinstance(payload, dict):
        raise InvalidContinueTokenError("Malformed continue token")

    if payload.get("v") != CONTINUE_TOKEN_VERSION:
        raise InvalidContinueTokenError(
            f"Unsupported continue token version {payload.get('v')!r}"
        )

    run_id = payload.get("run_id")
    if not isinstance(run_id, str) or not run_id:
        raise InvalidContinueTokenError("Continue token field run_id is invalid")

    page = _non_negative_int(payload.get("page"), "page")
    if page < 1:
        raise InvalidContinueTokenError("Continue token field page is invalid")

    stats = payload.get("stats")
    if not isinstance(stats, dict):
        raise InvalidContinueTokenError("Continue token field stats is invalid")
    for key in STAT_KEYS:
        _non_negative_int(stats.get(key, 0), f"stats.{key}")

    return ContinueState(
        run_id=run_id,
        page=page,
        after_cursor=_non_negative_int(payload.get("after_cursor"), "after_cursor", allow_none=True),
        started_at=_non_negative_int(payload.get("started_at"), "started_at"),
        stats=ImportStats.from_dict(stats),
    )
