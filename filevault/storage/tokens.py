"""
Download Token Stores

Server-side state for time- and count-limited download tokens. Tokens are
opaque strings; every claim lives in the store.

Redemption (lookup, expiry check, counter increment, eviction) is a single
store operation, try_redeem(), so two concurrent redemptions can never both
pass the "under max" check.
"""
import dataclasses
import logging
import math
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from redis import Redis

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "dl_"


def generate_token() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_urlsafe(24)}"


class RedeemOutcome(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


@dataclass
class DownloadToken:
    """
    Capability granting bounded access to one stored file
    """
    token: str
    file_id: str
    file_path: str
    expires_at: datetime
    max_downloads: Optional[int] = None
    current_downloads: int = 0
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """A token is unusable from its expiry instant onwards"""
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    @property
    def is_exhausted(self) -> bool:
        return self.max_downloads is not None and self.current_downloads >= self.max_downloads

    @property
    def remaining_downloads(self) -> Optional[int]:
        if self.max_downloads is None:
            return None
        return max(0, self.max_downloads - self.current_downloads)

    def public_info(self) -> Dict[str, Any]:
        """Token details safe to hand back to a client (no file path)"""
        return {
            'file_id': self.file_id,
            'expires_at': self.expires_at.isoformat(),
            'max_downloads': self.max_downloads,
            'current_downloads': self.current_downloads,
        }


@dataclass(frozen=True)
class RedeemResult:
    outcome: RedeemOutcome
    token: Optional[DownloadToken] = None

    @property
    def ok(self) -> bool:
        return self.outcome is RedeemOutcome.OK


class TokenStore(ABC):
    """
    Key-value home for download tokens
    """

    @abstractmethod
    def get(self, token: str) -> Optional[DownloadToken]:
        """Return a snapshot of the token, or None"""

    @abstractmethod
    def set(self, record: DownloadToken) -> None:
        """Insert or replace a token"""

    @abstractmethod
    def delete(self, token: str) -> bool:
        """Remove a token; True if an active token was removed"""

    @abstractmethod
    def try_redeem(self, token: str, now: datetime) -> RedeemResult:
        """
        Atomically validate and consume one use of a token.

        Expired tokens are evicted. A token that reaches its cap is evicted
        and remembered as exhausted until its expiry.
        """

    @abstractmethod
    def sweep_expired(self, now: datetime) -> int:
        """Drop expired tokens; returns how many were removed"""

    @abstractmethod
    def count(self) -> int:
        """Number of tokens currently held"""


class InMemoryTokenStore(TokenStore):
    """
    Process-local token store; not durable across restarts.

    A single lock serialises every operation.
    """

    def __init__(self):
        self._tokens: Dict[str, DownloadToken] = {}
        self._exhausted: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def get(self, token: str) -> Optional[DownloadToken]:
        with self._lock:
            record = self._tokens.get(token)
            return dataclasses.replace(record) if record else None

    def set(self, record: DownloadToken) -> None:
        with self._lock:
            self._tokens[record.token] = dataclasses.replace(record)
            self._exhausted.pop(record.token, None)

    def delete(self, token: str) -> bool:
        with self._lock:
            self._exhausted.pop(token, None)
            return self._tokens.pop(token, None) is not None

    def try_redeem(self, token: str, now: datetime) -> RedeemResult:
        with self._lock:
            record = self._tokens.get(token)

            if record is None:
                exhausted_until = self._exhausted.get(token)
                if exhausted_until is not None:
                    if now < exhausted_until:
                        return RedeemResult(RedeemOutcome.EXHAUSTED)
                    del self._exhausted[token]
                return RedeemResult(RedeemOutcome.INVALID)

            if record.is_expired(now):
                del self._tokens[token]
                return RedeemResult(RedeemOutcome.EXPIRED)

            if record.is_exhausted:
                self._evict_exhausted(record)
                return RedeemResult(RedeemOutcome.EXHAUSTED)

            record.current_downloads += 1
            snapshot = dataclasses.replace(record)

            if record.is_exhausted:
                self._evict_exhausted(record)

            return RedeemResult(RedeemOutcome.OK, snapshot)

    def _evict_exhausted(self, record: DownloadToken) -> None:
        del self._tokens[record.token]
        self._exhausted[record.token] = record.expires_at

    def sweep_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [token for token, record in self._tokens.items() if record.is_expired(now)]
            for token in expired:
                del self._tokens[token]

            for token in [t for t, until in self._exhausted.items() if now >= until]:
                del self._exhausted[token]

            return len(expired)

    def count(self) -> int:
        with self._lock:
            return len(self._tokens)


# Runs inside Redis so lookup, checks, increment and eviction are one step.
# Returns {outcome} or {'ok', field, value, ...} with the post-increment hash.
_REDEEM_SCRIPT = """
local key = KEYS[1]
local tombstone = KEYS[2]
local now = tonumber(ARGV[1])

if redis.call('EXISTS', key) == 0 then
    if redis.call('EXISTS', tombstone) == 1 then
        return {'exhausted'}
    end
    return {'invalid'}
end

local expires_at = tonumber(redis.call('HGET', key, 'expires_at'))
if now >= expires_at then
    redis.call('DEL', key)
    return {'expired'}
end

local max_downloads = redis.call('HGET', key, 'max_downloads')
local limited = max_downloads and max_downloads ~= ''
local current = tonumber(redis.call('HGET', key, 'current_downloads'))

if limited and current >= tonumber(max_downloads) then
    redis.call('DEL', key)
    redis.call('SET', tombstone, '1')
    redis.call('EXPIREAT', tombstone, math.ceil(expires_at))
    return {'exhausted'}
end

current = redis.call('HINCRBY', key, 'current_downloads', 1)
local fields = redis.call('HGETALL', key)

if limited and current >= tonumber(max_downloads) then
    redis.call('DEL', key)
    redis.call('SET', tombstone, '1')
    redis.call('EXPIREAT', tombstone, math.ceil(expires_at))
end

local result = {'ok'}
for i = 1, #fields do
    result[#result + 1] = fields[i]
end
return result
"""


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisTokenStore(TokenStore):
    """
    Redis-backed token store, shared by every process using the same Redis.

    Tokens are hashes whose keys outlive their expiry by `retain_seconds`,
    so a late redemption is reported as expired rather than invalid.
    """

    def __init__(
        self,
        redis_client: Redis,
        prefix: str = "filevault:dltoken:",
        retain_seconds: int = 3600
    ):
        self.redis = redis_client
        self.prefix = prefix
        self.retain_seconds = retain_seconds
        self._redeem = self.redis.register_script(_REDEEM_SCRIPT)

    def _key(self, token: str) -> str:
        return f"{self.prefix}{token}"

    def _tombstone_key(self, token: str) -> str:
        return f"{self.prefix}exhausted:{token}"

    @staticmethod
    def _to_mapping(record: DownloadToken) -> Dict[str, Any]:
        return {
            'file_id': record.file_id,
            'file_path': record.file_path,
            'expires_at': record.expires_at.timestamp(),
            'max_downloads': '' if record.max_downloads is None else record.max_downloads,
            'current_downloads': record.current_downloads,
            'user_id': record.user_id or '',
            'created_at': record.created_at.timestamp(),
        }

    @staticmethod
    def _from_mapping(token: str, mapping: Dict[str, str]) -> DownloadToken:
        max_downloads = mapping.get('max_downloads', '')
        return DownloadToken(
            token=token,
            file_id=mapping['file_id'],
            file_path=mapping['file_path'],
            expires_at=datetime.fromtimestamp(float(mapping['expires_at']), tz=timezone.utc),
            max_downloads=int(max_downloads) if max_downloads != '' else None,
            current_downloads=int(mapping.get('current_downloads', 0)),
            user_id=mapping.get('user_id') or None,
            created_at=datetime.fromtimestamp(float(mapping['created_at']), tz=timezone.utc),
        )

    @staticmethod
    def _pairs(values: Iterable[Any]) -> Dict[str, str]:
        items = [_text(value) for value in values]
        return dict(zip(items[::2], items[1::2]))

    def get(self, token: str) -> Optional[DownloadToken]:
        raw = self.redis.hgetall(self._key(token))
        if not raw:
            return None
        mapping = {_text(k): _text(v) for k, v in raw.items()}
        return self._from_mapping(token, mapping)

    def set(self, record: DownloadToken) -> None:
        key = self._key(record.token)
        pipe = self.redis.pipeline()
        pipe.delete(key, self._tombstone_key(record.token))
        pipe.hset(key, mapping=self._to_mapping(record))
        pipe.expireat(key, math.ceil(record.expires_at.timestamp()) + self.retain_seconds)
        pipe.execute()

    def delete(self, token: str) -> bool:
        removed = self.redis.delete(self._key(token))
        self.redis.delete(self._tombstone_key(token))
        return bool(removed)

    def try_redeem(self, token: str, now: datetime) -> RedeemResult:
        result = self._redeem(
            keys=[self._key(token), self._tombstone_key(token)],
            args=[now.timestamp()],
        )

        outcome = RedeemOutcome(_text(result[0]))
        if outcome is not RedeemOutcome.OK:
            return RedeemResult(outcome)

        return RedeemResult(outcome, self._from_mapping(token, self._pairs(result[1:])))

    def sweep_expired(self, now: datetime) -> int:
        removed = 0
        for key in self.redis.scan_iter(match=f"{self.prefix}{TOKEN_PREFIX}*"):
            expires_at = self.redis.hget(key, 'expires_at')
            if expires_at is not None and now.timestamp() >= float(_text(expires_at)):
                removed += self.redis.delete(key)
        return removed

    def count(self) -> int:
        return sum(1 for _ in self.redis.scan_iter(match=f"{self.prefix}{TOKEN_PREFIX}*"))
