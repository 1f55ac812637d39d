import asyncio
import copy
import hashlib
import json
import math
import os
import threading
import time
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional

import structlog
from cachetools import Cache, TLRUCache

from jwt_lru_verify import (
    JwtVerifier,
    UsageError,
    VerificationError,
    VerifyOptions,
    fetch_jwks,
    key_from_jwks,
)

__all__ = [
    "JwtLruCache",
    "UsageError",
    "VerificationError",
    "VerifyOptions",
    "compute_max_age",
]

logger = structlog.get_logger(__name__)

DEFAULT_SIZE = 1024 * 1024
ENTRY_OVERHEAD = 2


def _fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def compute_max_age(payload: Any, options: VerifyOptions, now: float) -> Optional[int]:
    """
    Milliseconds until the token's validation may change, or None.

    A future nbf wins over a future exp since "not yet valid" flips first.
    With ``max_age`` set, iat + max_age is a second expiry; the earlier wins.
    Tokens already outside their window get None: the cached error is stable.
    """
    if not isinstance(payload, dict):
        return None
    nbf = payload.get("nbf")
    exp = payload.get("exp")
    iat = payload.get("iat")
    tolerance = options.clock_tolerance

    if not options.ignore_not_before and _is_time(nbf) and now + tolerance < nbf:
        return math.floor(((nbf - tolerance) - now) * 1000)
    deadlines = []
    if not options.ignore_expiration and _is_time(exp) and now - tolerance < exp:
        deadlines.append(exp + tolerance)
    if options.max_age is not None and _is_time(iat) and now - tolerance < iat + options.max_age:
        deadlines.append(iat + options.max_age + tolerance)
    if deadlines:
        return math.floor((min(deadlines) - now) * 1000)
    return None


def _is_time(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _Entry(NamedTuple):
    error: Optional[Exception]
    decoded: Optional[Dict[str, Any]]
    expires: float
    size: int


class _Pending(NamedTuple):
    token: str
    decoded: Dict[str, Any]
    now: float
    max_age: Optional[int]


class _Outcome(NamedTuple):
    error: Optional[Exception]
    result: Any


def _entry_size(token: str, error: Optional[Exception], decoded: Dict[str, Any]) -> int:
    body = json.dumps([str(error) if error else None, decoded], separators=(",", ":"), default=str)
    return ENTRY_OVERHEAD + len(body) + len(token)


def _entry_deadline(_token: str, entry: _Entry, _now: float) -> float:
    return entry.expires


class _VerificationStore(TLRUCache):
    """Byte-weighted LRU store whose entries carry their own deadline."""

    def __init__(self, maxsize: int, timer: Callable[[], float]):
        super().__init__(maxsize, _entry_deadline, timer=timer)

    @staticmethod
    def getsizeof(entry: _Entry) -> int:
        return entry.size

    def popitem(self):
        token, entry = super().popitem()
        logger.debug("jwt_cache_evicted", token=_fingerprint(token), size=entry.size)
        return token, entry

    def peek(self, token: str) -> Optional[_Entry]:
        # no recency update
        if token not in self:
            return None
        return Cache.__getitem__(self, token)


def _check_call(token: Any, complete: Any) -> None:
    if not isinstance(complete, bool):
        raise UsageError(
            "Verification key and options can only be set in the constructor, "
            "not in the second argument to verify()."
        )
    if not isinstance(token, str):
        raise UsageError(f"token must be a str, not {type(token).__name__}")


def _detach(error: Optional[Exception]) -> Optional[Exception]:
    # callers get their own instance; raising it must not pin frames on the cached one
    if error is None:
        return None
    return copy.copy(error)


def _shape(entry: _Entry, complete: bool) -> _Outcome:
    error = _detach(entry.error)
    if entry.decoded is None:
        return _Outcome(error, None)
    return _Outcome(error, entry.decoded if complete else entry.decoded["payload"])


class JwtLruCache:
    """
    A drop-in for JWT verification which caches the results of past lookups to
    skip the costly crypto on repeated tokens.

    Failed verifications are cached too. Entries expire when the token's own
    nbf/exp says its validity may change, and the least recently used entries
    are evicted once the byte budget is full.
    """

    def __init__(
        self,
        size_in_bytes: int,
        secret_or_key: Any,
        options: Optional[VerifyOptions | Mapping[str, Any]] = None,
        *,
        clock: Optional[Callable[[], float]] = None,
        verifier: Optional[Any] = None,
    ):
        if isinstance(size_in_bytes, bool) or not isinstance(size_in_bytes, int) or size_in_bytes <= 0:
            raise ValueError("size_in_bytes must be a positive integer")
        if options is None:
            options = VerifyOptions()
        elif not isinstance(options, VerifyOptions):
            options = VerifyOptions.from_mapping(options)
        self.secret_or_key = secret_or_key
        self.options = options
        self._clock = clock or time.time
        self._verifier = verifier or JwtVerifier(clock=self._clock)
        self._store = _VerificationStore(size_in_bytes, timer=self._clock)
        self._lock = threading.RLock()
        self._tasks: set[asyncio.Task] = set()
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_env(cls, **kwargs) -> "JwtLruCache":
        """Build a cache from JWT_LRU_* environment variables."""
        secret = os.environ.get("JWT_LRU_SECRET")
        if not secret:
            raise ValueError("JWT_LRU_SECRET is not set")
        algorithms = os.environ.get("JWT_LRU_ALGORITHMS")
        options = VerifyOptions(
            audience=os.environ.get("JWT_LRU_AUDIENCE") or None,
            issuer=os.environ.get("JWT_LRU_ISSUER") or None,
            algorithms=[a.strip() for a in algorithms.split(",") if a.strip()] if algorithms else None,
            clock_tolerance=float(os.environ.get("JWT_LRU_CLOCK_TOLERANCE", "0")),
        )
        size = int(os.environ.get("JWT_LRU_CACHE_SIZE", DEFAULT_SIZE))
        return cls(size, secret, options, **kwargs)

    @classmethod
    def from_jwks(
        cls,
        size_in_bytes: int,
        jwks: dict | str,
        kid: Optional[str] = None,
        options: Optional[VerifyOptions | Mapping[str, Any]] = None,
        **kwargs,
    ) -> "JwtLruCache":
        """Build a cache for the key ``kid`` of a JWKS document or JWKS URL."""
        if isinstance(jwks, str):
            jwks = fetch_jwks(jwks)
        return cls(size_in_bytes, key_from_jwks(jwks, kid), options, **kwargs)

    # -----------------------------
    # shared lookup / store steps
    # -----------------------------

    def _begin(self, token: Any, complete: Any):
        _check_call(token, complete)
        with self._lock:
            entry = self._store.get(token)
            if entry is not None:
                self._hits += 1
                return entry, None
            self._misses += 1

        try:
            decoded = self._verifier.decode(token)
        except VerificationError as e:
            # nothing to derive a deadline from, and re-decoding is cheap
            logger.info("jwt_token_undecodable", token=_fingerprint(token), error=str(e))
            return _Entry(e.with_traceback(None), None, math.inf, 0), None

        now = self._clock()
        max_age = compute_max_age(decoded["payload"], self.options, now)
        logger.debug("jwt_cache_miss", token=_fingerprint(token), max_age_ms=max_age)
        return None, _Pending(token, decoded, now, max_age)

    def _finish(self, pending: _Pending, error: Optional[Exception]) -> _Entry:
        if error is not None:
            logger.info("jwt_verification_failed", token=_fingerprint(pending.token), error=str(error))
        expires = math.inf if pending.max_age is None else pending.now + pending.max_age / 1000
        entry = _Entry(error, pending.decoded, expires, _entry_size(pending.token, error, pending.decoded))
        with self._lock:
            if entry.size > self._store.maxsize:
                logger.warning(
                    "jwt_cache_entry_too_large",
                    token=_fingerprint(pending.token),
                    size=entry.size,
                    maxsize=self._store.maxsize,
                )
            else:
                self._store[pending.token] = entry
        return entry

    def _resolve(self, token: Any, complete: Any) -> _Outcome:
        entry, pending = self._begin(token, complete)
        if pending is not None:
            error = None
            try:
                self._verifier.verify(token, self.secret_or_key, self.options)
            except VerificationError as e:
                error = e.with_traceback(None)
            entry = self._finish(pending, error)
        return _shape(entry, complete)

    async def _resolve_async(self, token: Any, complete: Any) -> _Outcome:
        entry, pending = self._begin(token, complete)
        if pending is not None:
            error = None
            try:
                await self._verifier.verify_async(token, self.secret_or_key, self.options)
            except VerificationError as e:
                error = e.with_traceback(None)
            entry = self._finish(pending, error)
        return _shape(entry, complete)

    # -----------------------------
    # public surface
    # -----------------------------

    def verify(self, token: str, complete: bool = False, callback: Optional[Callable[[Any, Any], Any]] = None):
        """
        Verify ``token`` against the cache's key and options.

        Without a callback the decoded payload (or {header, payload, signature}
        when ``complete``) is returned and a verification error is raised.
        With a callback, ``callback(error, result)`` is called once settled:
        from a task when an event loop is running, otherwise before returning.
        Every error except UsageError goes to the callback, including
        uncached ones such as a key of the wrong type.
        """
        if callback is None:
            error, result = self._resolve(token, complete)
            if error is not None:
                raise error
            return result

        _check_call(token, complete)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                outcome = self._resolve(token, complete)
            except Exception as e:
                outcome = _Outcome(e, None)
            callback(*outcome)
            return None

        task = loop.create_task(self._resolve_async(token, complete))
        self._tasks.add(task)

        def settle(done: asyncio.Task) -> None:
            self._tasks.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                callback(exc, None)
            else:
                callback(*done.result())

        task.add_done_callback(settle)
        return None

    async def verify_async(self, token: str, complete: bool = False):
        """Awaitable verify: returns the decoded token or raises the verification error."""
        error, result = await self._resolve_async(token, complete)
        if error is not None:
            raise error
        return result

    def has(self, token: str) -> bool:
        """True if the token is in the cache and unexpired."""
        with self._lock:
            return token in self._store

    def remaining_ttl(self, token: str) -> Optional[int]:
        """
        Seconds until the token's entry expires, or None when it is not cached
        or has no deadline. Mostly useful in tests.
        """
        with self._lock:
            entry = self._store.peek(token)
        if entry is None or math.isinf(entry.expires):
            return None
        return math.floor(entry.expires - self._clock())

    def invalidate(self, token: str) -> bool:
        with self._lock:
            return self._store.pop(token, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "hits": self._hits,
                "misses": self._misses,
                "entries": len(self._store),
                "currsize": self._store.currsize,
                "maxsize": self._store.maxsize,
            }
