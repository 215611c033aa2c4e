"""
Token-bucket rate limiting backed by Redis

Each bucket holds up to max_tokens; refill_rate tokens are added every
refill_interval seconds; each request consumes one token. Bucket state is
stored as JSON {tokens, lastRefill} under `{key_prefix}{identifier}` with a
TTL of two refill intervals, so idle buckets expire on their own.

Lifecycle:
    The Redis client is created once at process start (see
    config.create_redis_client) and handed to RateLimiter; the limiter never
    creates or closes it. A limiter built with client=None allows everything.

Known race:
    read bucket -> compute -> write bucket is not atomic. Concurrent hits on
    one key can each read the same token count and let slightly more than
    the configured rate through. Accepted for now; see DESIGN.md.

Store errors fail open: the request is allowed and the error is reported on
the result, because availability matters more than strict limiting here.
"""
import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Bucket shape for one scope"""
    max_tokens: int
    refill_rate: int
    refill_interval: int  # seconds
    key_prefix: str


# Presets for the ingestion and recomputation endpoints
EVIDENCE_PER_IP = RateLimitConfig(100, 100, 3600, 'rl:ip:evidence:')
EVIDENCE_PER_PROJECT = RateLimitConfig(500, 500, 3600, 'rl:proj:evidence:')
CLASSIFY_PER_IP = RateLimitConfig(50, 50, 3600, 'rl:ip:classify:')
CLASSIFY_PER_PROJECT = RateLimitConfig(200, 200, 3600, 'rl:proj:classify:')

RATE_LIMITS: Dict[str, RateLimitConfig] = {
    'EVIDENCE_PER_IP': EVIDENCE_PER_IP,
    'EVIDENCE_PER_PROJECT': EVIDENCE_PER_PROJECT,
    'CLASSIFY_PER_IP': CLASSIFY_PER_IP,
    'CLASSIFY_PER_PROJECT': CLASSIFY_PER_PROJECT,
}


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: int  # epoch milliseconds
    error: Optional[str] = None
    limited_by: Optional[str] = None


@dataclass(frozen=True)
class LimitCheck:
    """One (identifier, bucket) pair to check, named for reporting"""
    identifier: str
    config: RateLimitConfig
    name: str


class RateLimitExceeded(Exception):
    """
    Raised by RateLimiter.enforce when any bucket denies the request.

    Carries everything the HTTP layer needs to render a 429.
    """

    def __init__(self, result: RateLimitResult, limit: int):
        super().__init__(f"Rate limit exceeded ({result.limited_by})")
        self.result = result
        self.limit = limit

    def payload(self) -> dict:
        reset_date = _iso_from_ms(self.result.reset_time)
        return {
            'error': 'Rate limit exceeded',
            'limitedBy': self.result.limited_by,
            'remaining': self.result.remaining,
            'resetTime': self.result.reset_time,
            'resetDate': reset_date,
            'message': f"Too many requests. Please try again after {reset_date}",
        }

    def headers(self, now_ms: Optional[int] = None) -> Dict[str, str]:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        retry_after = max(0, math.ceil((self.result.reset_time - now_ms) / 1000))
        return {
            'X-RateLimit-Limit': str(self.limit),
            'X-RateLimit-Remaining': str(self.result.remaining),
            'X-RateLimit-Reset': str(self.result.reset_time // 1000),
            'Retry-After': str(retry_after),
        }


def _iso_from_ms(epoch_ms: int) -> str:
    dt = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class RateLimiter:
    """
    Token-bucket limiter over an injected async Redis client.

    Usage:
        limiter = RateLimiter(redis_client)
        result = await limiter.check(client_ip, EVIDENCE_PER_IP)
        await limiter.enforce([LimitCheck(ip, EVIDENCE_PER_IP, 'ip'), ...])
    """

    def __init__(self, client=None, clock: Callable[[], float] = time.time):
        self.client = client
        self.clock = clock

    def _fail_open(self, config: RateLimitConfig, error: Optional[str] = None) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=config.max_tokens,
            reset_time=int(self.clock() * 1000) + config.refill_interval * 1000,
            error=error,
        )

    async def check(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        """
        Consume one token from the bucket for identifier.

        Returns:
            RateLimitResult; remaining is 0 and allowed is False when empty
        """
        if self.client is None:
            return self._fail_open(config)

        key = f"{config.key_prefix}{identifier}"
        now = int(self.clock())

        try:
            raw = await self.client.get(key)

            if not raw:
                # First request: start with a full bucket
                tokens = config.max_tokens
                last_refill = now
            else:
                bucket = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
                tokens = bucket['tokens']
                last_refill = bucket['lastRefill']

                elapsed = now - last_refill
                tokens_to_add = math.floor((elapsed / config.refill_interval) * config.refill_rate)
                if tokens_to_add > 0:
                    tokens = min(config.max_tokens, tokens + tokens_to_add)
                    last_refill = now

            if tokens >= 1:
                tokens -= 1
                await self.client.setex(
                    key,
                    config.refill_interval * 2,
                    json.dumps({'tokens': tokens, 'lastRefill': last_refill}),
                )
                # When the bucket will be full again
                seconds_until_full = ((config.max_tokens - tokens) / config.refill_rate) * config.refill_interval
                return RateLimitResult(
                    allowed=True,
                    remaining=int(tokens),
                    reset_time=int((now + seconds_until_full) * 1000),
                )

            seconds_until_refill = config.refill_interval - (now - last_refill)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=int((now + seconds_until_refill) * 1000),
                error='Rate limit exceeded',
            )

        except (RedisError, OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"[RateLimit] Error checking rate limit for {key}: {e}")
            return self._fail_open(config, error=str(e))

    async def check_multiple(self, checks: List[LimitCheck]) -> RateLimitResult:
        """
        Check several buckets; the first denial wins.

        When everything passes, reports the bucket with the fewest tokens left.
        """
        if not checks:
            return RateLimitResult(allowed=True, remaining=0, reset_time=int(self.clock() * 1000))

        results = await asyncio.gather(*(self.check(c.identifier, c.config) for c in checks))

        for check, result in zip(checks, results):
            if not result.allowed:
                return RateLimitResult(
                    allowed=False,
                    remaining=result.remaining,
                    reset_time=result.reset_time,
                    error=result.error,
                    limited_by=check.name,
                )

        tightest = min(results, key=lambda r: r.remaining)
        return RateLimitResult(
            allowed=True,
            remaining=tightest.remaining,
            reset_time=tightest.reset_time,
        )

    async def enforce(self, checks: List[LimitCheck]) -> RateLimitResult:
        """
        check_multiple, raising RateLimitExceeded on denial.

        Raises:
            RateLimitExceeded: if any bucket is empty
        """
        result = await self.check_multiple(checks)
        if not result.allowed:
            logger.info(f"[RateLimit] Denied by {result.limited_by}, reset at {result.reset_time}")
            raise RateLimitExceeded(result, limit=checks[0].config.max_tokens if checks else 0)
        return result
