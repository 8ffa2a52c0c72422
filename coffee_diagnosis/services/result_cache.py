"""
Result Cache Service
====================

Two-tier cache for predictions (keyed by image fingerprint) and model
statistics (keyed by model version).

- In-process TTL tier, capped at 1 hour for predictions and 15 minutes
  for statistics
- Redis tier (PSETEX, millisecond expiry) with every call bounded by
  CACHE_TIMEOUT_SECONDS
- Redis errors and timeouts degrade to the in-process tier
"""

import asyncio
import hashlib
import logging
import threading
import time
from datetime import timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel, ValidationError

from coffee_diagnosis.config import settings
from coffee_diagnosis.schemas import ModelStatistics, PredictionResult

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MEMORY_PREDICTION_CAP = timedelta(hours=1)
MEMORY_STATS_CAP = timedelta(minutes=15)


class CacheStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


def image_fingerprint(image_bytes: bytes, symptom_ids: Optional[Iterable[int]] = None) -> str:
    """MD5 of the image bytes, plus the sorted symptom ids when present"""
    digest = hashlib.md5(image_bytes)
    symptoms = sorted(set(symptom_ids or []))
    if symptoms:
        digest.update(("|" + ",".join(str(s) for s in symptoms)).encode("utf-8"))
    return digest.hexdigest()


class MemoryTier:
    """Thread-safe dict with per-key expiry"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: float):
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, value)

    def delete(self, key: str):
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class ResultCache:
    """
    Prediction and model-statistics cache.

    Every operation succeeds from the caller's point of view; the Redis
    tier is best effort.
    """

    PREDICTION_PREFIX = "prediction:"
    MODEL_STATS_PREFIX = "model_stats:"
    HEALTH_KEY = "health_check"

    def __init__(
        self,
        redis_client=None,
        redis_url: Optional[str] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.timeout = settings.CACHE_TIMEOUT_SECONDS if timeout is None else timeout
        self.memory = MemoryTier(clock)
        self._redis = redis_client
        redis_url = redis_url if redis_url is not None else settings.REDIS_URL
        if self._redis is None and redis_url:
            self._redis = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0
            )
        self._last_redis_error: Optional[str] = None

    @property
    def has_redis(self) -> bool:
        return self._redis is not None

    async def _redis_call(self, operation: str, *args):
        """Run one Redis command within the timeout; None on failure"""
        if self._redis is None:
            return None
        try:
            result = await asyncio.wait_for(getattr(self._redis, operation)(*args), timeout=self.timeout)
            self._last_redis_error = None
            return result
        except asyncio.TimeoutError:
            self._last_redis_error = f"{operation} timed out"
            logger.warning(f"Redis {operation} timed out after {self.timeout}s, using memory tier")
        except Exception as e:
            self._last_redis_error = str(e)
            logger.warning(f"Redis {operation} failed, using memory tier: {e}")
        return None

    # ========================================================================
    # Generic get/set
    # ========================================================================

    async def _get(self, key: str, model: Type[T], memory_cap: timedelta) -> Optional[T]:
        raw = self.memory.get(key)
        if raw is None:
            raw = await self._redis_call("get", key)
            if raw is not None:
                ttl_ms = await self._redis_call("pttl", key)
                if isinstance(ttl_ms, int) and ttl_ms > 0:
                    self.memory.set(key, raw, min(ttl_ms / 1000, memory_cap.total_seconds()))
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            await self._delete(key)
            return None

    async def _set(self, key: str, value: BaseModel, expiry: timedelta, memory_cap: timedelta):
        ttl_seconds = expiry.total_seconds()
        if ttl_seconds <= 0:
            return
        raw = value.model_dump_json()
        self.memory.set(key, raw, min(ttl_seconds, memory_cap.total_seconds()))
        await self._redis_call("psetex", key, max(1, int(ttl_seconds * 1000)), raw)

    async def _delete(self, key: str):
        self.memory.delete(key)
        await self._redis_call("delete", key)

    # ========================================================================
    # Predictions
    # ========================================================================

    async def get_prediction(self, image_hash: str) -> Optional[PredictionResult]:
        return await self._get(self.PREDICTION_PREFIX + image_hash, PredictionResult, MEMORY_PREDICTION_CAP)

    async def set_prediction(self, image_hash: str, result: PredictionResult, expiry: timedelta):
        await self._set(self.PREDICTION_PREFIX + image_hash, result, expiry, MEMORY_PREDICTION_CAP)
        logger.debug(f"Cached prediction for {image_hash[:12]} ({expiry})")

    async def invalidate_prediction(self, image_hash: str):
        await self._delete(self.PREDICTION_PREFIX + image_hash)

    # ========================================================================
    # Model statistics
    # ========================================================================

    async def get_model_stats(self, model_version: str) -> Optional[ModelStatistics]:
        return await self._get(self.MODEL_STATS_PREFIX + model_version, ModelStatistics, MEMORY_STATS_CAP)

    async def set_model_stats(self, model_version: str, stats: ModelStatistics, expiry: timedelta):
        await self._set(self.MODEL_STATS_PREFIX + model_version, stats, expiry, MEMORY_STATS_CAP)

    async def invalidate_model_stats(self, model_version: str):
        await self._delete(self.MODEL_STATS_PREFIX + model_version)

    # ========================================================================
    # Health
    # ========================================================================

    async def is_healthy(self) -> CacheStatus:
        """Round-trip a probe value through the active backend"""
        probe = str(time.time())
        if self._redis is None:
            self.memory.set(self.HEALTH_KEY, probe, 60)
            ok = self.memory.get(self.HEALTH_KEY) == probe
            self.memory.delete(self.HEALTH_KEY)
            return CacheStatus.HEALTHY if ok else CacheStatus.DEGRADED

        await self._redis_call("setex", self.HEALTH_KEY, 60, probe)
        value = await self._redis_call("get", self.HEALTH_KEY)
        if value != probe:
            logger.warning(f"Cache health check failed: {self._last_redis_error or 'value mismatch'}")
            return CacheStatus.DEGRADED
        await self._redis_call("delete", self.HEALTH_KEY)
        return CacheStatus.HEALTHY

    async def close(self):
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis cache connection: {e}")
