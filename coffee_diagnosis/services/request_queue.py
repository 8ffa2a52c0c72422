"""
Diagnosis Request Queue
=======================

Asynchronous request/response transport for diagnosis work.

- submit() enqueues and returns a receipt immediately
- A consumer loop drains requests through DiagnosisService
- Results are published with the request's correlation id
- Redis Streams (XADD / XREADGROUP / XACK) when REDIS_URL is reachable,
  otherwise an in-process asyncio.Queue
- Entries left pending by a dead consumer are reclaimed (XAUTOCLAIM)
- Published results are kept in bounded buffers
- stop_consuming() lets the in-flight message finish
"""

import asyncio
import logging
import os
import uuid
from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from coffee_diagnosis.config import settings
from coffee_diagnosis.schemas import DiagnosisReceipt, DiagnosisRequest, DiagnosisResultMessage
from coffee_diagnosis.services.diagnosis_service import DiagnosisService

logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class DiagnosisRequestQueue:
    """Queue front-end plus background consumer for DiagnosisService"""

    def __init__(
        self,
        service: DiagnosisService,
        redis_client=None,
        redis_url: Optional[str] = None,
        request_stream: Optional[str] = None,
        result_stream: Optional[str] = None,
        consumer_group: Optional[str] = None,
        block_ms: Optional[int] = None,
        backoff_seconds: float = 5.0,
        claim_idle_ms: Optional[int] = None,
        reclaim_interval_seconds: Optional[float] = None,
        result_buffer_size: Optional[int] = None
    ):
        self.service = service
        self.redis_client = redis_client
        self._redis_url = redis_url if redis_url is not None else settings.REDIS_URL
        self.request_stream = request_stream or settings.QUEUE_STREAM_REQUESTS
        self.result_stream = result_stream or settings.QUEUE_STREAM_RESULTS
        self.consumer_group = consumer_group or settings.QUEUE_CONSUMER_GROUP
        self.consumer_name = f"worker_{os.getpid()}_{uuid.uuid4().hex[:6]}"
        self.block_ms = settings.QUEUE_BLOCK_MS if block_ms is None else block_ms
        self.backoff_seconds = backoff_seconds
        self.claim_idle_ms = settings.QUEUE_CLAIM_IDLE_MS if claim_idle_ms is None else claim_idle_ms
        self.reclaim_interval_seconds = (
            settings.QUEUE_RECLAIM_INTERVAL_SECONDS if reclaim_interval_seconds is None else reclaim_interval_seconds
        )
        if result_buffer_size is None:
            result_buffer_size = settings.QUEUE_RESULT_BUFFER_SIZE
        self.result_buffer_size = max(1, result_buffer_size)

        self._fallback_requests: "asyncio.Queue[DiagnosisRequest]" = asyncio.Queue()
        self.results: "asyncio.Queue[DiagnosisResultMessage]" = asyncio.Queue(maxsize=self.result_buffer_size)
        self._published: "OrderedDict[str, DiagnosisResultMessage]" = OrderedDict()
        self._last_reclaim: Optional[float] = None
        self._initialized = False
        self._running = False
        self._consumer_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uses_redis(self) -> bool:
        return self.redis_client is not None

    async def initialize(self) -> bool:
        """Connect to Redis and create the consumer group; False means in-memory mode"""
        if self._initialized:
            return self.redis_client is not None

        if self.redis_client is None and self._redis_url:
            self.redis_client = redis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0
            )

        if self.redis_client is not None:
            try:
                await self.redis_client.ping()
                try:
                    await self.redis_client.xgroup_create(
                        self.request_stream, self.consumer_group, id="0", mkstream=True
                    )
                    logger.info(f"Created consumer group: {self.consumer_group}")
                except redis.ResponseError as e:
                    if "BUSYGROUP" not in str(e):
                        raise
                logger.info("Diagnosis queue connected to Redis streams")
            except Exception as e:
                logger.warning(f"Redis not available, using in-memory queue: {e}")
                self.redis_client = None
        else:
            logger.info("Redis not configured, using in-memory queue")

        self._initialized = True
        return self.redis_client is not None

    # ========================================================================
    # Producer side
    # ========================================================================

    async def submit(
        self,
        image_id: int,
        image_path: str,
        symptom_ids: Optional[Iterable[int]] = None,
        correlation_id: Optional[str] = None
    ) -> DiagnosisReceipt:
        """Enqueue a diagnosis request and return without waiting for it"""
        await self.initialize()
        request = DiagnosisRequest(
            correlation_id=correlation_id or str(uuid.uuid4()),
            image_id=image_id,
            image_path=image_path,
            symptom_ids=list(symptom_ids or []),
        )

        if self.redis_client is not None:
            try:
                await self.redis_client.xadd(
                    self.request_stream,
                    {"correlation_id": request.correlation_id, "payload": request.model_dump_json()},
                    maxlen=10000
                )
            except Exception as e:
                logger.error(f"Failed to add request to stream, using in-memory queue: {e}")
                await self._fallback_requests.put(request)
        else:
            await self._fallback_requests.put(request)

        logger.info(f"Queued diagnosis request {request.correlation_id} for image {image_id}")
        return DiagnosisReceipt(correlation_id=request.correlation_id, submitted_at=request.submitted_at)

    async def _publish(self, message: DiagnosisResultMessage):
        self._published[message.correlation_id] = message
        self._published.move_to_end(message.correlation_id)
        while len(self._published) > self.result_buffer_size:
            self._published.popitem(last=False)
        if self.results.full():
            dropped = self.results.get_nowait()
            logger.warning(f"Result buffer full, dropping unread result {dropped.correlation_id}")
        self.results.put_nowait(message)
        if self.redis_client is not None:
            try:
                await self.redis_client.xadd(
                    self.result_stream,
                    {"correlation_id": message.correlation_id, "payload": message.model_dump_json()},
                    maxlen=10000
                )
            except Exception as e:
                logger.error(f"Failed to publish result {message.correlation_id}: {e}")

    def get_result(self, correlation_id: str) -> Optional[DiagnosisResultMessage]:
        return self._published.get(correlation_id)

    # ========================================================================
    # Consumer side
    # ========================================================================

    async def start_consuming(self):
        if self._running:
            return
        await self.initialize()
        self._running = True
        self._consumer_task = asyncio.create_task(self._consume_loop())
        logger.info(f"Diagnosis consumer {self.consumer_name} started")

    async def stop_consuming(self):
        """Stop after the message currently being processed, if any"""
        if not self._running:
            return
        self._running = False
        if self._consumer_task is not None:
            if self._in_flight:
                logger.info(f"Waiting for in-flight request {self._in_flight}")
            await self._consumer_task
            self._consumer_task = None
        logger.info(f"Diagnosis consumer {self.consumer_name} stopped")

    async def close(self):
        await self.stop_consuming()
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
        self._initialized = False

    async def _consume_loop(self):
        while self._running:
            try:
                batch = await self._read_batch()
                for entry_id, request in batch:
                    await asyncio.shield(self._handle(entry_id, request))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in diagnosis consumer loop: {e}")
                await asyncio.sleep(self.backoff_seconds)

    async def _read_batch(self) -> List[Tuple[Optional[str], Optional[DiagnosisRequest]]]:
        if self.redis_client is None:
            try:
                request = await asyncio.wait_for(
                    self._fallback_requests.get(), timeout=self.block_ms / 1000
                )
            except asyncio.TimeoutError:
                return []
            return [(None, request)]

        # Requests queued while Redis was unreachable are drained first
        if not self._fallback_requests.empty():
            return [(None, self._fallback_requests.get_nowait())]

        now = asyncio.get_running_loop().time()
        if self._last_reclaim is None or now - self._last_reclaim >= self.reclaim_interval_seconds:
            self._last_reclaim = now
            reclaimed = await self._reclaim_stale()
            if reclaimed:
                return reclaimed

        messages = await self.redis_client.xreadgroup(
            groupname=self.consumer_group,
            consumername=self.consumer_name,
            streams={self.request_stream: ">"},
            count=10,
            block=self.block_ms
        )
        batch = []
        for _stream_name, entries in messages or []:
            for entry_id, fields in entries:
                batch.append((entry_id, self._parse(entry_id, fields)))
        return batch

    async def _reclaim_stale(self, count: int = 10) -> List[Tuple[str, Optional[DiagnosisRequest]]]:
        """Take over requests left unacknowledged by a consumer that stopped"""
        try:
            result = await self.redis_client.xautoclaim(
                self.request_stream,
                self.consumer_group,
                self.consumer_name,
                min_idle_time=self.claim_idle_ms,
                start_id="0-0",
                count=count
            )
        except Exception as e:
            logger.error(f"Error claiming stale requests: {e}")
            return []

        batch = []
        if result and len(result) > 1:
            for entry_id, fields in result[1]:
                if fields:
                    batch.append((entry_id, self._parse(entry_id, fields)))
        if batch:
            logger.info(f"Claimed {len(batch)} stale diagnosis requests")
        return batch

    async def get_pending(self, count: int = 100) -> List[Dict[str, Any]]:
        """Requests delivered to a consumer but not yet acknowledged"""
        await self.initialize()
        if self.redis_client is None:
            return []
        try:
            return await self.redis_client.xpending_range(
                self.request_stream, self.consumer_group, min="-", max="+", count=count
            )
        except Exception as e:
            logger.error(f"Error getting pending requests: {e}")
            return []

    @staticmethod
    def _parse(entry_id: str, fields: Dict[str, str]) -> Optional[DiagnosisRequest]:
        try:
            return DiagnosisRequest.model_validate_json(fields.get("payload", ""))
        except ValidationError as e:
            logger.error(f"Discarding malformed request {entry_id}: {e}")
            return None

    async def _handle(self, entry_id: Optional[str], request: Optional[DiagnosisRequest]):
        try:
            if request is not None:
                self._in_flight = request.correlation_id
                message = await self.service.process(request)
                if message is not None:
                    await self._publish(message)
        finally:
            self._in_flight = None
            if entry_id is not None and self.redis_client is not None:
                await self.redis_client.xack(self.request_stream, self.consumer_group, entry_id)

    async def is_healthy(self) -> QueueStatus:
        """Healthy only when the Redis transport answers; in-memory mode is degraded"""
        await self.initialize()
        if self.redis_client is None:
            return QueueStatus.DEGRADED
        try:
            await asyncio.wait_for(self.redis_client.ping(), timeout=settings.QUEUE_HEALTH_TIMEOUT_SECONDS)
            return QueueStatus.HEALTHY
        except Exception as e:
            logger.warning(f"Diagnosis queue health check failed: {e}")
            return QueueStatus.DEGRADED

    async def wait_for_result(self, correlation_id: str, timeout: float = 10.0) -> Optional[DiagnosisResultMessage]:
        """Poll for a published result; used by callers that want request/response semantics"""
        deadline = asyncio.get_running_loop().time() + timeout
        while asyncio.get_running_loop().time() < deadline:
            message = self._published.get(correlation_id)
            if message is not None:
                return message
            await asyncio.sleep(0.01)
        return self._published.get(correlation_id)
