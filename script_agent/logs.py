"""Batched log shipping for Script Agent.

Records from scripts and from the agent itself are buffered in arrival order
and sent to the controller as one ``LOG`` frame per flush. While the
connection is down the buffer is kept, up to a retention ceiling beyond which
the oldest records are dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Deque, List, Optional

from .config import LogBufferConfig
from .connection import Link
from .protocol import SYSTEM_SCRIPT_ID, LogRecord, log_batch_frame
from .scheduler import PeriodicTask, Sleep


logger = logging.getLogger(__name__)


class LogAggregator:
    """Buffers log records and flushes them on size or time, whichever comes first."""

    def __init__(
        self,
        device_id: str,
        link: Link,
        config: Optional[LogBufferConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.device_id = device_id
        self.config = config or LogBufferConfig()
        self._link = link
        self._buffer: Deque[LogRecord] = deque()
        self._timer = PeriodicTask(
            "log-flush",
            self.flush,
            self.config.flush_interval,
            sleep=sleep,
        )

        # Stats
        self.dropped_count = 0
        self.sent_count = 0
        self.batches_sent = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._timer.running

    def start(self) -> None:
        self._timer.start()

    async def stop(self, flush: bool = True) -> None:
        await self._timer.stop()
        if flush:
            await self.flush()

    def add(self, script_id: str, content: str) -> LogRecord:
        """Append a record. Never blocks and never raises for a full buffer."""
        record = LogRecord(device_id=self.device_id, script_id=script_id, content=content)
        self.append(record)
        return record

    def system(self, content: str) -> LogRecord:
        return self.add(SYSTEM_SCRIPT_ID, content)

    def append(self, record: LogRecord) -> None:
        if len(self._buffer) >= self.config.max_retained:
            self._buffer.popleft()
            self.dropped_count += 1
        self._buffer.append(record)

        if len(self._buffer) >= self.config.batch_size and self._link.is_open:
            self._timer.trigger()

    def snapshot(self) -> List[LogRecord]:
        return list(self._buffer)

    def request_flush(self) -> None:
        """Flush at the next opportunity, e.g. right after a connection opens."""
        self._timer.trigger()

    async def flush(self) -> int:
        """Send everything buffered as one batch. Returns the number of records sent."""
        if not self._buffer:
            return 0
        if not self._link.is_open:
            logger.debug("Holding %d log records until the connection is open", len(self._buffer))
            return 0

        batch = list(self._buffer)
        if not self._link.send(log_batch_frame(self.device_id, batch)):
            return 0

        # Records appended while sending stay for the next batch
        for _ in range(len(batch)):
            self._buffer.popleft()
        self.sent_count += len(batch)
        self.batches_sent += 1
        return len(batch)


class LogForwardingHandler(logging.Handler):
    """Mirrors agent log lines into the aggregator as SYSTEM records."""

    def __init__(self, aggregator: LogAggregator, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.aggregator = aggregator

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.aggregator.system(record.getMessage())
        except Exception:
            self.handleError(record)
