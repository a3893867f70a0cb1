"""
Buffered writer for the operator-facing audit trail.

Two streams share one buffer:
- system_logs: what the machinery did (valve automation, lifecycle sweeps,
  liveness checks), tagged success|error|info|warning.
- user_logs: what an operator did (acknowledge, delete, restore, config saves).
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Deque, Optional

import asyncpg

logger = logging.getLogger(__name__)

LOG_STATUSES = ("success", "error", "info", "warning")


@dataclass
class AuditEvent:
    table: str
    timestamp: datetime
    device_id: Optional[str]
    component: str
    details: str
    status: str
    user_id: Optional[str] = None

    def to_tuple(self):
        if self.table == "user_logs":
            return (self.timestamp, self.user_id, self.details, self.component)
        return (self.timestamp, self.device_id, self.component, self.details, self.status)


class AuditLogger:
    """
    Buffered audit logger with async batch writes.

    - Events are buffered in memory
    - Flushed every flush_interval_ms OR when buffer hits batch_size
    - Uses COPY for bulk inserts
    - Fire-and-forget: never blocks the caller
    """

    COLUMNS = {
        "system_logs": ["date_time", "device_id", "component", "details", "status"],
        "user_logs": ["date_time", "user_id", "details", "category"],
    }

    def __init__(
        self,
        pool: asyncpg.Pool,
        service_name: str,
        batch_size: int = 200,
        flush_interval_ms: int = 500,
        max_buffer_size: int = 10000,
    ):
        self.pool = pool
        self.service_name = service_name
        self.batch_size = batch_size
        self.flush_interval_ms = flush_interval_ms
        self.max_buffer_size = max_buffer_size

        self.buffer: Deque[AuditEvent] = deque(maxlen=max_buffer_size)
        self._flush_task: Optional[asyncio.Task] = None
        self._running = False
        self._lock = asyncio.Lock()

        self.events_logged = 0
        self.events_flushed = 0
        self.flush_errors = 0

    async def start(self):
        if self._running:
            return
        self._running = True
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info("AuditLogger started for %s", self.service_name)

    async def stop(self):
        """Stop the flush loop and flush remaining events."""
        self._running = False
        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        await self.flush()
        logger.info(
            "AuditLogger stopped. Total: %s logged, %s flushed",
            self.events_logged,
            self.events_flushed,
        )

    async def _flush_loop(self):
        while self._running:
            await asyncio.sleep(self.flush_interval_ms / 1000)
            if len(self.buffer) > 0:
                await self.flush()

    async def flush(self):
        """Write buffered events, one COPY per target table."""
        if len(self.buffer) == 0:
            return

        async with self._lock:
            events = []
            while self.buffer:
                events.append(self.buffer.popleft())
            if not events:
                return

            by_table: dict[str, list[AuditEvent]] = {}
            for event in events:
                by_table.setdefault(event.table, []).append(event)

            try:
                async with self.pool.acquire() as conn:
                    for table, table_events in by_table.items():
                        await conn.copy_records_to_table(
                            table,
                            records=[e.to_tuple() for e in table_events],
                            columns=self.COLUMNS[table],
                        )
                self.events_flushed += len(events)
            except Exception as exc:
                self.flush_errors += 1
                logger.error("Audit flush failed (%s events): %s", len(events), exc)
                for event in reversed(events):
                    if len(self.buffer) < self.max_buffer_size:
                        self.buffer.appendleft(event)

    def _append(self, event: AuditEvent) -> None:
        self.buffer.append(event)
        self.events_logged += 1
        if len(self.buffer) >= self.batch_size:
            asyncio.create_task(self.flush())

    def system(self, device_id: Optional[str], component: str, details: str, status: str = "info"):
        """
        Record a machine-originated event. Non-blocking, adds to buffer.
        Call this synchronously - no await needed.
        """
        if status not in LOG_STATUSES:
            raise ValueError(f"unknown log status {status!r}")
        self._append(
            AuditEvent(
                table="system_logs",
                timestamp=datetime.now(timezone.utc),
                device_id=device_id,
                component=component,
                details=details,
                status=status,
            )
        )

    def user_action(self, user_id: Optional[str], details: str, category: str):
        self._append(
            AuditEvent(
                table="user_logs",
                timestamp=datetime.now(timezone.utc),
                device_id=None,
                component=category,
                details=details,
                status="info",
                user_id=user_id,
            )
        )

    # Convenience methods for common event types
    def valve_automation(self, device_id: str, details: str, closed: bool):
        self.system(device_id, "Valve", details, "warning" if closed else "success")

    def device_offline(self, device_id: str):
        self.system(device_id, "Microcontroller", "Device went offline (heartbeat missed)", "error")

    def sensor_offline(self, device_id: str, sensor: str):
        self.system(device_id, "Sensor", f"Sensor {sensor} went offline (heartbeat missed)", "error")

    def alerts_transitioned(self, device_id: Optional[str], count: int, transition: str):
        plural = "s" if count != 1 else ""
        self.system(device_id, "Alerts", f"{count} alert{plural} {transition}", "info")

    def config_changed(self, user_id: Optional[str], device_label: str, changes: list[str]):
        details = f"Device {device_label} configuration updated. Changes: {', '.join(changes)}"
        self.user_action(user_id, details, "Configuration")


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> Optional[AuditLogger]:
    return _audit_logger


def init_audit_logger(pool: asyncpg.Pool, service_name: str, **kwargs) -> AuditLogger:
    global _audit_logger
    _audit_logger = AuditLogger(pool, service_name, **kwargs)
    return _audit_logger
