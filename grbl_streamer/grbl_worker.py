"""Threaded GRBL driver.

``GrblWorker`` owns a ``ProtocolEngine`` and the threads that keep it
moving: ``GRBL-RX`` feeds received lines to the engine, ``GRBL-TX`` writes
queued lines as the RX-buffer budget allows, ``GRBL-Status`` polls status
and watches for lost acknowledgments, and a per-job ``GRBL-Producer``
queues program lines. Events are published to the caller's queue as tuples.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any

from grbl_streamer.grbl_responses import MachineStatus
from grbl_streamer.grbl_worker_commands import GrblWorkerCommandMixin
from grbl_streamer.grbl_worker_connection import GrblWorkerConnectionMixin
from grbl_streamer.grbl_worker_status import GrblWorkerStatusMixin
from grbl_streamer.grbl_worker_streaming import GrblWorkerStreamingMixin
from grbl_streamer.protocol_engine import ProtocolEngine
from grbl_streamer.utils.config import Settings
from grbl_streamer.utils.constants import (
    ACK_TIMEOUT_DEFAULT,
    QUEUE_CAPACITY_DEFAULT,
    RX_BUFFER_RESERVE,
    RX_BUFFER_SIZE,
    STATUS_POLL_DEFAULT,
)

logger = logging.getLogger(__name__)


class _EngineEvents:
    """Routes engine events through the worker before they reach the UI queue."""

    def __init__(self, worker: "GrblWorker"):
        self._worker = worker

    def put(self, event: tuple) -> None:
        self._worker._on_engine_event(event)


class GrblWorker(
    GrblWorkerConnectionMixin,
    GrblWorkerStatusMixin,
    GrblWorkerStreamingMixin,
    GrblWorkerCommandMixin,
):
    """Manages communication with a GRBL controller.

    This class handles:
    - Connection and disconnection over any transport
    - Program streaming under the RX-buffer byte budget
    - Status polling and acknowledgment timeouts
    - Real-time and manual commands

    Can be used as a context manager for automatic cleanup.

    Example:
        with GrblWorker(ui_queue) as worker:
            worker.connect_serial('COM3')
            worker.start_stream(load_program('part.nc'))
    """

    def __init__(
        self,
        ui_event_q: Any | None = None,
        settings: Settings | None = None,
        **engine_options: Any,
    ):
        """Initialize GRBL worker.

        Args:
            ui_event_q: Queue for events to the UI or caller (default: a new ``queue.Queue``)
            settings: Source of ``controller.*`` settings
            **engine_options: Overrides passed to ``ProtocolEngine``
        """
        self.ui_q = ui_event_q if ui_event_q is not None else queue.Queue()
        self.transport = None

        poll_interval = STATUS_POLL_DEFAULT
        options: dict[str, Any] = {
            "rx_buffer_size": RX_BUFFER_SIZE,
            "rx_buffer_reserve": RX_BUFFER_RESERVE,
            "ack_timeout": ACK_TIMEOUT_DEFAULT,
            "queue_capacity": QUEUE_CAPACITY_DEFAULT,
        }
        if settings is not None:
            for key in options:
                options[key] = settings.get(f"controller.{key}", options[key])
            poll_interval = settings.get("controller.status_poll_interval", poll_interval)
        options.update(engine_options)
        self.engine = ProtocolEngine(self._write, event_q=_EngineEvents(self), **options)

        # Worker threads
        self._rx_thread = None
        self._tx_thread = None
        self._status_thread = None
        self._stop_evt = threading.Event()
        self._stop_evt.set()
        self._disconnect_lock = threading.Lock()

        # Status polling
        self._status_interval_lock = threading.Lock()
        self._status_poll_interval = float(poll_interval)
        self._status_query_failures = 0
        self._status_query_failure_limit = 3

        # Streaming state
        self._job_lock = threading.Lock()
        self._program = None
        self._producer_thread = None
        self._abort_evt = threading.Event()
        self._streaming = False
        self._job_total = 0
        self._job_acked = 0
        self._job_errors = []
        self._pause_on_error = True
        self._last_manual_source = None

    @property
    def status(self) -> MachineStatus:
        """Latest machine status snapshot."""
        return self.engine.status

    # ========================================================================
    # CONTEXT MANAGER SUPPORT
    # ========================================================================

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - ensures cleanup."""
        self.disconnect()
        return False
