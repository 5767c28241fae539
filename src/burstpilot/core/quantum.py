from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("burstpilot.quantum")


class QuantumScheduler:
    """Heartbeat + quantum-expiry timers scoped to one execution burst.

    The heartbeat fires every ``heartbeat_interval`` seconds until
    stopped.  The expiry fires once, ``quantum_duration`` seconds after
    :meth:`start`.  The two are independent.  Callbacks run on timer
    threads; the caller is expected to hand them off to its own
    sequence point rather than mutate state from them.
    """

    def __init__(self, heartbeat_interval: float, quantum_duration: float) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.quantum_duration = quantum_duration
        self._lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._expiry_timer: Optional[threading.Timer] = None

    @property
    def active(self) -> bool:
        with self._lock:
            return self._stop_event is not None and not self._stop_event.is_set()

    def start(self, on_heartbeat: Callable[[], None], on_quantum_expiry: Callable[[], None]) -> None:
        self.stop()
        stop_event = threading.Event()

        def _heartbeat_loop() -> None:
            while not stop_event.wait(self.heartbeat_interval):
                try:
                    on_heartbeat()
                except Exception as exc:  # noqa: BLE001
                    logger.error("Heartbeat callback failed: %s", exc)

        def _on_expiry() -> None:
            if stop_event.is_set():
                return
            logger.info("Quantum of %.0fs expired", self.quantum_duration)
            try:
                on_quantum_expiry()
            except Exception as exc:  # noqa: BLE001
                logger.error("Quantum expiry callback failed: %s", exc, exc_info=True)

        heartbeat = threading.Thread(target=_heartbeat_loop, name="quantum-heartbeat", daemon=True)
        expiry = threading.Timer(self.quantum_duration, _on_expiry)
        expiry.daemon = True
        expiry.name = "quantum-expiry"

        with self._lock:
            self._stop_event = stop_event
            self._heartbeat_thread = heartbeat
            self._expiry_timer = expiry
        heartbeat.start()
        expiry.start()
        logger.debug(
            "Quantum timers started (heartbeat=%.1fs, quantum=%.1fs)",
            self.heartbeat_interval, self.quantum_duration,
        )

    def stop(self) -> None:
        """Cancel both timers.  Safe to call when already stopped."""
        with self._lock:
            stop_event, self._stop_event = self._stop_event, None
            expiry, self._expiry_timer = self._expiry_timer, None
            self._heartbeat_thread = None
        if stop_event is not None:
            stop_event.set()
        if expiry is not None:
            expiry.cancel()
