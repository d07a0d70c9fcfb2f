# =============================================================================
# skilllab_core/offline/connection_manager.py
# Connection Status Detection and Management
# =============================================================================
"""
ConnectionManager - tracks whether the Supabase endpoint is reachable.

Features:
- Socket-level reachability check of the configured Supabase host
- Passive updates from the remote client (request succeeded / failed)
- Optional background health checks
- Callbacks on status changes
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import urlparse
import logging

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"           # Supabase reachable
    OFFLINE = "offline"         # No connectivity or not configured
    DEGRADED = "degraded"       # Last request failed
    UNKNOWN = "unknown"         # Initial state


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


class ConnectionManager:
    """
    Connection status for one remote endpoint.

    Usage:
        manager = ConnectionManager(settings.supabase_url)
        manager.check_connection()
        if manager.is_available:
            # talk to Supabase
        else:
            # cache-only
    """

    CHECK_INTERVAL_ONLINE = 30      # Seconds between checks when online
    CHECK_INTERVAL_OFFLINE = 10     # Seconds between checks when offline
    CONNECTION_TIMEOUT = 5          # Timeout for connection tests

    def __init__(self, endpoint_url: Optional[str] = None, timeout: Optional[float] = None):
        self.endpoint_url = endpoint_url
        self.timeout = timeout or self.CONNECTION_TIMEOUT
        self._state = ConnectionState()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()
        self._lock = threading.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_available(self) -> bool:
        """
        Whether a remote request is worth attempting.

        Only OFFLINE blocks requests. UNKNOWN and DEGRADED still try, so the
        next request settles the status without waiting for a health check.
        """
        return self._state.status != ConnectionStatus.OFFLINE

    def check_connection(self) -> ConnectionState:
        """Probe the endpoint host and update state."""
        self._state.last_check = datetime.now()
        reachable = self._probe_endpoint()
        if reachable:
            self._set_status(ConnectionStatus.ONLINE)
        else:
            self._set_status(ConnectionStatus.OFFLINE)
        return self._state

    def _probe_endpoint(self) -> bool:
        if not self.endpoint_url:
            return False

        parsed = urlparse(self.endpoint_url)
        host = parsed.hostname
        port = parsed.port or (443 if parsed.scheme != "http" else 80)
        if not host:
            self._state.error_message = f"Invalid endpoint URL: {self.endpoint_url}"
            return False

        try:
            with socket.create_connection((host, port), timeout=self.timeout):
                return True
        except OSError as e:
            self._state.error_message = str(e)
            logger.debug(f"Endpoint check failed: {e}")
            return False

    def report_success(self) -> None:
        """Called by the remote client after a request completed."""
        self._set_status(ConnectionStatus.ONLINE)

    def report_failure(self, error: Exception) -> None:
        """Called by the remote client after a request raised."""
        self._state.error_message = str(error)
        self._set_status(ConnectionStatus.DEGRADED)

    def _set_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            old_status = self._state.status
            self._state.status = status
            if status == ConnectionStatus.ONLINE:
                self._state.last_online = datetime.now()
                self._state.consecutive_failures = 0
                self._state.error_message = None
            elif status in (ConnectionStatus.OFFLINE, ConnectionStatus.DEGRADED):
                self._state.consecutive_failures += 1

        if old_status != status:
            logger.info(f"Connection status changed: {old_status.value} -> {status.value}")
            self._notify_callbacks()

    def start_monitoring(self) -> None:
        """Start background connection monitoring."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="ConnectionMonitor"
        )
        self._monitor_thread.start()
        logger.debug("Connection monitoring started")

    def stop_monitoring(self) -> None:
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
            self._monitor_thread = None
        logger.debug("Connection monitoring stopped")

    def _monitoring_loop(self) -> None:
        while not self._stop_monitoring.is_set():
            interval = (
                self.CHECK_INTERVAL_ONLINE
                if self.is_online
                else self.CHECK_INTERVAL_OFFLINE
            )

            if self._stop_monitoring.wait(timeout=interval):
                break

            try:
                self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def force_offline(self) -> None:
        """Force offline mode (for testing or user preference)."""
        self._set_status(ConnectionStatus.OFFLINE)
        logger.info("Forced offline mode")

    def force_check(self) -> ConnectionState:
        return self.check_connection()

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
