"""Connectivity monitoring for offline-first sync.

This module provides:
- ConnectivityMonitor: Single source of truth for the online/offline state
- SignalSource: Protocol for passive OS-level connectivity notifications

The monitor combines two inputs:
- Passive signals pushed by the platform (network interface up/down)
- Active probes: bounded-timeout HEAD requests to well-known endpoints

Passive signals under-report captive portals and DNS-only failures, so an
"online" signal is always confirmed by a probe before it is trusted. An
"offline" signal is applied immediately.

Probes are fail-closed: any error, abort or timeout counts as offline.
A false "online" reading would make the action queue burn its retries on
doomed remote calls.

Usage:
    monitor = ConnectivityMonitor(config)
    unsubscribe = monitor.subscribe(lambda offline: print(offline))
    monitor.init()
    ...
    monitor.shutdown()
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Protocol

import httpx
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from instancesync.core.config import SyncConfig

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

PROBE_JOB_ID = "connectivity-probe"


class SignalSource(Protocol):
    """Protocol for passive connectivity notifications from the OS."""

    def register(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        """Register a callback receiving True when the OS reports online.

        Returns:
            Function that unregisters the callback.
        """
        ...


class ConnectivityMonitor:
    """Tracks whether the process is offline and notifies subscribers.

    Construct one monitor per process and pass it to the components that
    need it (queue, cache, background sync). Listeners fire only on
    transitions, synchronously and in registration order.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        scheduler: BackgroundScheduler | None = None,
        client_factory: Callable[[], httpx.Client] | None = None,
        initially_offline: bool = False,
    ) -> None:
        """Initialize the monitor.

        Args:
            config: Sync configuration (probe targets, interval, timeout).
            scheduler: Shared APScheduler instance (one is created if None).
            client_factory: Builds the HTTP client used for one probe.
            initially_offline: State assumed until the first probe completes.
        """
        self._config = config or SyncConfig()
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._client_factory = client_factory or self._default_client
        self._is_offline = initially_offline

        self._lock = threading.Lock()
        self._listeners: list[Callable[[bool], None]] = []
        self._signal_unregisters: list[Callable[[], None]] = []
        self._executor = ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="ConnectivityProbe"
        )
        self._started = False

    def _default_client(self) -> httpx.Client:
        return httpx.Client(timeout=self._config.probe_timeout, follow_redirects=True)

    @property
    def is_offline(self) -> bool:
        """Current offline state."""
        return self._is_offline

    def init(self, signal_sources: Iterable[SignalSource] = ()) -> None:
        """Start monitoring.

        Registers passive OS signals, schedules the periodic probe and
        performs one probe immediately.

        Args:
            signal_sources: Passive connectivity signal providers.
        """
        if self._started:
            logger.warning("ConnectivityMonitor already started")
            return
        self._started = True

        for source in signal_sources:
            self._signal_unregisters.append(source.register(self.handle_os_signal))

        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(daemon=True)
        self._scheduler.add_job(
            self.refresh,
            IntervalTrigger(seconds=self._config.probe_interval),
            id=PROBE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()

        self.refresh()
        logger.info(
            "ConnectivityMonitor started (probe every %.0fs, currently %s)",
            self._config.probe_interval,
            "OFFLINE" if self._is_offline else "ONLINE",
        )

    def shutdown(self) -> None:
        """Stop probing and unregister OS signals."""
        for unregister in self._signal_unregisters:
            unregister()
        self._signal_unregisters.clear()

        if self._scheduler is not None:
            if self._scheduler.get_job(PROBE_JOB_ID):
                self._scheduler.remove_job(PROBE_JOB_ID)
            if self._owns_scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
        self._executor.shutdown(wait=False)
        self._started = False
        logger.debug("ConnectivityMonitor stopped")

    def set_offline(self, offline: bool) -> None:
        """Set the offline state, notifying listeners on change.

        No-op if the value is unchanged.
        """
        with self._lock:
            if self._is_offline == offline:
                return
            self._is_offline = offline
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(offline)
            except Exception:
                logger.exception("Connectivity listener %r failed", listener)

        logger.info("Connectivity changed: %s", "OFFLINE" if offline else "ONLINE")

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        """Subscribe to offline/online transitions.

        Args:
            listener: Called with the new is_offline value on each transition.

        Returns:
            Unsubscribe function, safe to call more than once.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def handle_os_signal(self, online: bool) -> None:
        """Apply a passive OS connectivity notification.

        Offline is trusted immediately, online is confirmed by a probe.
        """
        if not online:
            self.set_offline(True)
            return
        self.refresh()

    def refresh(self) -> bool:
        """Probe and update the state.

        Returns:
            True if online.
        """
        online = self.check_online()
        self.set_offline(not online)
        return online

    def check_online(self) -> bool:
        """Probe reachability within the configured timeout.

        Targets are tried in order until one answers. Any HTTP response
        counts as reachable. If the whole probe exceeds the timeout, the
        client is closed to abort the in-flight request.

        Returns:
            True if a probe target answered in time, False otherwise.
        """
        timeout = self._config.probe_timeout
        deadline = time.monotonic() + timeout
        try:
            client = self._client_factory()
        except Exception as e:
            logger.debug("Could not create probe client: %s", e)
            return False

        try:
            future = self._executor.submit(self._probe_targets, client, deadline)
        except RuntimeError:
            # Executor already shut down
            client.close()
            return False

        try:
            return bool(future.result(timeout=timeout))
        except FutureTimeoutError:
            logger.debug("Connectivity probe timed out after %.1fs", timeout)
            future.cancel()
            client.close()
            return False
        except Exception as e:
            logger.debug("Connectivity probe failed: %s", e)
            return False

    def _probe_targets(self, client: httpx.Client, deadline: float) -> bool:
        try:
            for url in self._config.probe_targets:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                try:
                    client.head(url, timeout=remaining)
                    return True
                except (httpx.HTTPError, OSError) as e:
                    logger.debug("Probe target %s unreachable: %s", url, e)
            return False
        finally:
            client.close()
