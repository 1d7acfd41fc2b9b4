"""Polling loop that turns newly published tags into pipeline runs.

Pipelines run on a thread pool so a build that takes hours never delays the
next poll. The loop itself only lists tags, updates the registry and submits
work. A small ``watch.json`` record names the live watcher process so that
``watch stop`` can find it from another shell.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from .canonical import to_canonical_json
from .context import BuildContext
from .errors import LockContentionError, TransientNetworkError, WatcherRunningError
from .models import Tag
from .pipeline import PipelineRunner
from .settings import RuntimeSettings
from .storage import atomic_write_text, locked_file, safe_read_text
from .tag_registry import pid_alive

logger = logging.getLogger(__name__)

STOP_REQUEST_NAME = "watch.stop"


class WatcherRecord(BaseModel):
    pid: int
    hostname: str
    started_at: datetime
    heartbeat_at: datetime


def _stop_request_path(settings: RuntimeSettings) -> Path:
    return settings.state_path / STOP_REQUEST_NAME


def read_watcher_record(settings: RuntimeSettings) -> WatcherRecord | None:
    path = settings.watcher_record_path
    if not path.is_file():
        return None
    try:
        return WatcherRecord.model_validate_json(safe_read_text(path, "watcher record"))
    except (ValueError, ValidationError) as exc:
        logger.warning("Ignoring unreadable watcher record %s: %s", path, exc)
        return None


def live_watcher(settings: RuntimeSettings) -> WatcherRecord | None:
    """The record of a watcher that is still running on this host, if any."""
    record = read_watcher_record(settings)
    if record is None:
        return None
    if record.hostname == socket.gethostname() and not pid_alive(record.pid):
        return None
    return record


def request_stop(settings: RuntimeSettings) -> WatcherRecord | None:
    """Ask a running watcher to stop.

    Writes a stop request picked up at the next tick and sends SIGTERM to the
    watcher process when it runs on this host.

    Returns:
        The record of the watcher that was asked to stop, or None if none runs.
    """
    record = live_watcher(settings)
    if record is None:
        settings.watcher_record_path.unlink(missing_ok=True)
        return None
    atomic_write_text(_stop_request_path(settings), f"{os.getpid()}\n")
    if record.hostname == socket.gethostname():
        try:
            os.kill(record.pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Watcher pid %d exited before the signal", record.pid)
    logger.info("Stop requested for watcher pid %d", record.pid)
    return record


class Watcher:
    """Foreground or daemonized tag watcher."""

    def __init__(self, context: BuildContext, runner: PipelineRunner | None = None) -> None:
        self.context = context
        self.registry = context.registry
        self.stop_event = context.stop_event
        self.runner = runner if runner is not None else context.pipeline_runner()
        self._pool: ThreadPoolExecutor | None = None
        self._in_flight: dict[str, Future[Any]] = {}
        self._lock = threading.Lock()
        self._started_at = datetime.now(UTC)
        self._previous_handlers: dict[int, Any] = {}

    @property
    def settings(self) -> RuntimeSettings:
        return self.context.settings

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _ensure_pool(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.context.config.max_concurrent_pipelines,
                thread_name_prefix="pipeline",
            )
        return self._pool

    def in_flight(self) -> set[str]:
        with self._lock:
            return {tag for tag, future in self._in_flight.items() if not future.done()}

    def _run_pipeline(self, tag: Tag) -> None:
        try:
            result = self.runner.run(tag, poll_signatures=False)
        except LockContentionError as exc:
            logger.info("Tag %s skipped: %s", tag, exc)
            return
        except Exception:
            logger.exception("Pipeline for %s crashed", tag)
            return
        finally:
            with self._lock:
                self._in_flight.pop(tag.name, None)
        if result.suspended:
            logger.info("Tag %s suspended at %s", tag, result.stage.value)
        elif result.stage.is_terminal:
            logger.info("Tag %s finished: %s", tag, result.stage.value)

    def _schedule(self, tag: Tag) -> bool:
        with self._lock:
            current = self._in_flight.get(tag.name)
            if current is not None and not current.done():
                return False
            self._in_flight[tag.name] = self._ensure_pool().submit(self._run_pipeline, tag)
        return True

    def poll_once(self) -> list[str]:
        """One tick: list tags, record new ones and schedule every runnable tag.

        The first poll ever made against a state directory records the
        published tags as baseline and schedules nothing. Tags already in the
        registry keep their entries. Entries driven by manual commands are
        never picked up. Waiting for detached signatures is a single check per
        tick, so a long wait never ties up a pool worker.

        Returns:
            Names of the tags submitted to the pool during this tick.

        Raises:
            TransientNetworkError: If the tag source could not be reached.
            AuthError: If the tag source rejected the credentials.
        """
        tags = self.context.tag_source.list_tags()
        if not self.registry.is_seeded():
            for tag in tags:
                self.registry.observe(tag.name, baseline=True)
            self.registry.mark_seeded([tag.name for tag in tags])
            logger.info("Recorded %d published tags as baseline; watching for new ones", len(tags))
            return []

        for tag in tags:
            self.registry.observe(tag.name)

        busy = self.in_flight()
        scheduled: list[str] = []
        for entry in self.registry.load_incomplete():
            if self.stop_event.is_set():
                break
            if entry.tag in busy:
                continue
            if entry.manual:
                logger.debug("Tag %s is driven by manual commands, not scheduling", entry.tag)
                continue
            if self.registry.is_locked(entry.tag):
                logger.debug("Tag %s is locked by %s", entry.tag, self.registry.lock_owner(entry.tag))
                continue
            if self._schedule(Tag(entry.tag)):
                logger.info("Scheduled pipeline for %s (stage %s)", entry.tag, entry.stage.value)
                scheduled.append(entry.tag)
        return scheduled

    def drain(self) -> None:
        """Wait for scheduled pipelines to return and release the pool."""
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def _claim_record(self) -> None:
        path = self.settings.watcher_record_path
        with locked_file(path):
            existing = live_watcher(self.settings)
            if existing is not None and existing.pid != os.getpid():
                raise WatcherRunningError(existing.pid)
            self._write_record()
        _stop_request_path(self.settings).unlink(missing_ok=True)

    def _write_record(self) -> None:
        record = WatcherRecord(
            pid=os.getpid(),
            hostname=socket.gethostname(),
            started_at=self._started_at,
            heartbeat_at=datetime.now(UTC),
        )
        atomic_write_text(self.settings.watcher_record_path, to_canonical_json(record))

    def _release_record(self) -> None:
        path = self.settings.watcher_record_path
        with locked_file(path):
            record = read_watcher_record(self.settings)
            if record is not None and record.pid == os.getpid():
                path.unlink(missing_ok=True)
        _stop_request_path(self.settings).unlink(missing_ok=True)

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        logger.info("Received %s, stopping watcher", signal.Signals(signum).name)
        self.stop()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def stop(self) -> None:
        """Stop ticking; running pipelines suspend at their next stage boundary."""
        self.stop_event.set()

    def start(self, daemon: bool = False) -> None:
        """Poll until stopped. With *daemon*, detach from the terminal first.

        Raises:
            WatcherRunningError: If another watcher serves the state directory.
            AuthError: If the tag source rejects the credentials.
        """
        if daemon:
            from .daemon import daemonize

            daemonize(self.settings.watcher_log_path)

        self._claim_record()
        self._install_signal_handlers()
        config = self.context.config
        interval = config.poll_interval_seconds
        failures = 0
        logger.info(
            "Watching %s/%s every %.0fs (pid %d)",
            config.source_repo_owner,
            config.source_repo_name,
            interval,
            os.getpid(),
        )
        try:
            while not self.stop_event.is_set():
                if _stop_request_path(self.settings).exists():
                    logger.info("Stop request found, stopping watcher")
                    self.stop()
                    break
                delay = interval
                try:
                    self.poll_once()
                    failures = 0
                except TransientNetworkError as exc:
                    failures += 1
                    delay = min(interval * (2**failures), config.retry.network_backoff_max_seconds)
                    logger.warning("Tag poll failed (%d in a row), retrying in %.0fs: %s", failures, delay, exc)
                self._write_record()
                self.stop_event.wait(delay)
        finally:
            self.stop()
            logger.info("Waiting for %d running pipeline(s) to suspend", len(self.in_flight()))
            self.drain()
            self._restore_signal_handlers()
            self._release_record()
            logger.info("Watcher stopped")
