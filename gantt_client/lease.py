"""Client half of the department lease protocol.

A :class:`LeaseAgent` keeps one department lease alive for one user:
debounced acquire, jittered heartbeat, independent status polling and a
best-effort release when the process goes away. Server-side expiry is what
actually keeps the lease safe; the release on exit only frees it sooner.
"""
import atexit
import logging
import random
import socket
import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .api import DepartmentLockedError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseConfig:
    heartbeat_interval: float = 5 * 60
    heartbeat_jitter: float = 30.0
    acquire_debounce: float = 0.3
    status_poll: float = 15.0


@dataclass(frozen=True)
class LeaseState:
    held: bool = False
    lock_info: Optional[dict] = None
    error: Optional[str] = None


class LeaseAgent:
    def __init__(self, api, department, config=None, on_change: Optional[Callable[[LeaseState], None]] = None,
                 client_host=None, jitter=random.uniform):
        self.api = api
        self.department = department
        self.config = config or LeaseConfig()
        self.on_change = on_change
        self.client_host = client_host or socket.gethostname()
        self._jitter = jitter

        self._mutex = threading.RLock()
        self._state = LeaseState()
        self._generation = 0
        # set by request_acquire, cleared by release; polling only adopts a lease we asked for
        self._wanted = False
        self._debounce_timer = None
        self._heartbeat_timer = None
        self._poll_stop = threading.Event()
        self._poll_thread = None
        self._closed = False

    # --- state ---

    @property
    def state(self) -> LeaseState:
        with self._mutex:
            return self._state

    @property
    def held(self):
        return self.state.held

    def _update(self, **changes):
        with self._mutex:
            self._state = replace(self._state, **changes)
            state = self._state
        if self.on_change is not None:
            try:
                self.on_change(state)
            except Exception:
                log.exception('on_change callback failed')

    # --- acquire ---

    def request_acquire(self):
        """Ask for the lease; bursts of calls collapse into one request."""
        with self._mutex:
            if self._closed:
                return
            self._wanted = True
            self._generation += 1
            generation = self._generation
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            self._debounce_timer = threading.Timer(self.config.acquire_debounce, self._acquire, args=(generation,))
            self._debounce_timer.daemon = True
            self._debounce_timer.start()

    def _is_current(self, generation):
        with self._mutex:
            return not self._closed and generation == self._generation

    def _acquire(self, generation):
        if not self._is_current(generation):
            return
        try:
            info = self.api.acquire_lock(self.department, client_host=self.client_host)
        except DepartmentLockedError as e:
            if self._is_current(generation):
                self._update(held=False, lock_info=e.lock_info, error='locked')
            return
        except Exception as e:
            log.warning('Lock acquire for %s failed: %s', self.department, e)
            if self._is_current(generation):
                self._update(held=False, error=str(e))
            return
        if not self._is_current(generation):
            # superseded while in flight; the newer request decides
            return
        self._update(held=True, lock_info=info, error=None)
        self._schedule_heartbeat()

    # --- heartbeat ---

    def _heartbeat_delay(self):
        return self.config.heartbeat_interval + self._jitter(0, self.config.heartbeat_jitter)

    def _schedule_heartbeat(self):
        with self._mutex:
            self._cancel_heartbeat()
            if self._closed:
                return
            self._heartbeat_timer = threading.Timer(self._heartbeat_delay(), self._heartbeat)
            self._heartbeat_timer.daemon = True
            self._heartbeat_timer.start()

    def _cancel_heartbeat(self):
        with self._mutex:
            if self._heartbeat_timer is not None:
                self._heartbeat_timer.cancel()
                self._heartbeat_timer = None

    def _heartbeat(self):
        if not self.held:
            return
        try:
            self.api.heartbeat_lock(self.department)
        except Exception as e:
            # any failure means we can no longer assume we hold the lease
            log.warning('Heartbeat for %s failed: %s', self.department, e)
            self._cancel_heartbeat()
            self._update(held=False, error='Lost lock connection')
            return
        with self._mutex:
            if not (self._state.held and self._wanted) or self._closed:
                return
            self._schedule_heartbeat()

    # --- status polling ---

    def start_polling(self):
        with self._mutex:
            if self._poll_thread is not None and self._poll_thread.is_alive():
                return
            self._poll_stop.clear()
            self._poll_thread = threading.Thread(target=self._poll_loop, daemon=True,
                                                 name=f'lock-status-{self.department}')
            self._poll_thread.start()

    def stop_polling(self):
        self._poll_stop.set()
        thread = self._poll_thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._poll_thread = None

    def poll_once(self):
        try:
            status = self.api.lock_status(self.department)
        except Exception as e:
            log.debug('Lock status for %s unavailable: %s', self.department, e)
            self._update(error='Unable to sync lock status')
            return
        with self._mutex:
            wanted = self._wanted
        held_now = wanted and bool(status.get('locked')) and status.get('lockedBy') == self.api.user_name
        if self.held and not held_now:
            log.warning('Lease on %s was taken away (now %s)', self.department,
                        status.get('lockedBy') if status.get('locked') else 'unlocked')
            self._cancel_heartbeat()
            self._update(held=False, lock_info=status, error='Lock lost')
            return
        self._update(held=held_now, lock_info=status, error=None)
        with self._mutex:
            needs_heartbeat = held_now and self._heartbeat_timer is None and not self._closed
        if needs_heartbeat:
            self._schedule_heartbeat()

    def _poll_loop(self):
        while True:
            self.poll_once()
            if self._poll_stop.wait(self.config.status_poll):
                return

    # --- release ---

    def _stop_timers(self):
        with self._mutex:
            self._wanted = False
            self._generation += 1
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
            self._cancel_heartbeat()

    def release(self):
        """Give the lease back; failures are logged, expiry covers them."""
        self._stop_timers()
        was_held = self.held
        if was_held:
            try:
                self.api.release_lock(self.department)
            except Exception as e:
                log.warning('Release of %s failed: %s', self.department, e)
        self._update(held=False, lock_info=None, error=None)
        return was_held

    def close(self):
        """Stop everything; a held lease is released with a non-blocking beacon."""
        with self._mutex:
            if self._closed:
                return
            self._closed = True
        self._stop_timers()
        self.stop_polling()
        if self.held:
            self.api.release_lock_beacon(self.department)
            self._update(held=False)

    def install_exit_hook(self):
        atexit.register(self.close)

    def __enter__(self):
        self.start_polling()
        self.request_acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
