import json
import logging
import os
import shutil
import threading
from dataclasses import dataclass

from .errors import StorageFailure
from .models import Lock, to_iso, utcnow
from .storage import atomic_write_json

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadResult:
    loaded: int = 0
    expired: int = 0


class LockStore:
    """In-memory department -> Lock map mirrored to one JSON snapshot file.

    Every mutation rewrites the whole snapshot before returning, so a caller
    that just finished ``set``/``remove`` never sees memory and disk disagree.
    """

    def __init__(self, path, clock=utcnow):
        self.path = path
        self.clock = clock
        self._locks = {}
        self._mutex = threading.RLock()
        self._sweep_stop = threading.Event()
        self._sweep_thread = None

    # --- persistence ---

    def _snapshot(self):
        return {
            'savedAt': to_iso(self.clock()),
            'locks': [lock.to_dict() for lock in self._locks.values()],
        }

    def _persist(self):
        try:
            atomic_write_json(self.path, self._snapshot())
        except OSError as e:
            log.error('Failed to persist lock snapshot %s: %s', self.path, e)
            raise StorageFailure('Failed to persist lock state') from e

    def _log_expired(self, lock):
        log.info('Expired lock removed for %s (owner=%s)', lock.department, lock.owner_user_name or 'unknown')

    def load_from_disk(self):
        """Load live leases from the snapshot; expired ones are dropped, never resurrected."""
        with self._mutex:
            if not os.path.exists(self.path):
                return LoadResult()
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    payload = json.load(f)
            except (ValueError, UnicodeDecodeError) as e:
                self._set_aside_corrupt(e)
                return LoadResult()
            records = payload.get('locks') if isinstance(payload, dict) else payload
            if not isinstance(records, list):
                log.warning('Invalid lock payload in %s', self.path)
                return LoadResult()

            now = self.clock()
            loaded = expired = 0
            for record in records:
                lock = Lock.from_dict(record)
                if lock is None:
                    continue
                if lock.is_expired(now):
                    expired += 1
                    self._log_expired(lock)
                    continue
                self._locks[lock.department] = lock
                loaded += 1
            if expired:
                self._persist()
            log.info('Lock snapshot loaded: %d live, %d expired', loaded, expired)
            return LoadResult(loaded=loaded, expired=expired)

    def _set_aside_corrupt(self, error):
        corrupt_path = self.path + '.corrupt'
        log.warning('Failed to parse %s: %s; copying it to %s', self.path, error, corrupt_path)
        try:
            shutil.copyfile(self.path, corrupt_path)
        except OSError as e:
            log.error('Could not preserve corrupt lock snapshot: %s', e)

    # --- map access ---

    def get(self, department):
        with self._mutex:
            return self._locks.get(department)

    def set(self, department, lock):
        with self._mutex:
            previous = self._locks.get(department)
            self._locks[department] = lock
            try:
                self._persist()
            except StorageFailure:
                if previous is None:
                    self._locks.pop(department, None)
                else:
                    self._locks[department] = previous
                raise

    def remove(self, department):
        with self._mutex:
            previous = self._locks.pop(department, None)
            if previous is None:
                return False
            try:
                self._persist()
            except StorageFailure:
                self._locks[department] = previous
                raise
            return True

    def __len__(self):
        with self._mutex:
            return len(self._locks)

    # --- expiry ---

    def sweep_expired(self, now=None):
        with self._mutex:
            now = now or self.clock()
            expired = [lock for lock in self._locks.values() if lock.is_expired(now)]
            for lock in expired:
                del self._locks[lock.department]
                self._log_expired(lock)
            if expired:
                self._persist()
            return len(expired)

    def _sweep_loop(self, interval):
        while not self._sweep_stop.wait(interval):
            try:
                self.sweep_expired()
            except StorageFailure:
                # already logged; retry next tick
                continue

    def start_sweeper(self, interval_seconds):
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return self._sweep_thread
        self._sweep_stop.clear()
        self._sweep_thread = threading.Thread(
            target=self._sweep_loop,
            args=(interval_seconds,),
            daemon=True,
            name='lock-sweeper',
        )
        self._sweep_thread.start()
        return self._sweep_thread

    def stop_sweeper(self, timeout=1.0):
        self._sweep_stop.set()
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            self._sweep_thread.join(timeout=timeout)
        self._sweep_thread = None
