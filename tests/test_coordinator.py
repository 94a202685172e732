import threading
from contextlib import contextmanager
from datetime import timedelta

import pytest

from gantt_server.coordinator import LockCoordinator
from gantt_server.errors import LockConflict, LockNotOwned, RevisionMismatch, WriteAccepted
from gantt_server.lock_store import LockStore
from gantt_server.models import Lock
from gantt_server.revision import RevisionGuard
from gantt_server.storage import DocumentStore

from .conftest import FakeClock


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def coordinator(tmp_path, clock):
    documents = DocumentStore(str(tmp_path / 'departments'))
    documents.create('Sales')
    locks = LockStore(str(tmp_path / 'config' / 'locks.json'), clock=clock)
    guard = RevisionGuard(documents, clock=clock)
    return LockCoordinator(locks, documents, guard, ttl=timedelta(minutes=60), clock=clock)


def bump_to(coordinator, revision):
    """Push Sales to the given revision through the revision-checked path."""
    current = coordinator.documents.read('Sales')['meta']['revision']
    while current < revision:
        assert isinstance(coordinator.save('Sales', 'alice', [], current), WriteAccepted)
        current += 1


def test_acquire_unlocked_then_conflict(coordinator, clock):
    lock = coordinator.acquire('Sales', 'alice', client_host='pc-1')
    assert isinstance(lock, Lock)
    assert lock.expires_at == clock() + timedelta(minutes=60)

    conflict = coordinator.acquire('Sales', 'bob')
    assert isinstance(conflict, LockConflict)
    assert conflict.lock.owner_user_name == 'alice'
    assert conflict.lock.client_host == 'pc-1'
    assert coordinator.status('Sales').owner_user_name == 'alice'


def test_reacquire_by_holder_renews_but_keeps_locked_at(coordinator, clock):
    first = coordinator.acquire('Sales', 'alice')
    clock.advance(minutes=20)
    second = coordinator.acquire('Sales', 'alice')
    assert second.locked_at == first.locked_at
    assert second.expires_at == first.expires_at + timedelta(minutes=20)
    assert second.last_heartbeat_at == clock()


def test_expired_lease_reclaimable_without_sweep(coordinator, clock, monkeypatch):
    coordinator.acquire('Sales', 'alice')
    clock.advance(minutes=61)
    # even if the sweep did nothing, an expired lease must not block
    monkeypatch.setattr(coordinator, 'sweep', lambda: 0)
    lock = coordinator.acquire('Sales', 'bob')
    assert isinstance(lock, Lock)
    assert lock.owner_user_name == 'bob'
    assert lock.locked_at == clock()


def test_alice_bob_scenario(coordinator, clock):
    assert isinstance(coordinator.acquire('Sales', 'alice'), Lock)
    assert coordinator.acquire('Sales', 'bob').lock.owner_user_name == 'alice'
    clock.advance(hours=1, seconds=1)
    assert coordinator.acquire('Sales', 'bob').owner_user_name == 'bob'


def test_heartbeat_extends_only_for_holder(coordinator, clock):
    coordinator.acquire('Sales', 'alice')
    clock.advance(minutes=30)
    renewed = coordinator.heartbeat('Sales', 'alice')
    assert renewed.expires_at == clock() + timedelta(minutes=60)

    before = coordinator.status('Sales')
    refused = coordinator.heartbeat('Sales', 'bob')
    assert isinstance(refused, LockNotOwned)
    assert refused.lock.owner_user_name == 'alice'
    assert coordinator.status('Sales') == before


def test_heartbeat_after_expiry_is_not_owned(coordinator, clock):
    coordinator.acquire('Sales', 'alice')
    clock.advance(minutes=60)
    result = coordinator.heartbeat('Sales', 'alice')
    assert isinstance(result, LockNotOwned)
    assert result.lock is None
    assert coordinator.status('Sales') is None


def test_heartbeat_on_unlocked(coordinator):
    assert isinstance(coordinator.heartbeat('Sales', 'alice'), LockNotOwned)


def test_release_is_idempotent_and_owner_only(coordinator):
    coordinator.acquire('Sales', 'alice')
    assert coordinator.release('Sales', 'bob') is False
    assert coordinator.status('Sales') is not None
    assert coordinator.release('Sales', 'alice') is True
    assert coordinator.release('Sales', 'alice') is False
    assert coordinator.status('Sales') is None


def test_admin_release_is_unconditional(coordinator):
    coordinator.acquire('Sales', 'alice')
    assert coordinator.admin_release('Sales', admin_name='admin') is True
    assert coordinator.status('Sales') is None
    assert coordinator.admin_release('Sales') is False
    assert isinstance(coordinator.acquire('Sales', 'bob'), Lock)


def test_concurrent_acquires_have_single_winner(coordinator):
    users = [f'user{i}' for i in range(8)]
    barrier = threading.Barrier(len(users))
    results = {}

    def worker(name):
        barrier.wait()
        results[name] = coordinator.acquire('Sales', name)

    threads = [threading.Thread(target=worker, args=(u,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    winners = [u for u, r in results.items() if isinstance(r, Lock)]
    assert len(winners) == 1
    assert all(r.lock.owner_user_name == winners[0] for r in results.values() if isinstance(r, LockConflict))


def test_save_requires_live_lease(coordinator, clock):
    result = coordinator.save('Sales', 'alice', [{'name': 'P'}], 1)
    assert isinstance(result, LockNotOwned)
    assert result.lock is None

    coordinator.acquire('Sales', 'bob')
    result = coordinator.save('Sales', 'alice', [{'name': 'P'}], 1)
    assert isinstance(result, LockNotOwned)
    assert result.lock.owner_user_name == 'bob'

    clock.advance(minutes=61)
    assert isinstance(coordinator.save('Sales', 'bob', [], 1), LockNotOwned)
    assert coordinator.documents.read('Sales')['meta']['revision'] == 1


def test_revision_scenario_three_to_four(coordinator):
    coordinator.acquire('Sales', 'alice')
    bump_to(coordinator, 3)

    ok = coordinator.save('Sales', 'alice', [{'name': 'Launch'}], 3)
    assert isinstance(ok, WriteAccepted)
    assert ok.revision == 4
    assert ok.meta['updatedBy'] == 'alice'

    stale = coordinator.save('Sales', 'alice', [{'name': 'Overwrite'}], 3)
    assert isinstance(stale, RevisionMismatch)
    assert (stale.expected_revision, stale.current_revision) == (3, 4)
    doc = coordinator.documents.read('Sales')
    assert doc['projects'] == [{'name': 'Launch'}]
    assert doc['meta']['revision'] == 4


def test_concurrent_saves_same_revision_one_wins(coordinator):
    coordinator.acquire('Sales', 'alice')
    barrier = threading.Barrier(2)
    results = []

    def worker(label):
        barrier.wait()
        results.append(coordinator.save('Sales', 'alice', [{'name': label}], 1))

    threads = [threading.Thread(target=worker, args=(label,)) for label in ('first', 'second')]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    accepted = [r for r in results if isinstance(r, WriteAccepted)]
    rejected = [r for r in results if isinstance(r, RevisionMismatch)]
    assert len(accepted) == 1 and len(rejected) == 1
    assert accepted[0].revision == 2
    assert rejected[0].current_revision == 2
    assert coordinator.documents.read('Sales')['meta']['revision'] == 2


def test_import_and_upload_ignore_client_revision(coordinator):
    """Bulk paths are last-writer-wins: they bump whatever revision is current."""
    coordinator.acquire('Sales', 'alice')
    bump_to(coordinator, 5)

    imported = coordinator.import_document('Sales', 'alice', {
        'password': 'secret', 'projects': [{'name': 'Imported'}], 'meta': {'revision': 1}})
    assert imported.revision == 6
    doc = coordinator.documents.read('Sales')
    assert doc['password'] == 'secret'
    assert doc['projects'] == [{'name': 'Imported'}]

    uploaded = coordinator.upload('Sales', 'alice', {'projects': [{'name': 'Uploaded'}], 'password': 'ignored'})
    assert uploaded.revision == 7
    doc = coordinator.documents.read('Sales')
    assert doc['projects'] == [{'name': 'Uploaded'}]
    assert doc['password'] == 'secret'

    # a client still holding revision 5 can no longer save, but could still have uploaded
    assert isinstance(coordinator.save('Sales', 'alice', [], 5), RevisionMismatch)


def test_bulk_paths_still_require_the_lease(coordinator):
    assert isinstance(coordinator.import_document('Sales', 'bob', {'projects': []}), LockNotOwned)
    assert isinstance(coordinator.upload('Sales', 'bob', {'projects': []}), LockNotOwned)


def test_delete_department_drops_its_lock(coordinator):
    coordinator.acquire('Sales', 'alice')
    coordinator.delete_department('Sales')
    assert coordinator.status('Sales') is None
    assert not coordinator.documents.exists('Sales')


@pytest.mark.parametrize('write', [
    lambda c: c.upload('Sales', 'alice', {'projects': [{'name': 'alice upload'}]}),
    lambda c: c.import_document('Sales', 'alice', {'projects': [{'name': 'alice import'}]}),
    lambda c: c.save('Sales', 'alice', [{'name': 'alice save'}], 1),
], ids=['upload', 'import', 'save'])
def test_lease_lost_while_waiting_for_write_lock(coordinator, clock, monkeypatch, write):
    coordinator.acquire('Sales', 'alice')
    real_lock = coordinator.guard.department_lock
    handed_over = []

    @contextmanager
    def lock_after_handover(department):
        if not handed_over:
            handed_over.append(department)
            # alice's lease runs out and bob saves before her write gets the lock
            clock.advance(minutes=60, seconds=2)
            assert isinstance(coordinator.acquire('Sales', 'bob'), Lock)
            assert isinstance(coordinator.save('Sales', 'bob', [{'name': 'bob work'}], 1), WriteAccepted)
        with real_lock(department):
            yield

    monkeypatch.setattr(coordinator.guard, 'department_lock', lock_after_handover)
    result = write(coordinator)

    assert isinstance(result, LockNotOwned)
    assert result.lock.owner_user_name == 'bob'
    doc = coordinator.documents.read('Sales')
    assert doc['projects'] == [{'name': 'bob work'}]
    assert doc['meta']['revision'] == 2
    assert doc['meta']['updatedBy'] == 'bob'
