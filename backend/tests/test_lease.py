from __future__ import annotations

import asyncio
import threading

import pytest
from sqlalchemy.orm import sessionmaker

from wxconsensus.db.session import _build_engine, init_db
from wxconsensus.errors import StorageError
from wxconsensus.services.lease import LeaderState, LeaseManager
from wxconsensus.storage import InMemoryAccuracyStore, SqlAccuracyStore
from wxconsensus.storage.base import Lease


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


def _race(store, candidates: int = 8):
    clock = FakeClock()
    managers = [LeaseManager(store, holder_id=f"replica-{i}", clock=clock) for i in range(candidates)]
    barrier = threading.Barrier(candidates)
    tokens = [None] * candidates

    def attempt(i: int) -> None:
        barrier.wait()
        tokens[i] = managers[i].acquire()

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(candidates)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return managers, tokens


@pytest.fixture
def file_sql_store(tmp_path):
    engine = _build_engine(f"sqlite:///{tmp_path / 'lease.db'}")
    init_db(bind=engine)
    yield SqlAccuracyStore(sessionmaker(bind=engine, expire_on_commit=False, future=True))
    engine.dispose()


@pytest.mark.parametrize("expired", [False, True])
def test_concurrent_acquire_single_winner_sqlite_file(file_sql_store, expired):
    if expired:
        file_sql_store.put_lease(Lease("accuracy-runner-lease", "crashed-replica", 0))
    managers, tokens = _race(file_sql_store)

    winners = [t for t in tokens if t is not None]
    assert len(winners) == 1
    assert file_sql_store.get_lease("accuracy-runner-lease").holder_id == winners[0].holder_id
    assert sum(m.state is LeaderState.LEADER for m in managers) == 1


def test_concurrent_acquire_single_winner_memory():
    store = InMemoryAccuracyStore()
    _, tokens = _race(store, candidates=16)
    assert len([t for t in tokens if t is not None]) == 1


def test_acquire_rules(store):
    clock = FakeClock()
    a = LeaseManager(store, holder_id="a", clock=clock)
    b = LeaseManager(store, holder_id="b", clock=clock)

    token = a.acquire()
    assert token is not None and token.holder_id == "a"
    assert a.state is LeaderState.LEADER
    assert b.acquire() is None
    assert b.state is LeaderState.NOT_LEADER

    # the holder may re-acquire its own lease
    clock.t += 30
    assert a.acquire() is not None

    # 90s without renewal: anyone may take it
    clock.t += 91
    assert b.acquire() is not None
    assert b.current_holder() == "b"


def test_renew_detects_loss(store):
    clock = FakeClock()
    a = LeaseManager(store, holder_id="a", clock=clock)
    b = LeaseManager(store, holder_id="b", clock=clock)
    token = a.acquire()

    clock.t += 60
    assert a.renew(token) is True

    clock.t += 100
    b.acquire()
    assert a.renew(token) is False
    assert a.state is LeaderState.NOT_LEADER
    assert a.token is None


def test_release_frees_the_lease(store):
    a = LeaseManager(store, holder_id="a")
    b = LeaseManager(store, holder_id="b")
    token = a.acquire()
    assert a.release(token) is True
    assert a.state is LeaderState.NOT_LEADER
    assert b.acquire() is not None


def test_renewal_must_be_shorter_than_duration(memory_store):
    with pytest.raises(ValueError):
        LeaseManager(memory_store, duration_s=60, renew_interval_s=60)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_renewal_task_stops_itself_on_loss(anyio_backend, memory_store):
    clock = FakeClock()
    manager = LeaseManager(memory_store, holder_id="a", duration_s=0.5, renew_interval_s=0.01, clock=clock)
    token = manager.acquire()
    task = manager.start_renewal(token)

    await asyncio.sleep(0.05)
    assert not task.done()
    assert manager.is_leader

    memory_store.put_lease(Lease(manager.lease_id, "usurper", int(clock.t * 1000)))
    await asyncio.wait_for(task, timeout=2)

    assert manager.state is LeaderState.NOT_LEADER
    assert manager.renewal_running is False


class FlakyStore(InMemoryAccuracyStore):
    def __init__(self) -> None:
        super().__init__()
        self.failures = 1

    def renew_lease(self, lease_id, holder_id, now_ms):
        if self.failures:
            self.failures -= 1
            raise StorageError("database is locked")
        return super().renew_lease(lease_id, holder_id, now_ms)


@pytest.mark.anyio
@pytest.mark.parametrize("anyio_backend", ["asyncio"])
async def test_renewal_survives_storage_error(anyio_backend):
    store = FlakyStore()
    manager = LeaseManager(store, holder_id="a", duration_s=5, renew_interval_s=0.01)
    token = manager.acquire()
    task = manager.start_renewal(token)

    await asyncio.sleep(0.1)
    assert store.failures == 0
    assert not task.done()
    assert manager.is_leader

    manager.stop_renewal()
    await asyncio.sleep(0.05)
    assert task.done()
    assert manager.renewal_running is False
