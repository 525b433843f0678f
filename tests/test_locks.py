"""
Lock Tests
==========
"""

import threading
import time

from pisogate.locks import KeyedLocks, RebuildLock


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestKeyedLocks:

    def test_forgotten_after_release(self):
        locks = KeyedLocks()
        with locks.hold("AA:BB:CC:DD:EE:01"):
            assert locks.active_keys() == ["AA:BB:CC:DD:EE:01"]
            with locks.hold("AA:BB:CC:DD:EE:01"):
                pass
        assert locks.active_keys() == []

    def test_same_key_serialized(self):
        locks = KeyedLocks()
        order = []
        entered = threading.Event()

        def worker():
            with locks.hold(42):
                order.append("worker")

        with locks.hold(42):
            t = threading.Thread(target=worker)
            t.start()
            entered.wait(0.1)
            order.append("main")
        t.join(2)
        assert order == ["main", "worker"]

    def test_different_keys_independent(self):
        locks = KeyedLocks()
        done = threading.Event()

        def worker():
            with locks.hold(43):
                done.set()

        with locks.hold(42):
            threading.Thread(target=worker).start()
            assert done.wait(2)


class TestRebuildLock:

    def test_exclusive_is_reentrant_and_admits_owner_readers(self):
        lock = RebuildLock()
        with lock.exclusive():
            with lock.exclusive():
                with lock.shared():
                    assert lock.held_exclusive
        assert not lock.held_exclusive

    def test_writer_waits_for_readers(self):
        lock = RebuildLock()
        acquired = threading.Event()

        def writer():
            with lock.exclusive():
                acquired.set()

        with lock.shared():
            t = threading.Thread(target=writer)
            t.start()
            assert not acquired.wait(0.2)
        assert acquired.wait(2)
        t.join(2)

    def test_readers_wait_for_writer(self):
        lock = RebuildLock()
        acquired = threading.Event()

        def reader():
            with lock.shared():
                acquired.set()

        with lock.exclusive():
            t = threading.Thread(target=reader)
            t.start()
            assert not acquired.wait(0.2)
        assert acquired.wait(2)
        t.join(2)

    def test_nested_shared_does_not_queue_behind_waiting_writer(self):
        lock = RebuildLock()
        acquired = threading.Event()

        def writer():
            with lock.exclusive():
                acquired.set()

        with lock.shared():
            t = threading.Thread(target=writer)
            t.start()
            assert wait_until(lambda: lock._writers_waiting == 1)
            with lock.shared():
                assert not acquired.is_set()
        assert acquired.wait(2)
        t.join(2)
