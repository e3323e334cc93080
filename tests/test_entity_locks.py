import threading
import time

from app.services.entity_locks import KeyedLocks


def test_same_key_is_serialized():
    locks = KeyedLocks()
    active = []
    overlaps = []

    def worker():
        with locks.hold("invoice", "in_1"):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []


def test_distinct_keys_do_not_block():
    locks = KeyedLocks()
    entered = threading.Event()

    def other():
        with locks.hold("invoice", "in_2"):
            entered.set()

    with locks.hold("invoice", "in_1"):
        thread = threading.Thread(target=other)
        thread.start()
        assert entered.wait(timeout=1)
        thread.join()


def test_reentrant_and_released():
    locks = KeyedLocks()

    with locks.hold("subscription", "sub_1"):
        with locks.hold("subscription", "sub_1"):
            assert len(locks) == 1

    assert len(locks) == 0


def test_none_key_is_a_noop():
    locks = KeyedLocks()

    with locks.hold("subscription", None):
        assert len(locks) == 0
