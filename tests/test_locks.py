import threading

from logmonitor.locks import LockManager


def test_try_lock_is_non_blocking_and_releases_keys():
    manager = LockManager()

    unlock = manager.try_lock("server:srv-1")
    assert callable(unlock)

    assert manager.try_lock("server:srv-1") is None

    unlock()
    second = manager.try_lock("server:srv-1")
    assert callable(second)
    second()


def test_distinct_keys_are_independent():
    manager = LockManager()
    first = manager.try_lock("server:a")
    second = manager.try_lock("server:b")
    assert callable(first) and callable(second)
    assert manager.try_lock("server:a") is None
    first()
    second()


def test_concurrent_acquisition_grants_single_holder():
    manager = LockManager()
    results = []
    results_lock = threading.Lock()
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        outcome = manager.try_lock("server:shared")
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 8
    assert results.count(None) == 7
    assert sum(1 for item in results if callable(item)) == 1

    assert manager.try_lock("server:shared") is None
    granted = next(item for item in results if item is not None)
    granted()
    again = manager.try_lock("server:shared")
    assert callable(again)
    again()