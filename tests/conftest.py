"""
Shared fixtures for the ledger test suite
"""

import threading
import pytest


@pytest.fixture
def run_concurrently():
    """
    Run ``fn`` from ``count`` threads released at the same instant.

    Returns one entry per thread: the call's return value, or the exception
    it raised.
    """
    def runner(count, fn):
        barrier = threading.Barrier(count)
        results = [None] * count

        def worker(index):
            barrier.wait()
            try:
                results[index] = fn()
            except Exception as exc:
                results[index] = exc

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        return results

    return runner
