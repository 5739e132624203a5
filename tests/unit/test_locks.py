import threading

import pytest

from clientstack.core.errors import BusyError, ResultCode
from clientstack.core.locks import EnvironmentLockTable


def test_second_holder_is_rejected_immediately() -> None:
    locks = EnvironmentLockTable()
    entered = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with locks.hold("acme", "staging", operation="deployment abc"):
            entered.set()
            release.wait(timeout=5)

    worker = threading.Thread(target=_hold)
    worker.start()
    assert entered.wait(timeout=5)
    try:
        with pytest.raises(BusyError, match="deployment abc") as excinfo:
            with locks.hold("acme", "staging", operation="remove"):
                pass
        assert excinfo.value.code is ResultCode.CONFLICT
        assert locks.active() == {"acme/staging": "deployment abc"}
        with locks.hold("acme", "production", operation="create"):
            pass
    finally:
        release.set()
        worker.join(timeout=5)

    assert locks.active() == {}


def test_same_thread_may_reenter() -> None:
    locks = EnvironmentLockTable()
    with locks.hold("acme", "staging", operation="deployment"):
        with locks.hold("acme", "staging", operation="mark-complete"):
            assert locks.active() == {"acme/staging": "mark-complete"}
        assert locks.active() == {"acme/staging": "deployment"}
    assert locks.active() == {}


def test_released_pairs_are_forgotten() -> None:
    locks = EnvironmentLockTable()
    for index in range(20):
        with locks.hold("acme", f"preview-{index}", operation="create"):
            with locks.hold("acme", f"preview-{index}", operation="mark-complete"):
                pass
            assert len(locks._locks) == 1
    assert locks._locks == {}
    assert locks.active() == {}


def test_rejected_holder_leaves_lock_with_owner() -> None:
    locks = EnvironmentLockTable()
    entered = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with locks.hold("acme", "staging", operation="deployment abc"):
            entered.set()
            release.wait(timeout=5)

    worker = threading.Thread(target=_hold)
    worker.start()
    assert entered.wait(timeout=5)
    try:
        with pytest.raises(BusyError):
            with locks.hold("acme", "staging", operation="remove"):
                pass
        assert ("acme", "staging") in locks._locks
    finally:
        release.set()
        worker.join(timeout=5)
    assert locks._locks == {}
    with locks.hold("acme", "staging", operation="remove"):
        assert locks.active() == {"acme/staging": "remove"}
