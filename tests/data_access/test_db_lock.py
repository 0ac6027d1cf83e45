import os
import random
import threading
import time
import traceback

import pytest

from referral_engine.data_access.db_lock import LockManager, ResourceType, DatabaseLock, LockAcquisitionTimeout
from referral_engine.utils import db_connect

pytestmark = pytest.mark.skipif(not os.getenv("PG_HOST"),
                                reason="requires a PostgreSQL database")


class Value:
    _value: int = 0

    def get(self) -> int:
        return self._value

    def set(self, value: int):
        self._value = value


class _TestThread(threading.Thread):

    def __init__(self, value: Value, resource_type: ResourceType,
                 resource_id: int):
        super().__init__()
        self.value = value
        self.resource_type = resource_type
        self.resource_id = resource_id

    def run(self):
        with db_connect() as db_conn:
            for _ in range(0, 10):
                try:
                    with LockManager.database_lock(db_conn,
                                                   self.resource_type,
                                                   self.resource_id,
                                                   await_sec=5):
                        cur_value = self.value.get()
                        time.sleep(random.choice(range(10)) / 1000)
                        self.value.set(cur_value + 1)
                except Exception:
                    traceback.print_exc()


@pytest.mark.parametrize("threads_count", [1, 2, 5])
def test_concurrent_increments(threads_count):
    value = Value()

    threads = [
        _TestThread(value, ResourceType.PAYOUT_BATCH, 0)
        for _ in range(threads_count)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert value.get() == 10 * threads_count
    _assert_not_locked(ResourceType.PAYOUT_BATCH, 0)


def test_lock_acquisition_fails_after_timeout():
    resource_id = 100
    resource_type = ResourceType.GENERAL

    with db_connect() as db_conn_1:
        lock_1 = DatabaseLock(db_conn_1, resource_type)
        assert lock_1.try_lock(resource_id)

        with db_connect() as db_conn_2:
            _assert_lock_timeout(db_conn_2, resource_type, resource_id, 0)
            _assert_lock_timeout(db_conn_2, resource_type, resource_id, 0.5)

        lock_1.unlock(resource_id)

    _assert_not_locked(resource_type, resource_id)


def test_lock_survives_commit():
    with db_connect() as db_conn_1:
        with LockManager.database_lock(db_conn_1, ResourceType.INVITE_EXPIRY,
                                       1):
            db_conn_1.commit()

            with db_connect() as db_conn_2:
                with pytest.raises(LockAcquisitionTimeout):
                    DatabaseLock(db_conn_2,
                                 ResourceType.INVITE_EXPIRY).lock(1, 0)

    _assert_not_locked(ResourceType.INVITE_EXPIRY, 1)


def _assert_not_locked(resource_type: ResourceType, resource_id: int):
    with db_connect() as db_conn:
        lock = DatabaseLock(db_conn, resource_type)
        assert lock.try_lock(resource_id)
        lock.unlock(resource_id)


def _assert_lock_timeout(db_conn, resource_type, resource_id, await_sec):
    start_time = time.time()

    lock = DatabaseLock(db_conn, resource_type)
    with pytest.raises(LockAcquisitionTimeout):
        lock.lock(resource_id, await_sec)

    assert time.time() - start_time >= await_sec
