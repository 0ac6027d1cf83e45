import logging
from abc import ABC, abstractmethod
from backoff import full_jitter
import backoff

from referral_engine.data_access.db_lock import LockManager, LockAcquisitionTimeout
from referral_engine.data_access.models import ResourceVersion
from referral_engine.utils import get_logger

logger = get_logger(__name__)


class AbstractPessimisticLockingFunction(ABC):
    """
    Runs `_do` while holding the advisory lock of the loaded resource.

    The resource is reloaded under the lock, its version bumped and persisted
    before `_do` sees it, so `_do` always works on the latest committed state.
    """
    lock_await_sec: float = 1

    def __init__(self, repo):
        self.repo = repo

    @abstractmethod
    def load_version(self) -> ResourceVersion:
        pass

    def execute(self, max_tries: int = 3):
        backoff_on_exception = backoff.on_exception(
            lambda: backoff.expo(base=2, factor=0.1),
            exception=LockAcquisitionTimeout,
            max_tries=max_tries,
            giveup_log_level=logging.WARNING,
            jitter=lambda w: w / 2 + full_jitter(w / 2))
        try:
            return backoff_on_exception(self._try_execute)()
        except Exception as e:
            logger.warning(e, exc_info=True)
            raise e

    def _try_execute(self):
        cur_version = self.load_version()
        self.repo.commit()

        with LockManager.database_lock(self.repo.db_conn,
                                       cur_version.resource_type,
                                       cur_version.resource_id,
                                       await_sec=self.lock_await_sec):
            new_version = self.load_version()
            new_version.update_version()
            self.repo.persist(new_version)
            self.repo.commit()

            result = self._do(new_version)
            self.repo.commit()

        return result

    @abstractmethod
    def _do(self, version):
        pass
