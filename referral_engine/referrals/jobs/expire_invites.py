import argparse
import datetime

import dateutil.parser

from referral_engine.context_container import ContextContainer
from referral_engine.data_access.db_lock import LockManager, ResourceType, LockAcquisitionTimeout
from referral_engine.data_access.repository import Repository
from referral_engine.referrals.service import ReferralService
from referral_engine.utils import get_logger

logger = get_logger(__name__)

EXPIRY_LOCK_ID = 0


class ExpireInvitesJob:

    def __init__(self, repo: Repository, service: ReferralService):
        self.repo = repo
        self.service = service

    def run(self, now: datetime.datetime = None) -> int:
        try:
            with LockManager.database_lock(self.repo.db_conn,
                                           ResourceType.INVITE_EXPIRY,
                                           EXPIRY_LOCK_ID):
                return self.service.expire_invites(now)
        except LockAcquisitionTimeout:
            logger.warning("Invite expiry is running in another process")
            return 0


def cli(args=None):
    parser = argparse.ArgumentParser(
        description='Expire referral invites that were never completed.')
    parser.add_argument('--now',
                        dest='now',
                        type=str,
                        help='Reference time, defaults to now (UTC)')
    args = parser.parse_args(args)

    now = dateutil.parser.parse(args.now) if args.now else None

    try:
        with ContextContainer() as context_container:
            job = ExpireInvitesJob(context_container.referral_repository,
                                   context_container.referral_service)
            job.run(now)

    except Exception as e:
        logger.exception(e)
        raise e
