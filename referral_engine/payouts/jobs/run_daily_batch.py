import argparse
import datetime

import dateutil.parser

from referral_engine.context_container import ContextContainer
from referral_engine.payouts.models import BatchResult
from referral_engine.payouts.processor import PayoutBatchProcessor
from referral_engine.utils import get_logger

logger = get_logger(__name__)


class RunDailyBatchJob:

    def __init__(self, processor: PayoutBatchProcessor):
        self.processor = processor

    def run(self, as_of_date: datetime.date = None) -> BatchResult:
        result = self.processor.run_daily_batch(as_of_date)
        logger.info("Payout batch finished",
                    extra={
                        "batch_id": result.batch_id,
                        "status": result.status.value,
                        "batch_message": result.message,
                        "already_completed": result.already_completed,
                    })
        return result


def cli(args=None):
    parser = argparse.ArgumentParser(
        description='Pay out pending referral earnings.')
    parser.add_argument('-d',
                        '--date',
                        dest='date',
                        type=str,
                        help='Payout date, defaults to today (UTC)')
    args = parser.parse_args(args)

    as_of_date = dateutil.parser.parse(args.date).date() if args.date else None

    try:
        with ContextContainer() as context_container:
            job = RunDailyBatchJob(context_container.payout_batch_processor)
            job.run(as_of_date)

    except Exception as e:
        logger.exception(e)
        raise e
