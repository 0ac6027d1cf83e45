import os

from referral_engine.exceptions import EmailNotSentException
from referral_engine.payouts.models import PayoutBatch
from referral_engine.services.sendgrid import SendGridService
from referral_engine.utils import get_logger

PAYOUT_OPERATOR_EMAILS = [
    i.strip() for i in os.getenv('PAYOUT_OPERATOR_EMAILS', '').split(',')
    if i.strip()
]

logger = get_logger(__name__)


class NotificationService:

    def __init__(self,
                 sendgrid: SendGridService,
                 operator_emails: list[str] = None):
        self.sendgrid = sendgrid
        self.operator_emails = PAYOUT_OPERATOR_EMAILS if operator_emails is None else operator_emails

    def notify_payout_batch_failed(self, batch_id: str, error: Exception):
        subject = 'Referral payout batch %s failed' % batch_id
        text = 'Referral payout batch %s failed before paying anyone: %s' % (
            batch_id, error)
        self._notify_operators(subject, text)

    def notify_payout_failures(self, batch: PayoutBatch):
        failed_users = batch.get_failed_users()
        subject = 'Referral payout batch %s: %d users failed' % (
            batch.batch_id, len(failed_users))
        lines = [
            'User %d: %d earnings, %d minor units, %s' %
            (i.user_id, i.earnings_count, i.amount_minor_units, i.reason)
            for i in failed_users
        ]
        text = '\n'.join([batch.message or '', ''] + lines)
        self._notify_operators(subject, text)

    def _notify_operators(self, subject: str, text: str):
        if not self.operator_emails:
            logger.warning('No operator emails configured',
                           extra={
                               "subject": subject,
                               "text": text
                           })
            return

        try:
            self.sendgrid.send_email(to=self.operator_emails,
                                     subject=subject,
                                     content_plain=text)
        except EmailNotSentException as e:
            logger.exception(e, extra={"subject": subject, "text": text})
