from typing import Union

import python_http_client
import sendgrid
import os

from referral_engine.exceptions import EmailNotSentException
from referral_engine.utils import get_logger

logger = get_logger(__name__)

SENDGRID_API_KEY = os.getenv('SENDGRID_API_KEY')
SENDGRID_FROM_EMAIL = os.getenv('SENDGRID_FROM_EMAIL',
                                'no-reply@mymoolah.africa')


class SendGridService:

    def send_email(self,
                   to: Union[str, list[str]],
                   subject: str = None,
                   content_plain=None):
        from sendgrid.helpers.mail import Mail, Email, To, Content

        if isinstance(to, str):
            to = [to]

        email = Mail(from_email=Email(SENDGRID_FROM_EMAIL),
                     to_emails=[To(i) for i in to],
                     subject=subject,
                     plain_text_content=Content("text/plain", content_plain))

        sg = sendgrid.SendGridAPIClient(api_key=SENDGRID_API_KEY)
        response: python_http_client.client.Response = sg.client.mail.send.post(
            request_body=email.get())

        logger.info('Sent email',
                    extra={
                        "to": to,
                        "subject": subject,
                        "response_status_code": response.status_code,
                    })

        if response.status_code != 202:
            raise EmailNotSentException()

        return response
