import logging

import resend
from django.conf import settings

logger = logging.getLogger(__name__)


def send_resend_email(to_email, subject, html, text):
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY not configured; email to %s not sent: %s", to_email, subject)
        return False, "missing_resend_api_key"
    resend.api_key = settings.RESEND_API_KEY
    payload = {
        "from": settings.RESEND_FROM_EMAIL,
        "to": [to_email],
        "subject": subject,
    }
    if settings.RESEND_REPLY_TO:
        payload["reply_to"] = settings.RESEND_REPLY_TO
    try:
        resend.Emails.send(
            {
                **payload,
                "html": html,
                "text": text,
            }
        )
    except Exception as error:
        logger.exception("Resend delivery to %s failed", to_email)
        return False, str(error)
    return True, ""
