# backend/myopia_api/mailer.py
import logging
import smtplib
from email.message import EmailMessage

from . import config
from .errors import ServerError

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, text: str, html: str = None) -> None:
    """Deliver one message through the configured SMTP relay.

    Raises ServerError when no relay is configured or delivery fails. Message
    bodies are never logged; they may carry credentials such as reset links.
    """
    if not config.SMTP_HOST:
        logger.error("Cannot send %r to %s: SMTP_HOST is not set", subject, to)
        raise ServerError("Email delivery is not configured.")

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = config.MAIL_FROM
    msg["To"] = to
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.SMTP_TIMEOUT) as smtp:
            if config.SMTP_STARTTLS:
                smtp.starttls()
            if config.SMTP_USER:
                smtp.login(config.SMTP_USER, config.SMTP_PASS or "")
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Sending %r to %s failed: %s", subject, to, exc)
        raise ServerError("Failed to send email.") from exc
    logger.info("Sent %r to %s", subject, to)
