import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable

from backend.config import (
    MAIL_FROM,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_TIMEOUT_SECONDS,
    SMTP_USE_SSL,
    SMTP_USERNAME,
)

logger = logging.getLogger(__name__)

MailSender = Callable[[str, str, str], bool]


def _open_connection() -> smtplib.SMTP:
    if SMTP_USE_SSL:
        return smtplib.SMTP_SSL(
            SMTP_HOST,
            SMTP_PORT,
            timeout=SMTP_TIMEOUT_SECONDS,
            context=ssl.create_default_context(),
        )
    server = smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT_SECONDS)
    server.starttls(context=ssl.create_default_context())
    return server


def send_mail(to: str, subject: str, html: str) -> bool:
    """Send one HTML email. Returns False (never raises) when delivery fails."""
    if not SMTP_HOST:
        logger.warning("SMTP host not configured; skipping mail to %s", to)
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = MAIL_FROM
    msg["To"] = to
    msg.attach(MIMEText(html, "html"))

    try:
        with _open_connection() as server:
            if SMTP_USERNAME:
                server.login(SMTP_USERNAME, SMTP_PASSWORD)
            server.sendmail(MAIL_FROM, [to], msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Email send to %s failed: %s", to, exc)
        return False
