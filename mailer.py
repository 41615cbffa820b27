"""SMTP delivery for billing notifications."""

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from socket import gaierror, timeout

from config_models import EmailConfig

logger = logging.getLogger(__name__)

# SMTP failures in the order they are checked; the first match names the error
SMTP_FAILURES = (
    (smtplib.SMTPAuthenticationError, "Email authentication failed"),
    (smtplib.SMTPRecipientsRefused, "Email recipients refused"),
    (smtplib.SMTPException, "Failed to send email"),
    ((gaierror, timeout), "Network error: could not connect to mail server"),
    (OSError, "Failed to send email"),
)


class MailerError(Exception):
    """Exception raised for email sending errors."""

    pass


def compose_notification(config: EmailConfig, subject: str, recipient: str,
                         details: dict, site=None) -> EmailMessage:
    """Build the plain-text message for one billing event.

    ``details`` is rendered as sorted ``key: value`` lines under the subject;
    the operator address (if configured) is copied on every message.
    """
    lines = [subject, ""]
    if site is not None:
        lines.append(f"Site: {site.name} ({site.domain})")
    lines.extend(f"{key}: {value}" for key, value in sorted(details.items()))

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = config.sender
    message["To"] = recipient
    if config.operator_cc and config.operator_cc != recipient:
        message["Cc"] = config.operator_cc
    message["Date"] = formatdate(localtime=False)
    message["Message-ID"] = make_msgid(domain=config.smtp_host or None)
    message.set_content("\n".join(lines))
    return message


def send_message(config: EmailConfig, message: EmailMessage) -> bool:
    """Deliver *message* over SMTP with STARTTLS.

    Returns:
        True if the message was accepted by the server.

    Raises:
        MailerError: If the server is unreachable or rejects the message.
    """
    recipient = message["To"]
    if not recipient:
        raise MailerError("No recipient address")

    try:
        logger.info(f"Sending email to {recipient} with subject: {message['Subject']}")
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as server:
            server.starttls()
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(message)
        logger.info(f"Email sent successfully to {recipient}")
        return True

    except OSError as e:
        # smtplib.SMTPException subclasses OSError
        label = next(text for exc_type, text in SMTP_FAILURES if isinstance(e, exc_type))
        logger.error(f"{label}: {e}")
        raise MailerError(f"{label}: {e}")
