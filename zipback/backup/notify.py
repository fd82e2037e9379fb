"""
Email notification sent after a profile run settles.

Notification never changes the outcome of a run: send errors are logged and
dropped.
"""

import smtplib
import socket
import logging
from email.mime.text import MIMEText
from typing import List, Optional

from zipback.models import NotifySpec


logger = logging.getLogger(__name__)


def build_message(spec: NotifySpec, profile_name: str, logs: List[str], error: Optional[BaseException] = None) -> MIMEText:
    if error is None:
        subject = f"zipback: backup {profile_name} succeeded"
        summary = f"Backup profile {profile_name} completed successfully."
    else:
        subject = f"zipback: backup {profile_name} FAILED"
        summary = f"Backup profile {profile_name} failed: {error}"

    body = summary + "\n\n" + "\n".join(logs) + "\n"
    msg = MIMEText(body, 'plain', 'utf-8')
    msg['Subject'] = subject
    msg['From'] = spec.sender
    msg['To'] = ', '.join(spec.to)
    return msg


def send_mail(spec: NotifySpec, msg: MIMEText, timeout: int = 30) -> None:
    """
    Deliver a message through the configured SMTP server.

    STARTTLS is used when the server offers it; login happens only when a
    user is configured.

    Raises:
        smtplib.SMTPException or OSError on any delivery failure
    """
    with smtplib.SMTP(spec.host, spec.port, timeout=timeout) as server:
        server.ehlo()
        if server.has_extn('starttls'):
            server.starttls()
            server.ehlo()
        if spec.user:
            server.login(spec.user, spec.password)
        server.sendmail(spec.sender, list(spec.to), msg.as_string())


def notify_result(spec: Optional[NotifySpec], profile_name: str, logs: List[str],
                  error: Optional[BaseException] = None, timeout: int = 30) -> bool:
    """
    Send the success or failure mail for a finished profile.

    Success mails go out only when on_success is set; failure mails always do.
    Incomplete settings (no host, port, sender or recipient) disable sending.

    Returns:
        True if a mail was delivered
    """
    if spec is None or not spec.is_complete:
        return False
    if error is None and not spec.on_success:
        return False

    msg = build_message(spec, profile_name, logs, error)
    try:
        send_mail(spec, msg, timeout=timeout)
    except smtplib.SMTPAuthenticationError as e:
        logger.error(f"SMTP authentication failed for {spec.host}: {e}")
        return False
    except (smtplib.SMTPException, socket.error) as e:
        logger.error(f"Failed to send notification for {profile_name}: {e}")
        return False

    logger.info(f"Notification for {profile_name} sent to {', '.join(spec.to)}")
    return True
