"""
Email notification utilities for Identity Sync.

This module provides functionality to send email notifications for
aborted cycles, users that could not be created, and operational events.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

from identity_sync.models import CycleResult

logger = logging.getLogger(__name__)

MAX_LISTED_FAILURES = 10


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if smtp_tls:
                server.starttls()

        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)

        server.sendmail(email_from, email_to, msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for sync failures.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Identity Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "Please check the application logs for more detailed information.",
        "",
        "This is an automated message from Identity Sync."
    ])

    return send_email(f"Identity Sync Alert: {title}", '\n'.join(body_lines), config)


def send_cycle_aborted_notification(result: CycleResult, config: Dict[str, Any]) -> bool:
    """
    Send notification for a cycle aborted by a directory or API read failure.

    Args:
        result: The aborted cycle's result
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    additional_info = {
        'Error Type': type(result.error).__name__,
        'Started': result.started_at.strftime('%Y-%m-%d %H:%M:%S') if result.started_at else 'unknown',
        'Impact': 'No users were created in this cycle; the next cycle will retry'
    }
    return send_failure_notification(
        "Reconciliation Cycle Aborted",
        str(result.error),
        config,
        additional_info
    )


def send_creation_failures_notification(result: CycleResult, config: Dict[str, Any]) -> bool:
    """
    Send notification listing users that could not be created.

    Args:
        result: Cycle result with at least one failure
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Identity Sync User Creation Report",
        f"Timestamp: {timestamp}",
        "",
        f"Users attempted: {result.attempted}",
        f"Users created: {result.created}",
        f"Users failed: {len(result.failures)}",
        "",
        "Failures:"
    ]
    body_lines.extend(format_failures(result.failures))
    body_lines.extend([
        "",
        "Failed users are retried automatically on the next cycle.",
        "",
        "This is an automated message from Identity Sync."
    ])

    subject = f"Identity Sync Alert: {len(result.failures)} users could not be created"
    return send_email(subject, '\n'.join(body_lines), config)


def format_failures(failures: List[Any]) -> List[str]:
    """Format failures as numbered lines, listing at most MAX_LISTED_FAILURES."""
    lines = [
        f"  {i}. {failure.key}: {failure.reason}"
        for i, failure in enumerate(failures[:MAX_LISTED_FAILURES], 1)
    ]
    if len(failures) > MAX_LISTED_FAILURES:
        lines.append(f"  ... and {len(failures) - MAX_LISTED_FAILURES} more failures")
    return lines


def format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        seconds = runtime_seconds % 60
        return f"{minutes}m {seconds:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def send_success_summary(result: CycleResult, config: Dict[str, Any]) -> bool:
    """
    Send summary notification for a completed cycle.

    Args:
        result: Cycle result
        config: Notification configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Identity Sync Summary Report",
        f"Timestamp: {timestamp}",
        "",
        "Cycle completed successfully!",
        "",
        f"  Runtime: {format_runtime(result.runtime_seconds)}",
        f"  LDAP users: {result.directory_count}",
        f"  DB users: {result.datastore_count}",
        f"  Users created: {result.created}",
        ""
    ]
    if result.created_keys:
        body_lines.append("Created users:")
        body_lines.extend(f"  {key}" for key in result.created_keys)
        body_lines.append("")
    body_lines.append("This is an automated message from Identity Sync.")

    return send_email("Identity Sync: Successful Completion", '\n'.join(body_lines), config)


def notify_cycle_result(result: CycleResult, config: Dict[str, Any]) -> bool:
    """
    Send whichever notification fits a finished cycle.

    Returns:
        True if a notification was sent
    """
    if result.aborted:
        return send_cycle_aborted_notification(result, config)
    if result.failures:
        return send_creation_failures_notification(result, config)
    return send_success_summary(result, config)


def send_test_notification(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    test_body = """This is a test email from Identity Sync.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(email_to)
    )

    result = send_email("Identity Sync: Configuration Test", test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result
