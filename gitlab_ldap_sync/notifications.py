"""
Email notifications for GitLab LDAP Sync.

A message is sent when a run fails fatally and, if enabled, a summary after a successful
run. Sending failures are logged and reported through the return value only.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from typing import Dict, List, Any, Optional
from datetime import datetime

logger = logging.getLogger(__name__)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: notifications section of the configuration

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
    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False
    if not email_to:
        logger.error("No email recipients configured")
        return False

    msg = MIMEText(body, 'plain')
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def send_failure_notification(title: str, error_message: str, config: Dict[str, Any],
                              additional_info: Optional[Dict[str, Any]] = None) -> bool:
    """
    Send notification for a fatal run failure.

    Args:
        title: Failure title/type
        error_message: Error description
        config: notifications section of the configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    body_lines = [
        "GitLab LDAP Sync Failure Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]
    if additional_info:
        body_lines.append("Additional Information:")
        body_lines.extend(f"  {key}: {value}" for key, value in additional_info.items())
        body_lines.append("")
    body_lines.append("Mutations applied before the failure are not rolled back; check the log before re-running.")

    return send_email(f"GitLab LDAP Sync Alert: {title}", "\n".join(body_lines), config)


def format_summary(sync_stats: Dict[str, Any]) -> List[str]:
    """Render run statistics as report lines."""
    lines = [
        f"Runtime: {sync_stats.get('runtime_seconds', 0):.2f} seconds",
        f"Dry run: {'yes' if sync_stats.get('dry_run') else 'no'}",
        f"Instances processed: {sync_stats.get('instances_processed', 0)}",
        "",
    ]
    for name, stats in sync_stats.get('instance_details', {}).items():
        lines.append(f"--- {name} ---")
        lines.extend(f"  {key.replace('_', ' ').capitalize()}: {value}"
                     for key, value in stats.items() if isinstance(value, int))
        lines.append("")
    return lines


def send_success_summary(sync_stats: Dict[str, Any], config: Dict[str, Any]) -> bool:
    """
    Send the summary of a successful run.

    Args:
        sync_stats: Statistics collected by the orchestrator
        config: notifications section of the configuration

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    body_lines = ["GitLab LDAP Sync Summary", ""] + format_summary(sync_stats)
    return send_email("GitLab LDAP Sync Completed", "\n".join(body_lines), config)
