"""Email notification module for sending new-entry emails."""

import html
import logging
import smtplib
import socket
from dataclasses import dataclass
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional, Sequence

from .errors import (
    AuthError,
    ConfigError,
    NotifyError,
    RecipientRejected,
    TransientError,
)
from .models import FeedEntry, FeedSubscription, SmtpProfile, format_utc

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
SSL_PORT = 465


@dataclass
class NotifyResult:
    """Outcome of one send attempt."""
    sent: bool
    error: Optional[NotifyError] = None
    config_error: Optional[ConfigError] = None

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable

    def describe(self) -> str:
        err = self.config_error or self.error
        return f"{type(err).__name__}: {err}" if err else "sent"


def validate_profile(profile: Optional[SmtpProfile]) -> Optional[ConfigError]:
    """Return a ConfigError for a profile that cannot be used, else None."""
    if profile is None:
        return ConfigError("No SMTP profile")
    problems = []
    if not profile.host:
        problems.append("host")
    if not isinstance(profile.port, int) or not 0 < profile.port < 65536:
        problems.append("port")
    if not profile.from_email or "@" not in profile.from_email:
        problems.append("from_email")
    if not profile.to_email or "@" not in profile.to_email:
        problems.append("to_email")
    if bool(profile.username) != bool(profile.password):
        problems.append("credentials")
    if problems:
        return ConfigError(f"Invalid SMTP profile: {', '.join(problems)}")
    return None


def one_line(text: str) -> str:
    """Collapse all whitespace, newlines included, so text is safe in a header."""
    return " ".join(text.split())


def sender_name(profile: SmtpProfile, feed: FeedSubscription) -> str:
    """Display name of the From header: "<from_name> (<feed>)", or "RSS <feed>" without one."""
    feed_name = one_line(feed.name)
    if profile.from_name:
        return f"{one_line(profile.from_name)} ({feed_name})"
    return f"RSS {feed_name}"


def _published(entry: FeedEntry) -> str:
    return format_utc(entry.published_at) if entry.published_at else "unknown"


def render_entry(feed: FeedSubscription, entry: FeedEntry):
    """
    Render the plain-text and HTML bodies for one entry.

    Returns:
        Tuple of (text_body, html_body).
    """
    text_body = (
        f"Feed: {feed.name}\r\n"
        f"Original Post: {entry.title} - {entry.link}\r\n"
        f"Published: {_published(entry)}\r\n"
    )
    if entry.summary:
        text_body += f"\r\n{entry.summary}\r\n"

    html_body = (
        f"<p><strong>{html.escape(feed.name)}</strong></p>"
        f"<p>Original Post: <a href=\"{html.escape(entry.link, quote=True)}\">"
        f"{html.escape(entry.title)}</a></p>"
        f"<p>Published: {_published(entry)}</p>"
    )
    # Feed summaries are already HTML
    if entry.summary:
        html_body += f"<div>{entry.summary}</div>"
    return text_body, html_body


def render_digest(feed: FeedSubscription, entries: Sequence[FeedEntry]):
    """Render one message listing several entries, oldest first."""
    text_lines = [f"Feed: {feed.name}", ""]
    html_items = []
    for entry in entries:
        text_lines.append(f"- {entry.title} ({_published(entry)})")
        text_lines.append(f"  {entry.link}")
        html_items.append(
            f"<li><a href=\"{html.escape(entry.link, quote=True)}\">{html.escape(entry.title)}</a>"
            f" <small>{_published(entry)}</small></li>"
        )
    text_body = "\r\n".join(text_lines) + "\r\n"
    html_body = f"<p><strong>{html.escape(feed.name)}</strong></p><ul>{''.join(html_items)}</ul>"
    return text_body, html_body


def build_message(
    profile: SmtpProfile,
    feed: FeedSubscription,
    subject: str,
    text_body: str,
    html_body: str,
) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["From"] = formataddr((sender_name(profile, feed), profile.from_email))
    msg["To"] = profile.to_email
    msg["Subject"] = one_line(subject)
    msg["Message-ID"] = make_msgid(domain=profile.from_email.split("@")[-1])
    msg.attach(MIMEText(text_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


def _classify(e: Exception) -> NotifyError:
    """Map an smtplib/socket exception onto the notify error taxonomy."""
    if isinstance(e, smtplib.SMTPAuthenticationError):
        return AuthError(f"SMTP authentication failed: {e}")
    if isinstance(e, smtplib.SMTPRecipientsRefused):
        return RecipientRejected(f"Recipient refused: {e.recipients}")
    if isinstance(e, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return TransientError(f"SMTP connection failed: {e}")
    if isinstance(e, smtplib.SMTPResponseException):
        # 4xx replies are temporary, 5xx permanent for this message
        if 400 <= e.smtp_code < 500:
            return TransientError(f"SMTP {e.smtp_code}: {e.smtp_error!r}")
        return RecipientRejected(f"SMTP {e.smtp_code}: {e.smtp_error!r}")
    if isinstance(e, (socket.timeout, TimeoutError, ConnectionError, OSError)):
        return TransientError(f"SMTP connection failed: {e}")
    return TransientError(f"SMTP error: {e}")


def send_message(profile: SmtpProfile, msg: MIMEMultipart, timeout: float = DEFAULT_TIMEOUT) -> NotifyResult:
    """
    Deliver msg with a single SMTP connection attempt.

    Returns:
        NotifyResult; nothing is raised for SMTP or network failures.
    """
    config_error = validate_profile(profile)
    if config_error is not None:
        logger.error(f"Not sending email: {config_error}")
        return NotifyResult(sent=False, config_error=config_error)

    server = None
    try:
        logger.debug(f"Connecting to SMTP server: {profile.host}:{profile.port}")
        if profile.port == SSL_PORT:
            server = smtplib.SMTP_SSL(profile.host, profile.port, timeout=timeout)
        else:
            server = smtplib.SMTP(profile.host, profile.port, timeout=timeout)
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()

        if profile.username:
            server.login(profile.username, profile.password)
        server.send_message(msg)
        logger.info(f"Email sent successfully to {profile.to_email}")
        logger.debug(f"Subject: {msg['Subject']}")
        return NotifyResult(sent=True)

    except (smtplib.SMTPException, OSError) as e:
        error = _classify(e)
        if isinstance(error, AuthError):
            logger.error(
                f"SMTP authentication failed for {profile.username} on {profile.host}:{profile.port}. "
                f"Check the SMTP credentials. Error details: {e}"
            )
        else:
            logger.warning(f"Failed to send email: {error}")
        return NotifyResult(sent=False, error=error)
    except MessageError as e:
        # Unserializable message, permanent for this entry
        logger.error(f"Could not build email for {profile.to_email}: {e}")
        return NotifyResult(sent=False, error=RecipientRejected(f"Malformed message: {e}"))
    finally:
        if server is not None:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                server.close()


def send_entry(
    profile: SmtpProfile,
    feed: FeedSubscription,
    entry: FeedEntry,
    timeout: float = DEFAULT_TIMEOUT,
) -> NotifyResult:
    """
    Send one email announcing entry.

    Args:
        profile: SMTP settings snapshot.
        feed: Feed the entry belongs to.
        entry: The new entry.
        timeout: Socket timeout in seconds.

    Returns:
        NotifyResult describing success or the error.
    """
    config_error = validate_profile(profile)
    if config_error is not None:
        return NotifyResult(sent=False, config_error=config_error)
    text_body, html_body = render_entry(feed, entry)
    subject = one_line(entry.title) or "(untitled)"
    msg = build_message(profile, feed, subject, text_body, html_body)
    logger.info(f"Sending Mail Notification for feed {feed.id}: {subject}")
    return send_message(profile, msg, timeout)


def send_digest(
    profile: SmtpProfile,
    feed: FeedSubscription,
    entries: Sequence[FeedEntry],
    timeout: float = DEFAULT_TIMEOUT,
) -> NotifyResult:
    """Send one email listing all entries."""
    config_error = validate_profile(profile)
    if config_error is not None:
        return NotifyResult(sent=False, config_error=config_error)
    noun = "entry" if len(entries) == 1 else "entries"
    subject = f"{one_line(feed.name)}: {len(entries)} new {noun}"
    text_body, html_body = render_digest(feed, entries)
    msg = build_message(profile, feed, subject, text_body, html_body)
    logger.info(f"Sending digest for feed {feed.id} with {len(entries)} {noun}")
    return send_message(profile, msg, timeout)
