"""Error taxonomy for fetching, notifying and persistence."""

from typing import Optional


class RSSNotifierError(Exception):
    """Base class for all rss-notifier errors."""

    retryable = False


# Fetch errors

class FetchError(RSSNotifierError):
    """A feed could not be retrieved or parsed."""


class NetworkError(FetchError):
    """Timeout, DNS failure, refused connection."""

    retryable = True


class HttpError(FetchError):
    """The feed server answered with an error status."""

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"HTTP {status}")
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status >= 500 or self.status == 429


class ParseError(FetchError):
    """The response is not a supported feed document."""


# Notify errors

class NotifyError(RSSNotifierError):
    """An email could not be delivered to the SMTP server."""


class AuthError(NotifyError):
    """SMTP credentials were rejected."""


class TransientError(NotifyError):
    """Connection problem, timeout or temporary SMTP failure."""

    retryable = True


class RecipientRejected(NotifyError):
    """The SMTP server refused the message for this entry."""


# Configuration errors

class ConfigError(RSSNotifierError):
    """Invalid configuration detected before any network attempt."""


class MissingProfile(ConfigError):
    """No SMTP profile is configured."""


class InvalidFeedUrl(ConfigError):
    """A feed URL is not an absolute http(s) URI."""


class PersistenceError(RSSNotifierError):
    """The registry could not be read or written."""
