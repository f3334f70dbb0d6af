"""Platform API exceptions."""

from enum import Enum
from typing import Optional


class Side(str, Enum):
    """Which platform a request is addressed to."""

    SOURCE = 'source'
    TARGET = 'target'


class APIError(Exception):
    """Normalized error raised for every failed platform request.

    Connection-level failures (timeouts, resets, TLS handshake errors) carry
    ``status_code == 0``. Callers never need to look at the underlying
    transport exception type.
    """

    def __init__(
        self,
        message: str,
        side: Side,
        status_code: int = 0,
        endpoint: str = '',
        raw_body: Optional[str] = None,
        retry_after: Optional[float] = None,
        transient: bool = False,
        tls: bool = False,
    ):
        """Initialize API error.

        Args:
            message: Error message
            side: Platform the request was sent to
            status_code: HTTP status code, 0 for connection-level failures
            endpoint: Redacted endpoint of the failed request
            raw_body: Redacted response body, if any
            retry_after: Server supplied Retry-After in seconds, if any
            transient: Connection-level failure classified as worth retrying
            tls: Connection-level failure caused by TLS or certificate checks
        """
        super().__init__(message)
        self.message = message
        self.side = Side(side)
        self.status_code = status_code
        self.endpoint = endpoint
        self.raw_body = raw_body
        self.retry_after = retry_after
        self.transient = transient
        self.tls = tls

    @property
    def is_connection_error(self) -> bool:
        return self.status_code == 0

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409

    def to_dict(self) -> dict:
        """Serializable view used for diagnostics and error records."""
        return {
            'side': self.side.value,
            'status_code': self.status_code,
            'message': self.message,
            'endpoint': self.endpoint,
            'raw_body': self.raw_body,
        }

    def __str__(self) -> str:
        status = self.status_code or 'connection'
        return f'[{self.side.value} {status}] {self.message} ({self.endpoint})'


class AuthenticationConfigError(Exception):
    """Raised when a client is built without usable credentials."""

    pass
