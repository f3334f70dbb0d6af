"""Retry policy, fallback command-line transport and failure diagnostics."""

import http.client
import json
import os
import random
import re
import ssl
import subprocess
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import requests
from loguru import logger
from tenacity import RetryCallState

from .exceptions import APIError, Side
from .redaction import redact_mapping, redact_secrets

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Connection-level failures worth retrying, matched anywhere in the cause chain.
TRANSIENT_EXCEPTION_TYPES = (
    requests.exceptions.SSLError,
    requests.exceptions.ReadTimeout,
    requests.exceptions.ChunkedEncodingError,
    ConnectionResetError,
    ConnectionAbortedError,
    ConnectionRefusedError,
    BrokenPipeError,
    http.client.IncompleteRead,
    ssl.SSLError,
)

TLS_EXCEPTION_TYPES = (requests.exceptions.SSLError, ssl.SSLError)

# curl exit codes: 7 connect refused, 18 partial file, 28 timeout,
# 35 TLS handshake, 52 empty reply, 55 send error, 56 receive error.
CURL_TRANSIENT_EXIT_CODES = frozenset({7, 18, 28, 35, 52, 55, 56})
CURL_TLS_EXIT_CODES = frozenset({35, 60})


class CurlError(ConnectionError):
    """Transfer failure reported by the command-line transport."""

    def __init__(self, message: str, transient: bool = False, tls: bool = False):
        super().__init__(message)
        self.transient = transient
        self.tls = tls


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` and every exception it wraps, causes and arguments included."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if not isinstance(current, BaseException) or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        pending.extend([current.__cause__, current.__context__, getattr(current, 'reason', None)])
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))


def classify_exception(exc: BaseException) -> Tuple[bool, bool]:
    """Classify a transport exception by type, never by message text.

    Returns:
        ``(transient, tls)`` flags
    """
    transient = tls = False
    for current in _exception_chain(exc):
        if isinstance(current, CurlError):
            transient = transient or current.transient
            tls = tls or current.tls
        if isinstance(current, TRANSIENT_EXCEPTION_TYPES):
            transient = True
        if isinstance(current, TLS_EXCEPTION_TYPES):
            tls = True
    return transient, tls


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with proportional jitter."""

    max_attempts: int = 4
    base_delay: float = 1.0
    jitter_ratio: float = 0.2
    max_retry_after: float = 60.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError('max_attempts must be at least 1')
        if self.base_delay < 0:
            raise ValueError('base_delay must not be negative')

    def should_retry(self, error: BaseException) -> bool:
        """Decide whether a failed attempt may be retried.

        Args:
            error: Exception raised by the failed attempt

        Returns:
            True for throttling, gateway/server errors and transient network failures
        """
        if not isinstance(error, APIError):
            return False
        if error.status_code in RETRYABLE_STATUS_CODES:
            return True
        return error.is_connection_error and error.transient

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        backoff = self.base_delay * (2 ** (attempt - 1))
        return backoff + self.rng.uniform(0, self.jitter_ratio * backoff)

    def wait(self, retry_state: RetryCallState) -> float:
        """tenacity wait strategy.

        Uses the backoff for the attempt that just failed, raised to the
        server's Retry-After (capped at ``max_retry_after``) when one was sent.
        """
        seconds = self.delay(retry_state.attempt_number)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, 'retry_after', None)
        if retry_after:
            seconds = max(seconds, min(retry_after, self.max_retry_after))
        return seconds


@dataclass
class RawResponse:
    """Response produced by the command-line transport."""

    status_code: int
    headers: Dict[str, str]
    body: str


class CurlTransport:
    """Secondary transport issuing requests through the ``curl`` binary.

    Used for internally hosted targets whose certificate the Python trust
    store rejects; certificate validation is bypassed with ``--insecure``.
    """

    STATUS_MARKER = '__GITLAB_ADO_MIGRATE_STATUS__:'

    def __init__(self, timeout: int = 30, executable: str = 'curl'):
        """Initialize curl transport.

        Args:
            timeout: Maximum seconds for the whole transfer
            executable: curl binary to invoke
        """
        self.timeout = timeout
        self.executable = executable

    def build_command(
        self, method: str, url: str, header_file: Optional[str], has_body: bool
    ) -> List[str]:
        """Build the curl argv.

        Header values (credentials included) are read by curl from
        ``header_file`` and never appear on the command line.
        """
        cmd = [
            self.executable,
            '--silent',
            '--show-error',
            '--include',
            '--insecure',
            '--max-time',
            str(self.timeout),
            '--request',
            method.upper(),
            '--write-out',
            f'\n{self.STATUS_MARKER}%{{http_code}}',
        ]
        if header_file:
            cmd.extend(['--header', f'@{header_file}'])
        if has_body:
            cmd.extend(['--data-binary', '@-'])
        cmd.append(url)
        return cmd

    @staticmethod
    def _write_header_file(headers: Dict[str, str]) -> str:
        # mkstemp creates the file readable by the current user only.
        with tempfile.NamedTemporaryFile(
            'w', prefix='gitlab_ado_migrate_', suffix='.headers', delete=False, encoding='utf-8'
        ) as f:
            for name, value in headers.items():
                f.write(f'{name}: {value}\n')
            return f.name

    def request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        body: Optional[Any] = None,
    ) -> RawResponse:
        """Perform a request and parse curl's raw output.

        Raises:
            CurlError: If curl cannot be run or reports a transfer failure
        """
        payload = None
        if body is not None:
            payload = body if isinstance(body, str) else json.dumps(body)

        header_file = self._write_header_file(headers) if headers else None
        try:
            cmd = self.build_command(method, url, header_file, payload is not None)
            try:
                completed = subprocess.run(
                    cmd,
                    input=payload.encode('utf-8') if payload is not None else None,
                    capture_output=True,
                    timeout=self.timeout + 5,
                )
            except FileNotFoundError as e:
                raise CurlError(f'curl executable not available: {e}') from e
            except subprocess.TimeoutExpired as e:
                raise CurlError(
                    f'curl read timed out after {self.timeout}s', transient=True
                ) from e
        finally:
            if header_file:
                os.unlink(header_file)

        output = completed.stdout.decode('utf-8', errors='replace')
        if completed.returncode != 0 and self.STATUS_MARKER not in output:
            stderr = completed.stderr.decode('utf-8', errors='replace').strip()
            raise CurlError(
                f'curl exited with code {completed.returncode}: {stderr}',
                transient=completed.returncode in CURL_TRANSIENT_EXIT_CODES,
                tls=completed.returncode in CURL_TLS_EXIT_CODES,
            )
        return self.parse_output(output)

    @classmethod
    def parse_output(cls, output: str) -> RawResponse:
        """Split raw curl output into status, headers and body.

        Layout: one or more header blocks (interim ``100 Continue`` or proxy
        blocks precede the final one), a blank line, the body and the
        trailing status marker line.

        Raises:
            CurlError: If the status marker is missing or malformed
        """
        marker_at = output.rfind(cls.STATUS_MARKER)
        if marker_at < 0:
            raise CurlError('incomplete read: curl output has no status marker', transient=True)

        status_text = output[marker_at + len(cls.STATUS_MARKER) :].strip()
        if not status_text.isdigit():
            raise CurlError(
                f'incomplete read: bad status marker {status_text!r}', transient=True
            )
        status_code = int(status_text)

        content = output[:marker_at]
        if content.endswith('\n'):
            content = content[:-1]
        content = content.replace('\r\n', '\n')

        headers: Dict[str, str] = {}
        body = content
        while body.startswith('HTTP/'):
            head, sep, rest = body.partition('\n\n')
            headers = {}
            for line in head.split('\n')[1:]:
                name, colon, value = line.partition(':')
                if colon:
                    headers[name.strip()] = value.strip()
            body = rest if sep else ''

        return RawResponse(status_code=status_code, headers=headers, body=body)


class DiagnosticsWriter:
    """Persists redacted diagnostics for requests that finally failed."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def file_name(self, side: Side, method: str, when: datetime) -> str:
        return f'{Side(side).value}_{method.upper()}_{when.strftime("%Y%m%dT%H%M%S%f")}.json'

    def write(
        self,
        side: Side,
        method: str,
        error: APIError,
        attempts: int,
        request_body: Optional[Any] = None,
        when: Optional[datetime] = None,
    ) -> Path:
        """Write one diagnostic record.

        Returns:
            Path of the written file
        """
        when = when or datetime.now()
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / self.file_name(side, method, when)

        record = {
            'timestamp': when.isoformat(),
            'side': Side(side).value,
            'method': method.upper(),
            'attempts': attempts,
            'error': redact_mapping(error.to_dict()),
            'request_body': redact_mapping(request_body),
        }
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(record, f, indent=2, default=str)

        logger.info(f'Wrote request diagnostics to {path}')
        return path


_JSON_CONTENT = re.compile(r'json', re.IGNORECASE)


def decode_body(text: str, content_type: str = '') -> Any:
    """Decode a response body as JSON when possible."""
    if not text:
        return None
    if content_type and not _JSON_CONTENT.search(content_type):
        stripped = text.lstrip()
        if not stripped.startswith(('{', '[')):
            return text
    try:
        return json.loads(text)
    except ValueError:
        return text


def summarize_error_body(data: Any, fallback: str) -> str:
    """Pick a human message out of a GitLab or Azure DevOps error payload."""
    if isinstance(data, dict):
        for key in ('message', 'error_description', 'error', 'typeKey'):
            value = data.get(key)
            if value:
                return value if isinstance(value, str) else json.dumps(value)
    if isinstance(data, str) and data.strip():
        return redact_secrets(data.strip()[:500])
    return fallback
