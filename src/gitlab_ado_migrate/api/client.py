"""Platform API clients for GitLab (source) and Azure DevOps (target)."""

import base64
import time
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote, urlencode, urljoin, urlparse

import requests
from loguru import logger
from pydantic import BaseModel
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from ..config.config import RetryConfig, SourceConfig, TargetConfig
from .exceptions import APIError, AuthenticationConfigError, Side
from .rate_limiter import RateLimiter
from .redaction import redact_secrets
from .transport import (
    CurlTransport,
    DiagnosticsWriter,
    RetryPolicy,
    classify_exception,
    decode_body,
    summarize_error_body,
)


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    status_code: int
    data: Any
    headers: Dict[str, str]
    success: bool


class PlatformClient:
    """Retrying HTTP client shared by both platforms.

    ``send`` either returns an :class:`APIResponse` for a 2xx answer or raises
    a normalized :class:`APIError`. Retries, backoff, redaction, fallback
    transport and diagnostics all happen inside ``send``.
    """

    side: Side = Side.SOURCE
    user_agent = 'gitlab-ado-migrate/0.1.0'

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        diagnostics: Optional[DiagnosticsWriter] = None,
        fallback_transport: Optional[CurlTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        verify: Any = True,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter(None)
        self.diagnostics = diagnostics
        self.fallback_transport = fallback_transport
        self.verify = verify
        self._sleep = sleep

        self.session = requests.Session()
        self.session.headers.update(self.default_headers())

        self.logger = logger.bind(component=self.__class__.__name__)

    def default_headers(self) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'User-Agent': self.user_agent,
        }
        headers.update(self.auth_headers())
        return headers

    def auth_headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def _build_url(self, endpoint: str) -> str:
        """Build full API URL from endpoint.

        Args:
            endpoint: API endpoint path, or an absolute URL

        Returns:
            Full API URL
        """
        if endpoint.startswith(('http://', 'https://')):
            return endpoint
        return urljoin(self.base_url + '/', endpoint.lstrip('/'))

    def _prepare_params(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return dict(params or {})

    @staticmethod
    def _display_url(url: str, params: Dict[str, Any]) -> str:
        if not params:
            return redact_secrets(url)
        return redact_secrets(f'{url}?{urlencode(params)}')

    def send(
        self,
        method: str,
        endpoint: str,
        body: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        expect: Iterable[int] = (),
    ) -> APIResponse:
        """Send one logical request, retrying transient failures.

        Args:
            method: HTTP method
            endpoint: Endpoint relative to the base URL, or absolute URL
            body: JSON body
            params: Query parameters
            expect: Error statuses that are an expected answer (e.g. 404 on
                lookups); they are still raised but logged quietly and
                never written to diagnostics

        Returns:
            API response

        Raises:
            APIError: On non-retryable failure or when attempts are exhausted
        """
        method = method.upper()
        expected = set(expect)
        url = self._build_url(endpoint)
        query = self._prepare_params(params)
        display = self._display_url(url, query)
        max_attempts = self.retry_policy.max_attempts
        attempts = 0

        def attempt() -> APIResponse:
            nonlocal attempts
            attempts += 1
            self.rate_limiter.acquire()
            return self._attempt(method, url, body, query, display)

        def retryable(error: BaseException) -> bool:
            if isinstance(error, APIError) and error.status_code in expected:
                return False
            return self.retry_policy.should_retry(error)

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            self.logger.warning(
                f'{self.side.value} {method} {display} attempt '
                f'{retry_state.attempt_number}/{max_attempts} failed '
                f'({error.status_code or "connection"}): {redact_secrets(error.message)}'
                f' - retrying in {retry_state.next_action.sleep:.2f}s'
            )

        retrying = Retrying(
            stop=stop_after_attempt(max_attempts),
            wait=self.retry_policy.wait,
            retry=retry_if_exception(retryable),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            response = retrying(attempt)
        except APIError as error:
            if error.status_code in expected:
                self.logger.debug(
                    f'{self.side.value} {method} {display} attempt {attempts}/{max_attempts}'
                    f' -> {error.status_code}'
                )
                raise
            self.logger.warning(
                f'{self.side.value} {method} {display} attempt {attempts}/{max_attempts}'
                f' failed ({error.status_code or "connection"}): '
                f'{redact_secrets(error.message)}'
            )
            self._write_diagnostics(method, error, attempts, body)
            raise

        self.logger.debug(
            f'{self.side.value} {method} {display} attempt {attempts}/{max_attempts}'
            f' -> {response.status_code}'
        )
        return response

    def _attempt(
        self,
        method: str,
        url: str,
        body: Optional[Any],
        params: Dict[str, Any],
        display: str,
    ) -> APIResponse:
        """Perform a single attempt and normalize its outcome."""
        try:
            response = self.session.request(
                method,
                url,
                params=params or None,
                json=body,
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.RequestException as e:
            transient, tls = classify_exception(e)
            error = APIError(
                redact_secrets(f'{type(e).__name__}: {e}'),
                side=self.side,
                status_code=0,
                endpoint=display,
                transient=transient,
                tls=tls,
            )
            if self._fallback_allowed(error):
                return self._attempt_fallback(method, url, body, params, display)
            raise error from e

        return self._handle_response(
            response.status_code, dict(response.headers), response.text, display
        )

    def _fallback_allowed(self, error: APIError) -> bool:
        return False

    def _attempt_fallback(
        self,
        method: str,
        url: str,
        body: Optional[Any],
        params: Dict[str, Any],
        display: str,
    ) -> APIResponse:
        """Re-issue the attempt through the command-line transport."""
        self.logger.warning(
            f'TLS failure for {method} {display}; retrying through curl with '
            'certificate validation disabled'
        )
        full_url = f'{url}?{urlencode(params)}' if params else url
        try:
            raw = self.fallback_transport.request(
                method, full_url, self.default_headers(), body
            )
        except ConnectionError as e:
            transient, tls = classify_exception(e)
            raise APIError(
                redact_secrets(f'curl transport failed: {e}'),
                side=self.side,
                status_code=0,
                endpoint=display,
                transient=transient,
                tls=tls,
            ) from e
        return self._handle_response(raw.status_code, raw.headers, raw.body, display)

    def _handle_response(
        self, status_code: int, headers: Dict[str, str], text: str, display: str
    ) -> APIResponse:
        """Handle API response and convert to standard format.

        Raises:
            APIError: For any non-2xx status
        """
        content_type = next(
            (v for k, v in headers.items() if k.lower() == 'content-type'), ''
        )
        data = decode_body(text, content_type)

        if not 200 <= status_code < 300:
            retry_after = next(
                (v for k, v in headers.items() if k.lower() == 'retry-after'), None
            )
            raise APIError(
                redact_secrets(
                    f'API request failed: '
                    f'{summarize_error_body(data, f"HTTP {status_code}")}'
                ),
                side=self.side,
                status_code=status_code,
                endpoint=display,
                raw_body=redact_secrets(text[:2000]) if text else None,
                retry_after=float(retry_after)
                if retry_after and retry_after.isdigit()
                else None,
            )

        return APIResponse(
            status_code=status_code, data=data, headers=headers, success=True
        )

    def _write_diagnostics(
        self, method: str, error: APIError, attempts: int, body: Optional[Any]
    ) -> None:
        if self.diagnostics is None:
            return
        try:
            self.diagnostics.write(self.side, method, error, attempts, body)
        except OSError as e:
            self.logger.warning(f'Could not write request diagnostics: {e}')

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> APIResponse:
        return self.send('GET', endpoint, params=params, **kwargs)

    def post(
        self,
        endpoint: str,
        data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> APIResponse:
        return self.send('POST', endpoint, body=data, params=params, **kwargs)

    def put(
        self,
        endpoint: str,
        data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> APIResponse:
        return self.send('PUT', endpoint, body=data, params=params, **kwargs)

    def patch(
        self,
        endpoint: str,
        data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        **kwargs,
    ) -> APIResponse:
        return self.send('PATCH', endpoint, body=data, params=params, **kwargs)

    def delete(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        return self.send('DELETE', endpoint, params=params, **kwargs)

    def test_connection(self) -> bool:
        raise NotImplementedError

    def close(self):
        """Close the client session."""
        self.session.close()
        self.logger.debug(f'{self.side.value} client session closed')

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class GitLabClient(PlatformClient):
    """Read-only GitLab API client authenticated with a token header."""

    side = Side.SOURCE

    def __init__(self, config: SourceConfig, **kwargs):
        """Initialize GitLab client.

        Args:
            config: Source GitLab configuration
            **kwargs: Transport options passed to PlatformClient
        """
        if not config.token:
            raise AuthenticationConfigError('No GitLab token provided')
        self.config = config
        super().__init__(
            f'{config.url}/api/{config.api_version}',
            timeout=config.timeout,
            **kwargs,
        )
        self.logger.info(f'Initialized GitLab client for {config.url}')

    def auth_headers(self) -> Dict[str, str]:
        return {'PRIVATE-TOKEN': self.config.token}

    def get_project(self, path: str) -> Dict[str, Any]:
        """Fetch project metadata by full path (``group/sub/project``).

        Raises:
            APIError: 404 when the project does not exist
        """
        response = self.get(
            f'/projects/{quote(path, safe="")}',
            params={'statistics': 'true'},
            expect=(404,),
        )
        return response.data

    def get_paginated(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get all pages of a paginated endpoint.

        Args:
            endpoint: API endpoint
            params: Query parameters
            per_page: Items per page

        Returns:
            List of all items from all pages
        """
        all_items = []
        page = 1
        params = dict(params or {})
        params['per_page'] = per_page

        while True:
            params['page'] = page
            response = self.get(endpoint, params=params)

            items = response.data
            if not items:
                break

            all_items.extend(items)

            total_pages = response.headers.get('X-Total-Pages')
            if total_pages and page >= int(total_pages):
                break

            if len(items) < per_page:
                break

            page += 1

        self.logger.info(f'Retrieved {len(all_items)} items from {endpoint}')
        return all_items

    def test_connection(self) -> bool:
        """Test connection to the GitLab instance."""
        try:
            self.get('/user')
            return True
        except APIError as e:
            self.logger.error(f'Connection test failed: {e}')
            return False

    def get_version(self) -> Optional[str]:
        """Get GitLab version, or None if unavailable."""
        try:
            response = self.get('/version')
        except APIError as e:
            self.logger.warning(f'Could not retrieve GitLab version: {e}')
            return None
        if isinstance(response.data, dict):
            return response.data.get('version')
        return None

    def clone_url(self, project: Dict[str, Any]) -> str:
        """Credentialed HTTP clone URL for a project."""
        http_url = project.get('http_url_to_repo', '')
        scheme, sep, rest = http_url.partition('://')
        if not sep:
            raise ValueError(f'Unsupported clone URL: {http_url!r}')
        return f'{scheme}://oauth2:{quote(self.config.token, safe="")}@{rest}'


class AzureDevOpsClient(PlatformClient):
    """Azure DevOps REST client authenticated with a PAT over Basic auth."""

    side = Side.TARGET

    # Newest first; the first one the server accepts is used for the session.
    API_VERSION_CANDIDATES = ('7.1', '7.0', '6.0', '5.1', '5.0', '4.1')

    def __init__(self, config: TargetConfig, **kwargs):
        """Initialize Azure DevOps client.

        Args:
            config: Target Azure DevOps configuration
            **kwargs: Transport options passed to PlatformClient
        """
        if not config.pat:
            raise AuthenticationConfigError('No Azure DevOps PAT provided')
        self.config = config
        self._api_version = config.api_version

        verify: Any = config.ca_bundle or config.verify_ssl
        if config.allow_insecure_fallback and 'fallback_transport' not in kwargs:
            kwargs['fallback_transport'] = CurlTransport(timeout=config.timeout)
        super().__init__(config.url, timeout=config.timeout, verify=verify, **kwargs)
        self.logger.info(f'Initialized Azure DevOps client for {config.url}')

    def auth_headers(self) -> Dict[str, str]:
        token = base64.b64encode(f':{self.config.pat}'.encode('utf-8')).decode('ascii')
        return {'Authorization': f'Basic {token}'}

    @property
    def api_version(self) -> str:
        """REST api-version used for this session, resolved on first use."""
        if self._api_version is None:
            self._api_version = self._resolve_api_version()
        return self._api_version

    def preview_version(self, revision: int = 1) -> str:
        return f'{self.api_version}-preview.{revision}'

    def _resolve_api_version(self) -> str:
        for candidate in self.API_VERSION_CANDIDATES:
            try:
                self.send(
                    'GET',
                    '_apis/projects',
                    params={'api-version': candidate, '$top': 1},
                    expect=(400, 404),
                )
            except APIError as e:
                if e.status_code in (400, 404):
                    self.logger.debug(f'api-version {candidate} not supported')
                    continue
                raise
            self.logger.info(f'Resolved Azure DevOps api-version {candidate}')
            return candidate
        raise APIError(
            'No supported api-version found',
            side=self.side,
            status_code=400,
            endpoint=redact_secrets(self.base_url),
        )

    def _prepare_params(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        prepared = dict(params or {})
        if 'api-version' not in prepared:
            prepared['api-version'] = self.api_version
        return prepared

    def _fallback_allowed(self, error: APIError) -> bool:
        return (
            self.fallback_transport is not None
            and self.config.allow_insecure_fallback
            and self.config.is_internal_host
            and error.tls
        )

    def _handle_response(
        self, status_code: int, headers: Dict[str, str], text: str, display: str
    ) -> APIResponse:
        # Azure DevOps answers a rejected PAT with 203 and an HTML sign-in page.
        if status_code == 203:
            raise APIError(
                'Authentication failed: server returned a sign-in page',
                side=self.side,
                status_code=401,
                endpoint=display,
            )
        return super()._handle_response(status_code, headers, text, display)

    @property
    def organization(self) -> str:
        parsed = urlparse(self.config.url)
        host = (parsed.hostname or '').lower()
        if host.endswith('visualstudio.com'):
            return host.split('.')[0]
        return parsed.path.strip('/').split('/')[0]

    @property
    def identity_base_url(self) -> str:
        """Base URL for graph and identity calls."""
        host = self.config.host
        if host == 'dev.azure.com':
            return f'https://vssps.dev.azure.com/{self.organization}'
        if host.endswith('visualstudio.com'):
            return f'https://{self.organization}.vssps.visualstudio.com'
        return self.base_url

    def identity_url(self, endpoint: str) -> str:
        return f'{self.identity_base_url}/{endpoint.lstrip("/")}'

    def push_url(self, remote_url: str) -> str:
        """Credentialed push URL for a repository remote URL."""
        scheme, sep, rest = remote_url.partition('://')
        if not sep:
            raise ValueError(f'Unsupported remote URL: {remote_url!r}')
        host_and_path = rest.split('@', 1)[-1]
        return f'{scheme}://pat:{quote(self.config.pat, safe="")}@{host_and_path}'

    def test_connection(self) -> bool:
        """Test connection to the Azure DevOps instance."""
        try:
            self.get('_apis/projects', params={'$top': 1})
            return True
        except APIError as e:
            self.logger.error(f'Connection test failed: {e}')
            return False

    def get_version(self) -> Optional[str]:
        try:
            return self.api_version
        except APIError as e:
            self.logger.warning(f'Could not resolve Azure DevOps api-version: {e}')
            return None


class PlatformClientFactory:
    """Factory for creating platform API clients."""

    @staticmethod
    def _common_options(
        retry: Optional[RetryConfig], diagnostics_dir: Optional[str]
    ) -> Dict[str, Any]:
        retry = retry or RetryConfig()
        return {
            'retry_policy': RetryPolicy(
                max_attempts=retry.max_attempts,
                base_delay=retry.base_delay,
                jitter_ratio=retry.jitter_ratio,
            ),
            'diagnostics': DiagnosticsWriter(diagnostics_dir) if diagnostics_dir else None,
        }

    @classmethod
    def create_source_client(
        cls,
        config: SourceConfig,
        retry: Optional[RetryConfig] = None,
        diagnostics_dir: Optional[str] = None,
    ) -> GitLabClient:
        """Create a GitLab client from configuration."""
        return GitLabClient(
            config,
            rate_limiter=RateLimiter(config.rate_limit_per_second),
            **cls._common_options(retry, diagnostics_dir),
        )

    @classmethod
    def create_target_client(
        cls,
        config: TargetConfig,
        retry: Optional[RetryConfig] = None,
        diagnostics_dir: Optional[str] = None,
    ) -> AzureDevOpsClient:
        """Create an Azure DevOps client from configuration."""
        return AzureDevOpsClient(
            config,
            rate_limiter=RateLimiter(config.rate_limit_per_second),
            **cls._common_options(retry, diagnostics_dir),
        )
