"""Container registry client for listing repository tags.

Talks the registry HTTP API v2 over HTTPS with ``requests``: anonymous
bearer tokens from the registry's token endpoint, tag listing paged through
``Link: <...>; rel="next"`` headers, and retry with exponential backoff for
transient failures.

Registries differ in where their tokens come from, so each host is served
by a small TagSource: Docker Hub has a fixed token endpoint, every other
registry announces its own in the ``WWW-Authenticate`` challenge.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urljoin

import requests

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "registry-1.docker.io"
DOCKER_HUB_ALIASES = ("docker.io", "index.docker.io", "registry.hub.docker.com")
DEFAULT_AUTH_URL = "https://auth.docker.io/token"
DEFAULT_AUTH_SERVICE = "registry.docker.io"
DEFAULT_NAMESPACE = "library"
REQUEST_TIMEOUT = 30
PAGE_SIZE = 1000
USER_AGENT = "updock"

# Token endpoints of registries that do not need a challenge round trip
KNOWN_AUTH_REALMS = {
    # lscr.io delegates auth to ghcr.io
    "ghcr.io": ("https://ghcr.io/token", "ghcr.io"),
    "lscr.io": ("https://ghcr.io/token", "ghcr.io"),
}

DEFAULT_TOKEN_LIFETIME = 60
TOKEN_EXPIRY_MARGIN = 5
TRANSIENT_STATUS = (502, 503, 504)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    """Error talking to a container registry."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)


class NetworkError(RegistryError):
    """Connection failure, timeout or temporarily unavailable registry."""


class RateLimited(RegistryError):
    """The registry answered 429 Too Many Requests."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, status=429)


class AuthError(RegistryError):
    """No usable token could be obtained for the repository."""


class ProtocolError(RegistryError):
    """The registry answered with an unexpected status or body."""


class CheckCancelled(RegistryError):
    """The run was cancelled before this request could complete."""


def normalize_registry(host: Optional[str]) -> str:
    """Map an empty host and the Docker Hub aliases to the hub's API host."""
    if not host or host in DOCKER_HUB_ALIASES:
        return DEFAULT_REGISTRY
    return host


@dataclass(frozen=True)
class Repository:
    host: str
    namespace: str
    name: str

    @property
    def path(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"

    @property
    def pull_scope(self) -> str:
        return f"repository:{self.path}:pull"

    def __str__(self) -> str:
        return f"{self.host}/{self.path}"


@dataclass
class RetryPolicy:
    max_attempts: int = 4
    backoff_base: float = 1.0
    max_backoff: float = 30.0
    max_retry_after: float = 60.0

    def delay(self, attempt: int) -> float:
        """Backoff before retrying after the given (0-based) attempt."""
        return min(self.max_backoff, self.backoff_base * (2 ** attempt))


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given as delta seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _parse_challenge(header: str) -> Optional[Dict[str, str]]:
    """Parse a ``Bearer realm="...",service="..."`` challenge."""
    scheme, _, params = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return {key.lower(): value for key, value in _CHALLENGE_PARAM.findall(params)}


@dataclass
class _Token:
    value: Optional[str]  # None: the registry allows anonymous access
    expires_at: float


class TokenCache:
    """Bearer tokens per registry host, one per repository scope.

    Each host has its own lock.  Whoever holds it is the only one allowed
    to fetch or refresh tokens for that host; the others wait and then
    reuse what was stored.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._host_locks: Dict[str, threading.Lock] = {}
        self._tokens: Dict[str, Dict[str, _Token]] = {}

    def host_lock(self, host: str) -> threading.Lock:
        with self._lock:
            return self._host_locks.setdefault(host, threading.Lock())

    def get(self, host: str, scope: str) -> Optional[_Token]:
        with self._lock:
            token = self._tokens.get(host, {}).get(scope)
        if token is None or self._clock() >= token.expires_at:
            return None
        return token

    def put(self, host: str, scope: str, value: Optional[str], lifetime: float) -> None:
        expires_at = self._clock() + max(0.0, lifetime - TOKEN_EXPIRY_MARGIN)
        with self._lock:
            self._tokens.setdefault(host, {})[scope] = _Token(value, expires_at)

    def invalidate(self, host: str, scope: str) -> None:
        with self._lock:
            self._tokens.get(host, {}).pop(scope, None)

    def clear(self) -> None:
        with self._lock:
            self._tokens.clear()


class TagSource:
    """Registry-specific parts of talking to one host."""

    def __init__(self, host: str):
        self.host = host

    @property
    def base_url(self) -> str:
        return f"https://{self.host}"

    def tags_url(self, repo: Repository) -> str:
        return f"{self.base_url}/v2/{repo.path}/tags/list?n={PAGE_SIZE}"

    def token_request(self, client: "RegistryClient",
                      repo: Repository) -> Optional[Tuple[str, Dict[str, str]]]:
        """Return the token endpoint URL and query, or None for anonymous access."""
        raise NotImplementedError

    def next_page_url(self, response: requests.Response) -> Optional[str]:
        link = response.links.get("next")
        if not link or not link.get("url"):
            return None
        return urljoin(response.url or self.base_url, link["url"])


class DockerHubTagSource(TagSource):
    """Docker Hub: tokens always come from auth.docker.io."""

    def __init__(self, host: str = DEFAULT_REGISTRY):
        super().__init__(host)

    def token_request(self, client, repo):
        return DEFAULT_AUTH_URL, {"service": DEFAULT_AUTH_SERVICE, "scope": repo.pull_scope}


class RegistryV2TagSource(TagSource):
    """Any registry following the distribution API.

    The token endpoint is read from the ``WWW-Authenticate`` challenge of
    ``GET /v2/``, once per host.
    """

    def __init__(self, host: str):
        super().__init__(host)
        self._discovered = False
        self._realm: Optional[Tuple[str, str]] = None

    def _discover(self, client: "RegistryClient") -> Optional[Tuple[str, str]]:
        if self.host in KNOWN_AUTH_REALMS:
            return KNOWN_AUTH_REALMS[self.host]

        response = client.get(f"{self.base_url}/v2/")
        if response.status_code == 200:
            logger.debug(f"Registry {self.host} allows anonymous access")
            return None

        challenge = _parse_challenge(response.headers.get("WWW-Authenticate", ""))
        if response.status_code == 401 and challenge and challenge.get("realm"):
            return challenge["realm"], challenge.get("service", self.host)

        logger.debug(
            f"No bearer challenge from {self.host} (status {response.status_code}), "
            f"falling back to {self.base_url}/token"
        )
        return f"{self.base_url}/token", self.host

    def token_request(self, client, repo):
        # Runs with the host lock held, so discovery happens once
        if not self._discovered:
            self._realm = self._discover(client)
            self._discovered = True
        if self._realm is None:
            return None
        realm, service = self._realm
        return realm, {"service": service, "scope": repo.pull_scope}


def _auth_headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _parse_tag_page(response: requests.Response, repo: Repository) -> List[str]:
    try:
        body = response.json()
    except ValueError as e:
        raise ProtocolError(f"Tag list for {repo} is not JSON: {e}", status=response.status_code)

    if not isinstance(body, dict) or "tags" not in body:
        raise ProtocolError(f"Tag list for {repo} has no 'tags' field", status=response.status_code)

    tags = body["tags"]
    if tags is None:
        return []
    if not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags):
        raise ProtocolError(f"Tag list for {repo} is not a list of strings",
                            status=response.status_code)
    return tags


class RegistryClient:
    """Lists tags of repositories on any number of registries.

    One client is meant to live for a whole run: it owns the HTTP session
    and the token cache shared by all checks.  It is safe to use from
    several threads.
    """

    def __init__(self, timeout: float = REQUEST_TIMEOUT, retry: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None,
                 tokens: Optional[TokenCache] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", USER_AGENT)
        self.tokens = tokens or TokenCache()
        self._cancelled = cancel_event or threading.Event()
        self._sources: Dict[str, TagSource] = {}
        self._sources_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self) -> None:
        self.session.close()

    def cancel(self) -> None:
        """Stop issuing requests; waiting retries end with CheckCancelled."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def source_for(self, host: str) -> TagSource:
        with self._sources_lock:
            source = self._sources.get(host)
            if source is None:
                if host == DEFAULT_REGISTRY:
                    source = DockerHubTagSource(host)
                else:
                    source = RegistryV2TagSource(host)
                self._sources[host] = source
            return source

    def _sleep(self, seconds: float) -> None:
        if self._cancelled.wait(seconds):
            raise CheckCancelled("Check cancelled while waiting to retry")

    def get(self, url: str, params: Optional[Dict[str, str]] = None,
            headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """GET a URL, retrying network errors, 429 and gateway errors.

        Any other response, successful or not, is returned for the caller
        to judge.

        Raises:
            NetworkError, RateLimited: the retry budget ran out
            ProtocolError: the request could not be sent at all
            CheckCancelled: the client was cancelled
        """
        last_error: Optional[RegistryError] = None
        attempts = self.retry.max_attempts

        for attempt in range(attempts):
            if self.cancelled:
                raise CheckCancelled("Check cancelled")

            logger.debug(f"GET {url}")
            try:
                response = self.session.get(url, params=params, headers=headers,
                                            timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = NetworkError(f"Error requesting {url}: {e}")
                delay = self.retry.delay(attempt)
            except requests.RequestException as e:
                raise ProtocolError(f"Could not request {url}: {e}")
            else:
                if response.status_code == 429:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    last_error = RateLimited(f"Rate limited by {url}", retry_after=retry_after)
                    if retry_after is None:
                        delay = self.retry.delay(attempt)
                    else:
                        delay = min(retry_after, self.retry.max_retry_after)
                elif response.status_code in TRANSIENT_STATUS:
                    last_error = NetworkError(
                        f"Registry unavailable ({response.status_code}) for {url}",
                        status=response.status_code,
                    )
                    delay = self.retry.delay(attempt)
                else:
                    return response

            if attempt + 1 < attempts:
                logger.warning(
                    f"{last_error.message}; retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{attempts})"
                )
                self._sleep(delay)

        raise last_error

    def _request_token(self, source: TagSource, repo: Repository) -> Tuple[Optional[str], float]:
        request = source.token_request(self, repo)
        if request is None:
            return None, float("inf")

        realm, params = request
        response = self.get(realm, params=params)
        if response.status_code != 200:
            raise AuthError(
                f"Token endpoint {realm} refused pull access to {repo.path} "
                f"({response.status_code})",
                status=response.status_code,
            )
        try:
            body: Any = response.json()
        except ValueError as e:
            raise AuthError(f"Token endpoint {realm} returned invalid JSON: {e}")

        token = None
        if isinstance(body, dict):
            token = body.get("token") or body.get("access_token")
        if not token:
            raise AuthError(f"Token endpoint {realm} returned no token for {repo.path}")

        try:
            lifetime = float(body.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME
        logger.debug(f"Got token for {repo} valid for {lifetime:.0f}s")
        return token, lifetime

    def get_token(self, source: TagSource, repo: Repository,
                  stale: Optional[str] = None, refresh: bool = False) -> Optional[str]:
        """Return a token for pulling from the repository.

        With ``refresh`` the cached token is replaced, unless another thread
        already replaced ``stale`` while this one was waiting for the lock.
        """
        with self.tokens.host_lock(repo.host):
            cached = self.tokens.get(repo.host, repo.pull_scope)
            if cached is not None and not (refresh and cached.value == stale):
                return cached.value
            token, lifetime = self._request_token(source, repo)
            self.tokens.put(repo.host, repo.pull_scope, token, lifetime)
            return token

    def fetch_tags(self, reference) -> Iterator[str]:
        """Yield every tag of the referenced repository.

        Args:
            reference: anything with ``registry``, ``namespace`` and
                ``repository`` attributes; registry and namespace may be None,
                and a missing namespace means 'library' on Docker Hub only

        Yields:
            Tag names, page by page, in registry order
        """
        host = normalize_registry(reference.registry)
        namespace = reference.namespace
        if not namespace and host == DEFAULT_REGISTRY:
            namespace = DEFAULT_NAMESPACE
        repo = Repository(host=host, namespace=namespace or "", name=reference.repository)
        source = self.source_for(repo.host)
        token = self.get_token(source, repo)

        url: Optional[str] = source.tags_url(repo)
        pages = 0
        while url:
            response = self.get(url, headers=_auth_headers(token))
            if response.status_code == 401:
                logger.debug(f"Token for {repo} rejected, refreshing")
                token = self.get_token(source, repo, stale=token, refresh=True)
                response = self.get(url, headers=_auth_headers(token))
                if response.status_code == 401:
                    raise AuthError(f"Registry {repo.host} rejected the token for {repo.path}",
                                    status=401)
            if response.status_code != 200:
                raise ProtocolError(
                    f"Unexpected status {response.status_code} listing tags for {repo}",
                    status=response.status_code,
                )

            tags = _parse_tag_page(response, repo)
            pages += 1
            yield from tags

            next_url = source.next_page_url(response)
            if next_url == url:
                raise ProtocolError(f"Tag list for {repo} links to itself as next page")
            url = next_url

        logger.debug(f"Listed {pages} page(s) of tags for {repo}")
