"""Shared fixtures for updock tests."""

import json
import threading
from unittest.mock import MagicMock

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from registry_api import CheckCancelled, RegistryClient, RetryPolicy
from updock import ImageReference, parse_image_reference

# ---------------------------------------------------------------------------
# Tag lists modelled on real repositories: version tags plus noise that a
# pattern should skip
# ---------------------------------------------------------------------------

TAG_LISTS = {
    "library/ubuntu": [
        "18.03", "18.04", "20.10", "19.10-rc", "latest", "bionic", "rolling",
    ],
    "library/rocket.chat": [
        "latest", "develop", "3.0.1", "3.0.12", "3.1.0", "3.1.0-rc.1",
        "4.0.0", "2.4.14",
    ],
    "library/debian": [
        "latest", "debian-9-beta", "debian-10-beta", "debian-11-beta",
        "debian-10", "bullseye",
    ],
    "linuxserver/calibre": [
        "latest", "nightly", "v8.16.2-ls374", "v8.12.0-ls359",
        "v8.10.0-ls350", "version-v8.16.2", "arm64v8-latest",
    ],
    "linuxserver/sonarr": [
        "latest", "develop", "4.0.16.2944-ls299", "4.0.15.2941-ls294",
        "3.0.10.1567-ls200",
    ],
    "gitlab/gitlab-ce": [
        "latest", "nightly", "12.3.2-ce.0", "12.3.5-ce.0", "12.4.0-ce.0",
        "13.0.0-ce.0", "12.4.0-ee.0", "rc",
    ],
}

# Patterns for the tag lists above
PATTERNS = {
    "library/ubuntu": "<!>.<>",
    "library/rocket.chat": "<!>.<>.<>",
    "library/debian": "debian-<!>-beta",
    "linuxserver/calibre": "v<!>.<>.<>-ls<>",
    "linuxserver/sonarr": "<!>.<>.<>.<>-ls<>",
    "gitlab/gitlab-ce": "<!>.<>.<>-ce.0",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_reference(image: str, pattern: str, tag: str = None, registry: str = None,
                   source: str = "Dockerfile", line: int = 1) -> ImageReference:
    """Build an ImageReference the way the config loader does."""
    parsed_registry, namespace, repository, parsed_tag = parse_image_reference(image, registry)
    return ImageReference(
        registry=parsed_registry,
        namespace=namespace,
        repository=repository,
        tag=tag or parsed_tag,
        pattern=pattern,
        source=source,
        line=line,
    )


def make_response(status: int = 200, body=None, headers=None,
                  url: str = "https://registry-1.docker.io/v2/") -> requests.Response:
    """Build a real requests.Response so .json(), .ok and .links behave."""
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.headers = CaseInsensitiveDict(headers or {})
    response.encoding = "utf-8"
    if body is None:
        response._content = b""
    elif isinstance(body, str):
        response._content = body.encode("utf-8")
    else:
        response._content = json.dumps(body).encode("utf-8")
    return response


def token_response(token: str = "token-1", expires_in: int = 300) -> requests.Response:
    return make_response(200, {"token": token, "expires_in": expires_in},
                         url="https://auth.docker.io/token")


def tag_page(tags, url: str, next_url: str = None) -> requests.Response:
    headers = {}
    if next_url:
        headers["Link"] = f'<{next_url}>; rel="next"'
    return make_response(200, {"name": "repo", "tags": tags}, headers=headers, url=url)


class FakeRegistryClient:
    """Stands in for RegistryClient in orchestrator tests.

    Tags, errors and delays are keyed by 'namespace/repository'.
    """

    def __init__(self, tags=None, errors=None, delays=None):
        self.tags = tags if tags is not None else TAG_LISTS
        self.errors = errors or {}
        self.delays = delays or {}
        self.fetched = []
        self._lock = threading.Lock()
        self._cancelled = threading.Event()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        pass

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def fetch_tags(self, reference):
        key = f"{reference.namespace}/{reference.repository}"
        with self._lock:
            self.fetched.append(key)
        if self._cancelled.is_set():
            raise CheckCancelled("Check cancelled")
        delay = self.delays.get(key, 0)
        if delay and self._cancelled.wait(delay):
            raise CheckCancelled("Check cancelled")
        if key in self.errors:
            raise self.errors[key]
        yield from self.tags.get(key, [])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, backoff_base=1.0, max_backoff=8.0, max_retry_after=60.0)


@pytest.fixture
def client(retry_policy):
    """RegistryClient whose backoff waits are recorded instead of slept."""
    c = RegistryClient(timeout=5, retry=retry_policy)
    c._sleep = MagicMock()
    yield c
    c.close()


@pytest.fixture
def fake_client():
    return FakeRegistryClient()


@pytest.fixture
def minimal_config():
    """Minimal valid config with one image."""
    return {
        "images": [{
            "image": "rocket.chat:3.0.1",
            "pattern": "<!>.<>.<>",
        }]
    }


@pytest.fixture
def full_config():
    """Config exercising all optional fields."""
    return {
        "images": [{
            "image": "linuxserver/calibre",
            "tag": "v8.12.0-ls359",
            "pattern": "v<!>.<>.<>-ls<>",
            "registry": "lscr.io",
            "source": "calibre/Dockerfile",
            "line": 4,
        }],
        "settings": {
            "max_workers": 2,
            "timeout": 10,
            "max_attempts": 5,
            "backoff_base": 0.5,
            "max_backoff": 10,
            "max_retry_after": 30,
        }
    }
