from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any, Protocol

from dotenv import load_dotenv

from .errors import AuthError, TransientNetworkError
from .models import Tag
from .version import is_release_tag, sort_tags

logger = logging.getLogger(__name__)

_GITHUB_API = "https://api.github.com"
_TIMEOUT_SECONDS = 30
_PER_PAGE = 100


class TagSource(Protocol):
    """Read-only view of the published release tags."""

    def list_tags(self) -> list[Tag]: ...

    def tag_exists(self, name: str) -> bool: ...


def resolve_github_token(config_dir: Path | None = None) -> str | None:
    """Return ``GITHUB_TOKEN`` from the environment or a ``.env`` beside the config file."""
    if config_dir is not None:
        env_path = config_dir / ".env"
        if env_path.is_file():
            load_dotenv(env_path)
    token = os.getenv("GITHUB_TOKEN", "").strip()
    return token or None


def _http_get_json(url: str, headers: dict[str, str]) -> Any:
    """GET a JSON document, mapping failures onto the builder's error taxonomy.

    Raises:
        AuthError: On rejected credentials.
        TransientNetworkError: On connectivity problems, rate limiting,
            server errors or an unparseable body.
    """
    request = urllib.request.Request(url, method="GET", headers=headers)
    try:
        with urllib.request.urlopen(request, timeout=_TIMEOUT_SECONDS) as response:
            data = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        remaining = exc.headers.get("X-RateLimit-Remaining") if exc.headers is not None else None
        logger.error("HTTP %d from %s", exc.code, url)
        if exc.code == 401:
            raise AuthError(f"GitHub rejected the credentials for {url}: {exc.reason}") from exc
        if exc.code == 403 and remaining != "0":
            raise AuthError(f"GitHub denied access to {url}: {exc.reason}") from exc
        if exc.code in (403, 429) or exc.code >= 500:
            raise TransientNetworkError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
        raise TransientNetworkError(f"Unexpected HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise TransientNetworkError(f"Failed to reach {url}: {exc.reason}") from exc
    except TimeoutError as exc:
        raise TransientNetworkError(f"Timed out reaching {url}") from exc
    try:
        return json.loads(data)
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON response from %s", url)
        raise TransientNetworkError(f"Invalid JSON response from {url}") from exc


class GitHubTagSource:
    """Release tags of a GitHub repository, via the REST releases endpoint."""

    def __init__(self, owner: str, repo: str, *, token: str | None = None, api_url: str = _GITHUB_API) -> None:
        self.owner = owner
        self.repo = repo
        self.token = token
        self.api_url = api_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "guix-release-builder",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _releases_url(self) -> str:
        owner = urllib.parse.quote(self.owner, safe="")
        repo = urllib.parse.quote(self.repo, safe="")
        return f"{self.api_url}/repos/{owner}/{repo}/releases?per_page={_PER_PAGE}&page=1"

    def list_tags(self) -> list[Tag]:
        payload = _http_get_json(self._releases_url(), self._headers())
        if not isinstance(payload, list):
            raise TransientNetworkError(f"Unexpected releases payload for {self.owner}/{self.repo}")

        names: set[str] = set()
        for release in payload:
            if not isinstance(release, dict):
                continue
            name = str(release.get("tag_name") or "").strip()
            if not is_release_tag(name):
                logger.debug("Ignoring non-release tag %r in %s/%s", name, self.owner, self.repo)
                continue
            names.add(name)
        logger.info("Fetched %d releases from %s/%s", len(names), self.owner, self.repo)
        return [Tag(name) for name in sort_tags(names)]

    def tag_exists(self, name: str) -> bool:
        return any(tag.name == name for tag in self.list_tags())
