"""
Client for the GitHub REST API.

Lists bundle releases, downloads release assets and fetches the build
provenance attestations recorded for an artifact digest. Requests are
not retried; callers decide what to do with a failure.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .errors import FetchError

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.github.com"
API_VERSION = "2022-11-28"
DEFAULT_TIMEOUT = 15.0

RELEASE_BUNDLE_WORKFLOW_PATH = ".github/workflows/release-bundle.yaml"

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
# Semver CLI releases share the repository with the dated bundle releases
LATEST_RELEASE_PAGE_SIZE = 50

SORT_ASC = "asc"
SORT_DESC = "desc"

_DATE_TAG_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class Repo:
    owner: str
    name: str

    def check_and_set_defaults(self) -> None:
        if not self.owner:
            raise ValueError("invalid input: 'owner' is required")
        if not self.name:
            raise ValueError("invalid input: 'name' is required")

    @classmethod
    def parse(cls, value: str) -> "Repo":
        """Build a Repo from ``owner/name``."""
        owner, _, name = value.partition("/")
        repo = cls(owner=owner, name=name)
        repo.check_and_set_defaults()
        return repo

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}"


SOURCE_REPO = Repo(owner="loicsikidi", name="tpm-ca-certificates")


@dataclass
class ReleaseAsset:
    name: str
    browser_download_url: str
    size: int = 0


@dataclass
class Release:
    tag_name: str
    name: str = ""
    published_at: str = ""
    assets: List[ReleaseAsset] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Release":
        return cls(
            tag_name=data.get("tag_name") or "",
            name=data.get("name") or "",
            published_at=data.get("published_at") or data.get("created_at") or "",
            assets=[
                ReleaseAsset(
                    name=asset.get("name") or "",
                    browser_download_url=asset.get("browser_download_url") or "",
                    size=asset.get("size") or 0,
                )
                for asset in data.get("assets") or []
            ],
        )

    def find_asset(self, name: str) -> Optional[ReleaseAsset]:
        for asset in self.assets:
            if asset.name == name:
                return asset
        return None


@dataclass
class Attestation:
    """A provenance attestation as returned by the attestations endpoint."""
    bundle: Optional[bytes] = None  # Sigstore bundle JSON
    bundle_url: str = ""


def is_date_tag(tag: str) -> bool:
    return bool(_DATE_TAG_RE.match(tag))


class GitHubClient:
    """Thin wrapper over a requests session with the GitHub API headers set."""

    def __init__(self, token: str = "", session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT, base_url: str = API_BASE_URL):
        self.session = session or requests.Session()
        self.token = token
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    def _headers(self, api: bool = True) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if api:
            headers["Accept"] = "application/vnd.github+json"
            headers["X-GitHub-Api-Version"] = API_VERSION
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get(self, url: str, what: str, api: bool = True) -> requests.Response:
        logger.debug("GET %s", url)
        try:
            return self.session.get(url, headers=self._headers(api), timeout=self.timeout)
        except requests.RequestException as e:
            raise FetchError(f"failed to {what}: {e}", url=url) from e

    @staticmethod
    def _check(response: requests.Response, url: str) -> None:
        if response.status_code != 200:
            raise FetchError(
                f"GitHub API returned status {response.status_code}: {response.text}",
                url=url,
                status=response.status_code,
            )

    @staticmethod
    def _decode(response: requests.Response, url: str) -> Any:
        try:
            return json.loads(response.content)
        except ValueError as e:
            raise FetchError(f"failed to decode response: {e}", url=url) from e

    # -------------------------------------------------------------------------
    # Releases
    # -------------------------------------------------------------------------

    def get_releases(self, repo: Repo, page_size: int = DEFAULT_PAGE_SIZE,
                     sort_order: str = SORT_DESC,
                     return_first_value: bool = False) -> List[Release]:
        """
        List the releases of repo whose tag is a bundle date.

        Releases sharing a tag are ordered by publication time, newest
        first in descending order.
        """
        if page_size <= 0:
            page_size = DEFAULT_PAGE_SIZE
        page_size = min(page_size, MAX_PAGE_SIZE)
        if sort_order not in (SORT_ASC, SORT_DESC):
            sort_order = SORT_DESC

        url = f"{self.base_url}/repos/{repo}/releases?per_page={page_size}"
        response = self._get(url, "fetch releases")
        self._check(response, url)
        data = self._decode(response, url)

        releases = [Release.from_json(item) for item in data if is_date_tag(item.get("tag_name") or "")]
        releases.sort(key=lambda r: (r.tag_name, r.published_at), reverse=sort_order == SORT_DESC)

        if return_first_value and releases:
            return releases[:1]
        return releases

    def get_latest_release(self, repo: Repo) -> Release:
        releases = self.get_releases(repo, page_size=LATEST_RELEASE_PAGE_SIZE, return_first_value=True)
        if not releases:
            raise FetchError(f"no bundle release found in {repo}")
        return releases[0]

    def get_release(self, repo: Repo, tag: str) -> Release:
        url = f"{self.base_url}/repos/{repo}/releases/tags/{tag}"
        response = self._get(url, "fetch release")
        if response.status_code == 404:
            raise FetchError("release not found", url=url, status=404)
        self._check(response, url)
        return Release.from_json(self._decode(response, url))

    def release_exists(self, repo: Repo, tag: str) -> None:
        """
        Raises:
            FetchError: "release not found" when the tag has no release
        """
        self.get_release(repo, tag)

    def download_release_asset(self, repo: Repo, tag: str, asset_name: str) -> bytes:
        """Download the named asset of the release tagged `tag`."""
        release = self.get_release(repo, tag)
        asset = release.find_asset(asset_name)
        if asset is None or not asset.browser_download_url:
            raise FetchError(f"asset '{asset_name}' not found in release '{tag}'")

        response = self._get(asset.browser_download_url, "download file", api=False)
        if response.status_code != 200:
            raise FetchError(
                f"download failed with status {response.status_code}",
                url=asset.browser_download_url,
                status=response.status_code,
            )
        return response.content

    def download_asset(self, repo: Repo, tag: str, asset_name: str, dest_path: str) -> None:
        data = self.download_release_asset(repo, tag, asset_name)
        try:
            with open(dest_path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise FetchError(f"failed to write file: {e}") from e
        logger.debug("Saved %s (%d bytes) to %s", asset_name, len(data), os.path.abspath(dest_path))

    # -------------------------------------------------------------------------
    # Attestations
    # -------------------------------------------------------------------------

    def get_attestations(self, repo: Repo, digest: str) -> List[Attestation]:
        """
        Fetch the attestations recorded for `digest` (``sha256:HEX``).

        Bundles that are not inlined in the response are downloaded from
        their ``bundle_url``.
        """
        url = f"{self.base_url}/repos/{repo}/attestations/{digest}"
        response = self._get(url, "fetch attestations")
        self._check(response, url)
        data = self._decode(response, url)

        attestations = []
        for i, item in enumerate(data.get("attestations") or []):
            attestation = Attestation(bundle_url=item.get("bundle_url") or "")
            if item.get("bundle") is not None:
                attestation.bundle = json.dumps(item["bundle"]).encode("utf-8")
            elif attestation.bundle_url:
                try:
                    attestation.bundle = self._fetch_bundle(attestation.bundle_url)
                except FetchError as e:
                    raise FetchError(f"failed to fetch bundle {i}: {e}", url=e.url, status=e.status) from e
            attestations.append(attestation)
        logger.debug("Found %d attestations for %s", len(attestations), digest)
        return attestations

    def _fetch_bundle(self, bundle_url: str) -> bytes:
        response = self._get(bundle_url, "fetch bundle", api=False)
        if response.status_code != 200:
            raise FetchError(
                f"bundle URL returned status {response.status_code}",
                url=bundle_url,
                status=response.status_code,
            )
        # Ensure the payload is JSON before handing it to the verifier
        self._decode(response, bundle_url)
        return response.content
