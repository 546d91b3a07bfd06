# Copyright 2025 The Sigstore Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Minimal GitHub REST client: releases, release assets and attestations."""

import dataclasses
import datetime
import json
import logging
import threading
from typing import Any, Optional

from tpm_trust_bundle import _http
from tpm_trust_bundle import errors
from tpm_trust_bundle._bundle import metadata as metadata_lib


logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.github.com"
DOWNLOAD_BASE_URL = "https://github.com"
API_VERSION = "2022-11-28"
RELEASE_BUNDLE_WORKFLOW_PATH = ".github/workflows/release-bundle.yaml"
DEFAULT_PAGE_SIZE = 50

_API_HEADERS = {
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": API_VERSION,
}


@dataclasses.dataclass(frozen=True)
class Repo:
    """A GitHub repository, as `owner/name`."""

    owner: str
    name: str

    def check_and_set_defaults(self) -> None:
        if not self.owner:
            raise errors.ConfigInvalid("repository 'owner' is required")
        if not self.name:
            raise errors.ConfigInvalid("repository 'name' is required")

    @classmethod
    def parse(cls, value: str) -> "Repo":
        owner, sep, name = value.partition("/")
        if not sep or not owner or not name or "/" in name:
            raise errors.ConfigInvalid(
                f"invalid repository {value!r}: expected 'owner/name'"
            )
        return cls(owner=owner, name=name)

    def __str__(self) -> str:
        return f"{self.owner}/{self.name}"


SOURCE_REPO = Repo(owner="loicsikidi", name="tpm-ca-certificates")


@dataclasses.dataclass(frozen=True)
class Release:
    tag_name: str
    name: str = ""
    published_at: Optional[datetime.datetime] = None
    assets: tuple[str, ...] = ()


def _parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))


def _decode_json(data: bytes, what: str) -> Any:
    try:
        return json.loads(data)
    except ValueError as err:
        raise errors.NetworkError(f"failed to decode {what}: {err}") from err


class GitHubClient:
    """Queries the GitHub API through an `HttpClient`."""

    def __init__(
        self,
        client: Optional[_http.HttpClient] = None,
        *,
        api_base_url: str = API_BASE_URL,
        download_base_url: str = DOWNLOAD_BASE_URL,
    ):
        self._client = client or _http.HttpClient()
        self._api_base_url = api_base_url.rstrip("/")
        self._download_base_url = download_base_url.rstrip("/")

    def _get_api(
        self, path: str, cancel: Optional[threading.Event]
    ) -> Any:
        url = f"{self._api_base_url}{path}"
        data = self._client.get(url, headers=_API_HEADERS, cancel=cancel)
        return _decode_json(data, f"response from {url}")

    def list_releases(
        self,
        repo: Repo,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        descending: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> list[Release]:
        """Lists releases whose tag is a bundle date, newest first.

        Args:
            repo: The repository publishing bundles.
            page_size: Number of releases requested, between 1 and 100.
            descending: Sort by publication date, newest first if True.
            cancel: Cancellation token.
        """
        page_size = max(1, min(page_size, 100))
        raw = self._get_api(
            f"/repos/{repo}/releases?per_page={page_size}", cancel
        )
        if not isinstance(raw, list):
            raise errors.NetworkError("unexpected releases payload")

        releases = [
            Release(
                tag_name=item.get("tag_name", ""),
                name=item.get("name") or "",
                published_at=_parse_timestamp(item.get("published_at")),
                assets=tuple(
                    asset.get("name", "") for asset in item.get("assets") or []
                ),
            )
            for item in raw
            if metadata_lib.is_date_tag(item.get("tag_name", ""))
        ]
        epoch = datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)
        releases.sort(
            key=lambda r: (r.published_at or epoch, r.tag_name),
            reverse=descending,
        )
        return releases

    def latest_release_tag(
        self, repo: Repo, *, cancel: Optional[threading.Event] = None
    ) -> str:
        releases = self.list_releases(repo, cancel=cancel)
        if not releases:
            raise errors.NotFound(f"no bundle release found in {repo}")
        return releases[0].tag_name

    def release_exists(
        self,
        repo: Repo,
        tag: str,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        try:
            self._get_api(f"/repos/{repo}/releases/tags/{tag}", cancel)
        except errors.NotFound:
            return False
        return True

    def asset_url(self, repo: Repo, tag: str, name: str) -> str:
        base = self._download_base_url
        return f"{base}/{repo}/releases/download/{tag}/{name}"

    def download_asset(
        self,
        repo: Repo,
        tag: str,
        name: str,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> bytes:
        return self._client.get(self.asset_url(repo, tag, name), cancel=cancel)

    def get_attestations(
        self,
        repo: Repo,
        digest: str,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> list[bytes]:
        """Returns the Sigstore bundles attesting an artifact digest.

        Args:
            repo: The repository the attestations were produced in.
            digest: The artifact digest, as `algorithm:hex`.
            cancel: Cancellation token.

        Returns:
            Each attestation bundle, as compact JSON.
        """
        raw = self._get_api(f"/repos/{repo}/attestations/{digest}", cancel)
        attestations = None
        if isinstance(raw, dict):
            attestations = raw.get("attestations")
        if attestations is None:
            raise errors.NetworkError("unexpected attestations payload")

        bundles = []
        for i, attestation in enumerate(attestations):
            bundle = attestation.get("bundle")
            if bundle is None and attestation.get("bundle_url"):
                url = attestation["bundle_url"]
                logger.debug("Fetching attestation bundle %d from %s", i, url)
                bundle = _decode_json(
                    self._client.get(url, cancel=cancel),
                    f"attestation bundle {i}",
                )
            if bundle is None:
                continue
            bundles.append(
                json.dumps(bundle, separators=(",", ":")).encode("utf-8")
            )
        return bundles
