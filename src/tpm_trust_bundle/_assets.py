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

"""Retrieval of a release: bundles plus their verification assets.

Assets come from the local cache when it holds the requested release in full,
otherwise from GitHub. From the network, `checksums.txt` is always fetched
first since it tells whether the release ships an intermediate bundle.
"""

import dataclasses
import logging
import pathlib
import threading
from typing import Optional

from tpm_trust_bundle import _cache
from tpm_trust_bundle import _github
from tpm_trust_bundle import _http
from tpm_trust_bundle import _policy
from tpm_trust_bundle import errors
from tpm_trust_bundle._bundle import metadata as metadata_lib


logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Assets:
    """The content of a release. Empty bytes mean absent."""

    root_bundle: bytes = b""
    intermediate_bundle: bytes = b""
    checksum: bytes = b""
    checksum_signature: bytes = b""
    provenance: bytes = b""

    def copy(self) -> "Assets":
        return dataclasses.replace(self)


@dataclasses.dataclass
class AssetsConfig:
    """Which release to retrieve, from where, and which assets are needed.

    Attributes:
        tag: The release tag.
        bundle: A bundle already at hand; it is not downloaded again.
        client: HTTP client for GitHub.
        source_repo: The repository publishing bundles.
        cache_dir: The local cache.
        disable_local_cache: Never read the local cache.
        need_checksums: Keep `checksums.txt` in the result.
        need_checksum_signature: Download the checksum signature.
        need_provenance: Download the provenance attestation.
    """

    tag: str = ""
    bundle: bytes = b""
    client: Optional[_http.HttpClient] = None
    source_repo: Optional[_github.Repo] = None
    cache_dir: Optional[pathlib.Path] = None
    disable_local_cache: bool = False
    need_checksums: bool = False
    need_checksum_signature: bool = False
    need_provenance: bool = False

    def check_and_set_defaults(self) -> None:
        if not self.tag:
            raise errors.ConfigInvalid("tag cannot be empty")
        if self.client is None:
            self.client = _http.HttpClient()
        if self.cache_dir is None:
            self.cache_dir = _cache.default_cache_dir()
        if self.source_repo is None:
            self.source_repo = _github.SOURCE_REPO
        self.source_repo.check_and_set_defaults()

    @property
    def needs_verification_assets(self) -> bool:
        return (
            self.need_checksums
            or self.need_checksum_signature
            or self.need_provenance
        )


def resolve_release_tag(
    github: _github.GitHubClient,
    repo: _github.Repo,
    date: str = "",
    *,
    cancel: Optional[threading.Event] = None,
) -> str:
    """Returns `date` if such a release exists, else the latest release tag.

    Raises:
        NotFound: The release does not exist, or there is no release at all.
    """
    if date:
        if not github.release_exists(repo, date, cancel=cancel):
            raise errors.NotFound(f"release {date} not found in {repo}")
        return date
    return github.latest_release_tag(repo, cancel=cancel)


def _from_cache(config: AssetsConfig) -> Assets:
    assets = Assets(
        root_bundle=_cache.load_file(
            config.cache_dir, _cache.ROOT_BUNDLE_FILENAME
        )
    )
    try:
        assets.intermediate_bundle = _cache.load_file(
            config.cache_dir, _cache.INTERMEDIATE_BUNDLE_FILENAME
        )
    except errors.NotFound:
        # Early releases have no intermediate bundle.
        pass

    if not config.needs_verification_assets:
        return assets

    if _cache.load_config(config.cache_dir).skip_verify:
        raise errors.CacheIncomplete(
            "cache was written without verification assets"
        )
    try:
        assets.checksum = _cache.load_file(
            config.cache_dir, _cache.CHECKSUMS_FILENAME
        )
        assets.checksum_signature = _cache.load_file(
            config.cache_dir, _cache.CHECKSUMS_SIGNATURE_FILENAME
        )
        assets.provenance = _cache.load_file(
            config.cache_dir, _cache.PROVENANCE_FILENAME
        )
    except errors.NotFound as err:
        raise errors.CacheIncomplete(str(err)) from err
    if not (
        assets.checksum and assets.checksum_signature and assets.provenance
    ):
        raise errors.CacheIncomplete("cache holds empty verification assets")
    return assets


def _place_provided_bundle(
    data: bytes, assets: Assets
) -> Optional[metadata_lib.BundleType]:
    if not data:
        return None
    bundle_type = metadata_lib.parse_metadata(data).type
    if bundle_type is metadata_lib.BundleType.INTERMEDIATE:
        assets.intermediate_bundle = bytes(data)
    else:
        assets.root_bundle = bytes(data)
    return bundle_type


def download_provenance(
    github: _github.GitHubClient,
    repo: _github.Repo,
    root_bundle: bytes,
    *,
    cancel: Optional[threading.Event] = None,
) -> bytes:
    """Returns the first attestation about the root bundle, as compact JSON.

    Raises:
        NotFound: GitHub holds no attestation for the root bundle.
    """
    if not root_bundle:
        raise errors.ConfigInvalid(
            "root bundle data is required to look up its provenance"
        )
    digest = str(_policy.Digest.of(root_bundle))
    attestations = github.get_attestations(repo, digest, cancel=cancel)
    if not attestations:
        raise errors.NotFound(f"no attestations found for digest {digest}")
    return attestations[0]


def _from_github(
    config: AssetsConfig, cancel: Optional[threading.Event]
) -> Assets:
    github = _github.GitHubClient(config.client)
    repo = config.source_repo
    assets = Assets()

    checksum = github.download_asset(
        repo, config.tag, _cache.CHECKSUMS_FILENAME, cancel=cancel
    )
    listed = checksum.decode("utf-8", errors="replace")
    if config.need_checksums:
        assets.checksum = checksum

    if config.need_checksum_signature:
        assets.checksum_signature = github.download_asset(
            repo,
            config.tag,
            _cache.CHECKSUMS_SIGNATURE_FILENAME,
            cancel=cancel,
        )

    provided = _place_provided_bundle(config.bundle, assets)
    for bundle_type in metadata_lib.BundleType:
        if bundle_type == provided or bundle_type.filename not in listed:
            continue
        logger.debug(
            "Downloading %s of release %s", bundle_type.filename, config.tag
        )
        data = github.download_asset(
            repo, config.tag, bundle_type.filename, cancel=cancel
        )
        if bundle_type is metadata_lib.BundleType.INTERMEDIATE:
            assets.intermediate_bundle = data
        else:
            assets.root_bundle = data

    if config.need_provenance:
        assets.provenance = download_provenance(
            github, repo, assets.root_bundle, cancel=cancel
        )
    return assets


def get_assets(
    config: AssetsConfig, *, cancel: Optional[threading.Event] = None
) -> Assets:
    """Retrieves the assets of a release, from the cache if possible.

    Args:
        config: What to retrieve.
        cancel: Cancellation token for network calls.

    Returns:
        The assets. Verification assets are only filled when requested.

    Raises:
        ConfigInvalid: The configuration is incomplete.
        NotFound: A required asset is missing.
        NetworkError: GitHub could not be reached.
        TooLarge: An asset exceeds the size ceiling.
    """
    config.check_and_set_defaults()

    if not config.disable_local_cache and _cache.is_complete(
        config.cache_dir, config.tag
    ):
        try:
            assets = _from_cache(config)
        except errors.CacheIncomplete as err:
            logger.debug("Cache incomplete, falling back to GitHub: %s", err)
        else:
            logger.debug(
                "Loaded release %s from %s", config.tag, config.cache_dir
            )
            return assets

    return _from_github(config, cancel)
