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

"""High level API to get, verify, load and save TPM trust bundles.

Getting the latest verified bundle, restricted to some vendors:

```python
from tpm_trust_bundle import api
from tpm_trust_bundle import vendors

bundle = api.get_trusted_bundle(
    api.GetConfig(vendor_ids=[vendors.IFX, vendors.NTC])
)
roots = bundle.get_roots()
bundle.stop()
```

Verifying a bundle obtained elsewhere; missing evidence is downloaded from
the release matching the bundle date:

```python
result = api.verify_trusted_bundle(api.VerifyConfig(bundle=data))
```

Saving everything required to later verify the bundle without network:

```python
api.save(api.SaveConfig(date="2025-12-05")).persist("/var/lib/tpmtb")
bundle = api.load_trusted_bundle(
    api.LoadConfig(cache_dir="/var/lib/tpmtb", offline=True)
)
```

Every configuration accepts an explicit `requests.Session`. Without one, the
module-wide session returned by `http_session()` is used.
"""

import dataclasses
import datetime
import logging
import pathlib
import threading
from typing import Optional, Union

import requests

from tpm_trust_bundle import _assets
from tpm_trust_bundle import _cache
from tpm_trust_bundle import _github
from tpm_trust_bundle import _http
from tpm_trust_bundle import _trusted_root
from tpm_trust_bundle import _verifier
from tpm_trust_bundle import errors
from tpm_trust_bundle import trusted_bundle
from tpm_trust_bundle import vendors
from tpm_trust_bundle._bundle import metadata as metadata_lib


logger = logging.getLogger(__name__)

AutoUpdateConfig = trusted_bundle.AutoUpdateConfig
TrustedBundle = trusted_bundle.TrustedBundle
VerifyResult = _verifier.VerifyResult

PathLike = Union[str, pathlib.Path]

_session_lock = threading.Lock()
_session: Optional[requests.Session] = None


def http_session() -> requests.Session:
    """Returns the session used when a configuration names none."""
    global _session
    with _session_lock:
        if _session is None:
            _session = requests.Session()
        return _session


def set_http_session(session: requests.Session) -> None:
    """Replaces the session used when a configuration names none."""
    global _session
    with _session_lock:
        _session = session


def _client(session: Optional[requests.Session]) -> _http.HttpClient:
    return _http.HttpClient(session if session is not None else http_session())


def _cache_dir(value: Optional[PathLike]) -> pathlib.Path:
    if value is None or value == "":
        return _cache.default_cache_dir()
    return pathlib.Path(value)


@dataclasses.dataclass
class GetConfig:
    """Configuration for `get_trusted_bundle`.

    Attributes:
        date: The release date, as `YYYY-MM-DD`. Latest release if empty.
        auto_update: Background refresh. Enabled, every 24 hours, by default.
        vendor_ids: Vendors exposed by the bundle. Every vendor if empty.
        cache_dir: The local cache, `$HOME/.tpmtb` by default.
        disable_local_cache: Neither read nor write the local cache, for
          read-only file systems.
        skip_verify: Do not verify the bundle.
        session: The HTTP session to use.
    """

    date: str = ""
    auto_update: AutoUpdateConfig = dataclasses.field(
        default_factory=AutoUpdateConfig
    )
    vendor_ids: list[vendors.VendorID] = dataclasses.field(
        default_factory=list
    )
    cache_dir: Optional[PathLike] = None
    disable_local_cache: bool = False
    skip_verify: bool = False
    session: Optional[requests.Session] = None

    def check_and_set_defaults(self) -> None:
        if self.date:
            metadata_lib.validate_date(self.date)
        self.auto_update.check_and_set_defaults()
        self.vendor_ids = vendors.parse_ids(self.vendor_ids)
        self.cache_dir = _cache_dir(self.cache_dir)
        if self.session is None:
            self.session = http_session()


def _verify_assets(
    assets: _assets.Assets,
    *,
    client: _http.HttpClient,
    disable_local_cache: bool,
    cache_dir: Optional[pathlib.Path] = None,
    trusted_root: bytes = b"",
    cancel: Optional[threading.Event] = None,
) -> tuple[VerifyResult, bytes]:
    """Verifies the bundles of `assets`.

    Returns:
        The verification evidence and the trusted root verified against.
    """
    metadata = metadata_lib.parse_metadata(assets.root_bundle)
    verifier = _verifier.BundleVerifier(
        _verifier.Config(
            date=metadata.date,
            commit=metadata.commit,
            client=client,
            disable_local_cache=disable_local_cache,
            trusted_root=trusted_root,
            cache_dir=cache_dir,
        ),
        cancel=cancel,
    )
    result = verifier.verify(
        assets.root_bundle,
        assets.checksum,
        assets.checksum_signature,
        assets.provenance,
        intermediate=assets.intermediate_bundle,
    )
    return result, verifier.trusted_root_data


def _fetch_latest(config: GetConfig) -> trusted_bundle.FetchLatest:
    inner = dataclasses.replace(
        config,
        date="",
        auto_update=AutoUpdateConfig(disable_auto_update=True),
    )

    def fetch(cancel: threading.Event) -> TrustedBundle:
        return get_trusted_bundle(dataclasses.replace(inner), cancel=cancel)

    return fetch

def _needs_persist(config: GetConfig, tag: str) -> bool:
    if not _cache.is_complete(config.cache_dir, tag):
        return True
    if config.skip_verify:
        return False
    # Upgrade a cache written without verification assets.
    return _cache.load_config(config.cache_dir).skip_verify



def get_trusted_bundle(
    config: GetConfig, *, cancel: Optional[threading.Event] = None
) -> TrustedBundle:
    """Downloads, verifies and parses a TPM trust bundle.

    The bundle comes from the local cache when it holds the requested
    release, otherwise from the GitHub release. Unless `skip_verify` is set,
    it is only returned once its checksum signature and provenance are
    verified. A newly downloaded bundle is persisted to the cache.

    Args:
        config: What to get.
        cancel: Cancellation token for network calls.

    Returns:
        The trusted bundle. Call `stop()` on it when auto-update is enabled.

    Raises:
        ConfigInvalid: The configuration is invalid.
        NotFound: The release does not exist.
        NetworkError: GitHub or the TUF repository could not be reached.
        VerificationFailed: The bundle failed verification.
        PersistFailed: The bundle could not be written to the cache.
    """
    config.check_and_set_defaults()
    client = _client(config.session)

    if (
        config.date
        and not config.disable_local_cache
        and _cache.is_complete(config.cache_dir, config.date)
    ):
        # A release held in the cache was resolved when it was saved.
        tag = config.date
    else:
        tag = _assets.resolve_release_tag(
            _github.GitHubClient(client),
            _github.SOURCE_REPO,
            config.date,
            cancel=cancel,
        )
    logger.debug("Resolved release %s", tag)

    assets = _assets.get_assets(
        _assets.AssetsConfig(
            tag=tag,
            client=client,
            cache_dir=config.cache_dir,
            disable_local_cache=config.disable_local_cache,
            need_checksums=not config.skip_verify,
            need_checksum_signature=not config.skip_verify,
            need_provenance=not config.skip_verify,
        ),
        cancel=cancel,
    )

    trusted_root = b""
    if not config.skip_verify:
        _, trusted_root = _verify_assets(
            assets,
            client=client,
            disable_local_cache=config.disable_local_cache,
            cache_dir=config.cache_dir,
            cancel=cancel,
        )

    bundle = TrustedBundle(
        assets,
        vendor_filter=config.vendor_ids,
        auto_update=config.auto_update,
        disable_local_cache=config.disable_local_cache,
    )

    if not config.disable_local_cache and _needs_persist(config, tag):
        try:
            bundle.persist(config.cache_dir, trusted_root=trusted_root)
        except errors.PersistFailed as err:
            raise errors.PersistFailed(
                f"failed to persist bundle to cache (if running on a "
                f"read-only file system, set disable_local_cache): {err}"
            ) from err

    if not config.auto_update.disable_auto_update:
        bundle.start_watcher(
            config.auto_update.interval,
            _fetch_latest(config),
            None if config.disable_local_cache else config.cache_dir,
        )
    return bundle


@dataclasses.dataclass
class VerifyConfig:
    """Configuration for `verify_trusted_bundle`.

    Attributes:
        bundle: The bundle to verify. Required.
        date: Overrides the date of the bundle header, with `commit`.
        commit: Overrides the commit of the bundle header, with `date`.
        checksum: The content of `checksums.txt`. Downloaded if empty.
        checksum_signature: The content of `checksums.txt.sigstore.json`.
          Downloaded if empty.
        provenance: An attestation bundle. Downloaded if empty.
        trusted_root: A Sigstore trusted root to verify with, for offline
          verification. Fetched through TUF if empty.
        cache_dir: The local cache.
        disable_local_cache: Neither read nor write the local cache.
        session: The HTTP session to use.
    """

    bundle: bytes = b""
    date: str = ""
    commit: str = ""
    checksum: bytes = b""
    checksum_signature: bytes = b""
    provenance: bytes = b""
    trusted_root: bytes = b""
    cache_dir: Optional[PathLike] = None
    disable_local_cache: bool = False
    session: Optional[requests.Session] = None

    def check_and_set_defaults(self) -> None:
        if not self.bundle:
            raise errors.ConfigInvalid("bundle cannot be empty")
        if bool(self.date) != bool(self.commit):
            raise errors.ConfigInvalid(
                "date and commit must be provided together"
            )
        if not self.date:
            metadata = metadata_lib.parse_metadata(self.bundle)
            self.date = metadata.date
            self.commit = metadata.commit
        metadata_lib.validate_date(self.date)
        metadata_lib.validate_commit(self.commit.lower())
        self.cache_dir = _cache_dir(self.cache_dir)
        if self.session is None:
            self.session = http_session()

    @property
    def needs_verification_assets(self) -> bool:
        return not (
            self.checksum and self.checksum_signature and self.provenance
        )


def verify_trusted_bundle(
    config: VerifyConfig, *, cancel: Optional[threading.Event] = None
) -> VerifyResult:
    """Verifies the origin of a bundle.

    The bundle must be listed in the signed `checksums.txt` of its release
    and be attested by the release workflow, at the bundle commit and on the
    bundle date.

    Args:
        config: The bundle and the evidence at hand.
        cancel: Cancellation token for network calls.

    Returns:
        The verification evidence.

    Raises:
        ConfigInvalid: The configuration is invalid.
        MalformedBundle: The bundle header cannot be parsed.
        NetworkError: Missing evidence could not be downloaded.
        VerificationFailed: A subclass naming the failed check.
    """
    config.check_and_set_defaults()
    client = _client(config.session)

    if config.needs_verification_assets:
        fetched = _assets.get_assets(
            _assets.AssetsConfig(
                tag=config.date,
                bundle=config.bundle,
                client=client,
                cache_dir=config.cache_dir,
                disable_local_cache=config.disable_local_cache,
                need_checksums=not config.checksum,
                need_checksum_signature=not config.checksum_signature,
                need_provenance=not config.provenance,
            ),
            cancel=cancel,
        )
        config.checksum = config.checksum or fetched.checksum
        config.checksum_signature = (
            config.checksum_signature or fetched.checksum_signature
        )
        config.provenance = config.provenance or fetched.provenance

    verifier = _verifier.BundleVerifier(
        _verifier.Config(
            date=config.date,
            commit=config.commit,
            client=client,
            disable_local_cache=config.disable_local_cache,
            trusted_root=config.trusted_root,
            cache_dir=config.cache_dir,
        ),
        cancel=cancel,
    )
    return verifier.verify(
        config.bundle,
        config.checksum,
        config.checksum_signature,
        config.provenance,
    )


@dataclasses.dataclass
class LoadConfig:
    """Configuration for `load_trusted_bundle`.

    Attributes:
        cache_dir: The directory the bundle was persisted to.
        disable_local_cache: Neither read nor write TUF metadata, and never
          persist updates.
        skip_verify: Do not verify the bundle, whatever the cache says.
        offline: Verify with the cached trusted root, without network.
          Auto-update is then disabled, since the cached trusted root does
          not survive Sigstore key rotations.
        session: The HTTP session to use.
    """

    cache_dir: Optional[PathLike] = None
    disable_local_cache: bool = False
    skip_verify: bool = False
    offline: bool = False
    session: Optional[requests.Session] = None

    def check_and_set_defaults(self) -> None:
        if self.offline and self.disable_local_cache:
            raise errors.ConfigInvalid(
                "offline mode requires local cache to be enabled"
            )
        self.cache_dir = _cache_dir(self.cache_dir)
        if not self.cache_dir.is_dir():
            raise errors.ConfigInvalid(
                f"cache directory does not exist: {self.cache_dir}"
            )
        if self.session is None:
            self.session = http_session()


def load_trusted_bundle(
    config: LoadConfig, *, cancel: Optional[threading.Event] = None
) -> TrustedBundle:
    """Rebuilds a persisted bundle and verifies it again.

    Args:
        config: Where the bundle was persisted and how to verify it.
        cancel: Cancellation token for network calls.

    Returns:
        The trusted bundle, with the vendor filter and auto-update settings
        it was persisted with.

    Raises:
        ConfigInvalid: The configuration or `config.json` is invalid.
        NotFound: A required file is missing from the cache.
        VerificationFailed: The bundle failed verification.
    """
    config.check_and_set_defaults()
    cache_dir = config.cache_dir

    assets = _assets.Assets(
        root_bundle=_cache.load_file(cache_dir, _cache.ROOT_BUNDLE_FILENAME)
    )
    try:
        assets.intermediate_bundle = _cache.load_file(
            cache_dir, _cache.INTERMEDIATE_BUNDLE_FILENAME
        )
    except errors.NotFound:
        # Early releases have no intermediate bundle.
        pass
    cache_config = _cache.load_config(cache_dir)

    if not (config.skip_verify or cache_config.skip_verify):
        assets.checksum = _cache.load_file(
            cache_dir, _cache.CHECKSUMS_FILENAME
        )
        assets.checksum_signature = _cache.load_file(
            cache_dir, _cache.CHECKSUMS_SIGNATURE_FILENAME
        )
        assets.provenance = _cache.load_file(
            cache_dir, _cache.PROVENANCE_FILENAME
        )
        trusted_root = b""
        if config.offline:
            trusted_root = _cache.load_file(
                cache_dir, _cache.TRUSTED_ROOT_FILENAME
            )
        _verify_assets(
            assets,
            client=_client(config.session),
            disable_local_cache=config.disable_local_cache,
            cache_dir=cache_dir,
            trusted_root=trusted_root,
            cancel=cancel,
        )

    bundle = TrustedBundle(
        assets,
        vendor_filter=cache_config.vendor_ids,
        auto_update=cache_config.auto_update,
        disable_local_cache=config.disable_local_cache,
    )

    auto_update = cache_config.auto_update
    if (
        auto_update is not None
        and not auto_update.disable_auto_update
        and not config.offline
    ):
        get_config = GetConfig(
            auto_update=auto_update,
            vendor_ids=cache_config.vendor_ids,
            cache_dir=cache_dir,
            disable_local_cache=config.disable_local_cache,
            skip_verify=config.skip_verify or cache_config.skip_verify,
            session=config.session,
        )
        bundle.start_watcher(
            auto_update.interval,
            _fetch_latest(get_config),
            None if config.disable_local_cache else cache_dir,
        )
    return bundle


@dataclasses.dataclass
class SaveConfig:
    """Configuration for `save`.

    Attributes:
        date: The release date, as `YYYY-MM-DD`. Latest release if empty.
        vendor_ids: Vendors exposed by the bundle once loaded.
        cache_dir: The local cache used while fetching.
        session: The HTTP session to use.
    """

    date: str = ""
    vendor_ids: list[vendors.VendorID] = dataclasses.field(
        default_factory=list
    )
    cache_dir: Optional[PathLike] = None
    session: Optional[requests.Session] = None

    def check_and_set_defaults(self) -> None:
        self.vendor_ids = vendors.parse_ids(self.vendor_ids)
        self.cache_dir = _cache_dir(self.cache_dir)
        if self.session is None:
            self.session = http_session()


@dataclasses.dataclass(frozen=True)
class SaveResponse:
    """Every file required to verify a bundle offline."""

    root_bundle: bytes
    checksum: bytes
    checksum_signature: bytes
    provenance: bytes
    trusted_root: bytes
    cache_config: bytes
    intermediate_bundle: bytes = b""

    def persist(self, output_dir: Optional[PathLike] = None) -> None:
        """Writes the files to `output_dir`, `$HOME/.tpmtb` by default.

        The directory is created with mode 0700 if needed.

        Raises:
            PersistFailed: A file could not be written.
        """
        _cache.persist_all(
            _cache_dir(output_dir),
            root_bundle=self.root_bundle,
            intermediate_bundle=self.intermediate_bundle,
            checksum=self.checksum,
            checksum_signature=self.checksum_signature,
            provenance=self.provenance,
            trusted_root=self.trusted_root,
            config=self.cache_config,
        )


def save(
    config: SaveConfig, *, cancel: Optional[threading.Event] = None
) -> SaveResponse:
    """Gets a verified bundle with everything needed to verify it offline.

    Args:
        config: What to save.
        cancel: Cancellation token for network calls.

    Returns:
        The files to persist, including the Sigstore trusted root.

    Raises:
        TrustBundleError: Getting the bundle or the trusted root failed.
    """
    config.check_and_set_defaults()

    bundle = get_trusted_bundle(
        GetConfig(
            date=config.date,
            vendor_ids=config.vendor_ids,
            cache_dir=config.cache_dir,
            session=config.session,
            auto_update=AutoUpdateConfig(disable_auto_update=True),
        ),
        cancel=cancel,
    )
    trusted_root = _trusted_root.fetch_trusted_root(
        config.cache_dir, client=_client(config.session), cancel=cancel
    )

    assets = bundle._get_assets()
    cache_config = _cache.CacheConfig(
        version=bundle.get_root_metadata().date,
        auto_update=AutoUpdateConfig(disable_auto_update=True),
        skip_verify=False,
        vendor_ids=config.vendor_ids,
        last_timestamp=datetime.datetime.now(datetime.timezone.utc),
    )
    return SaveResponse(
        root_bundle=assets.root_bundle,
        intermediate_bundle=assets.intermediate_bundle,
        checksum=assets.checksum,
        checksum_signature=assets.checksum_signature,
        provenance=assets.provenance,
        trusted_root=trusted_root,
        cache_config=cache_config.to_json(),
    )
