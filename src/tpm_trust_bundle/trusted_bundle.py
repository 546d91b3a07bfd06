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

"""The trusted bundle: a thread-safe view over verified TPM CA certificates.

A `TrustedBundle` is built by `tpm_trust_bundle.api` from a verified release.
All accessors are safe to call from several threads and never perform I/O.
They return copies, so callers cannot alter the state of the bundle.

When auto-update is enabled, a background thread periodically looks for a
newer release and swaps it in atomically:

```python
bundle = api.get_trusted_bundle(api.GetConfig())
try:
    bundle.verify_certificate(ek_certificate)
finally:
    bundle.stop()
```
"""

from collections.abc import Callable, Iterable, Iterator
import dataclasses
import datetime
import logging
import pathlib
import threading
from typing import Optional

from cryptography import x509
from OpenSSL import crypto as ssl_crypto

from tpm_trust_bundle import _assets
from tpm_trust_bundle import _cache
from tpm_trust_bundle import errors
from tpm_trust_bundle import vendors
from tpm_trust_bundle._bundle import codec
from tpm_trust_bundle._bundle import metadata as metadata_lib


logger = logging.getLogger(__name__)

AutoUpdateConfig = _cache.AutoUpdateConfig

STOP_TIMEOUT = datetime.timedelta(seconds=5)

_Catalog = dict[vendors.VendorID, list[x509.Certificate]]
FetchLatest = Callable[[threading.Event], "TrustedBundle"]


def _to_catalog(data: bytes) -> _Catalog:
    return {
        vendor: [entry.certificate for entry in entries]
        for vendor, entries in codec.parse_bundle(data).items()
    }


@dataclasses.dataclass(frozen=True)
class _State:
    """Everything swapped at once by an update."""

    assets: _assets.Assets
    root_metadata: metadata_lib.Metadata
    intermediate_metadata: Optional[metadata_lib.Metadata]
    root_catalog: _Catalog
    intermediate_catalog: _Catalog

    @classmethod
    def from_assets(cls, assets: _assets.Assets) -> "_State":
        root_metadata = metadata_lib.parse_metadata(assets.root_bundle)
        if root_metadata.type is not metadata_lib.BundleType.ROOT:
            raise errors.MalformedBundle(
                f"expected a root bundle, got a {root_metadata.type} bundle"
            )

        intermediate_metadata = None
        intermediate_catalog = {}
        if assets.intermediate_bundle:
            intermediate_metadata = metadata_lib.parse_metadata(
                assets.intermediate_bundle
            )
            if intermediate_metadata.type is not (
                metadata_lib.BundleType.INTERMEDIATE
            ):
                raise errors.MalformedBundle(
                    "expected an intermediate bundle, got a "
                    f"{intermediate_metadata.type} bundle"
                )
            intermediate_catalog = _to_catalog(assets.intermediate_bundle)

        return cls(
            assets=assets.copy(),
            root_metadata=root_metadata,
            intermediate_metadata=intermediate_metadata,
            root_catalog=_to_catalog(assets.root_bundle),
            intermediate_catalog=intermediate_catalog,
        )


def _to_openssl(cert: x509.Certificate) -> ssl_crypto.X509:
    return ssl_crypto.X509.from_cryptography(cert)


class TrustedBundle:
    """Verified root and intermediate TPM CA certificates, by vendor."""

    def __init__(
        self,
        assets: _assets.Assets,
        *,
        vendor_filter: Iterable[vendors.VendorID] = (),
        auto_update: Optional[AutoUpdateConfig] = None,
        disable_local_cache: bool = False,
    ):
        """Builds a trusted bundle from already verified assets.

        Args:
            assets: The bundles and, when verified, their evidence.
            vendor_filter: Restricts the certificates exposed by accessors.
              Empty means every vendor.
            auto_update: Persisted alongside the bundle.
            disable_local_cache: Forbids `persist`.

        Raises:
            MalformedBundle: A bundle cannot be parsed.
        """
        self._lock = threading.Lock()
        self._state = _State.from_assets(assets)
        self._vendor_filter = tuple(vendors.parse_ids(vendor_filter))
        self._auto_update = auto_update
        self._disable_local_cache = disable_local_cache

        self._stop_event = threading.Event()
        self._watcher: Optional[threading.Thread] = None

    def get_raw_root(self) -> bytes:
        with self._lock:
            return bytes(self._state.assets.root_bundle)

    def get_raw_intermediate(self) -> bytes:
        """Returns the intermediate bundle, or empty bytes if absent."""
        with self._lock:
            return bytes(self._state.assets.intermediate_bundle)

    def get_root_metadata(self) -> metadata_lib.Metadata:
        with self._lock:
            return dataclasses.replace(self._state.root_metadata)

    def get_intermediate_metadata(self) -> Optional[metadata_lib.Metadata]:
        with self._lock:
            metadata = self._state.intermediate_metadata
            return dataclasses.replace(metadata) if metadata else None

    def get_vendors(self) -> list[vendors.VendorID]:
        """Returns vendors with at least one root, honoring the filter."""
        with self._lock:
            catalog = self._state.root_catalog
            if self._vendor_filter:
                return [v for v in self._vendor_filter if catalog.get(v)]
            return [v for v, certs in catalog.items() if certs]

    def _iter_certificates(
        self, catalog: _Catalog
    ) -> Iterator[x509.Certificate]:
        selected = self._vendor_filter or tuple(catalog)
        for vendor in selected:
            yield from catalog.get(vendor, ())

    def get_roots(self) -> list[x509.Certificate]:
        with self._lock:
            return list(self._iter_certificates(self._state.root_catalog))

    def get_intermediates(self) -> list[x509.Certificate]:
        with self._lock:
            return list(
                self._iter_certificates(self._state.intermediate_catalog)
            )

    def contains(self, cert: x509.Certificate) -> bool:
        """Returns whether `cert` is one of the exposed certificates."""
        with self._lock:
            return any(
                candidate == cert
                for catalog in (
                    self._state.root_catalog,
                    self._state.intermediate_catalog,
                )
                for candidate in self._iter_certificates(catalog)
            )

    def verify_certificate(
        self,
        cert: x509.Certificate,
        *,
        at: Optional[datetime.datetime] = None,
    ) -> list[x509.Certificate]:
        """Checks that `cert` chains up to one of the exposed roots.

        The chain is validated by OpenSSL against the exposed roots, with the
        exposed intermediates as untrusted candidates. Any extended key usage
        is accepted and unknown critical extensions are ignored, since EK
        certificates carry TPM specific ones. Every certificate of the chain
        must be valid at `at`.

        Args:
            cert: The certificate to verify, typically an EK certificate.
            at: The verification time. Defaults to now.

        Returns:
            The chain, from `cert` up to the trusted root.

        Raises:
            CertificateInvalid: No valid chain was found.
        """
        # Roots and intermediates of the same release.
        with self._lock:
            state = self._state
            roots = list(self._iter_certificates(state.root_catalog))
            intermediates = list(
                self._iter_certificates(state.intermediate_catalog)
            )

        store = ssl_crypto.X509Store()
        for root in roots:
            store.add_cert(_to_openssl(root))
        # TPM specific critical extensions are unknown to OpenSSL.
        store.set_flags(ssl_crypto.X509StoreFlags.IGNORE_CRITICAL)
        if at is not None:
            store.set_time(at)

        store_ctx = ssl_crypto.X509StoreContext(
            store,
            _to_openssl(cert),
            [_to_openssl(c) for c in intermediates],
        )
        try:
            chain = store_ctx.get_verified_chain()
        except ssl_crypto.X509StoreContextError as err:
            raise errors.CertificateInvalid(
                f"certificate {cert.subject.rfc4514_string()!r} does not "
                f"chain up to a trusted root: {err}"
            ) from err
        return [c.to_cryptography() for c in chain]

    def _get_assets(self) -> _assets.Assets:
        with self._lock:
            return self._state.assets.copy()

    def _update(self, other: "TrustedBundle") -> bool:
        """Swaps in the state of `other`, unless the bundle was stopped."""
        with other._lock:
            state = other._state
        with self._lock:
            if self._stop_event.is_set():
                return False
            self._state = state
        return True

    def persist(
        self,
        cache_dir: Optional[pathlib.Path] = None,
        *,
        trusted_root: bytes = b"",
    ) -> None:
        """Writes the bundle and its evidence to a cache directory.

        Existing files are overwritten. `api.load_trusted_bundle` rebuilds
        the bundle from the written files.

        Args:
            cache_dir: The target directory, `$HOME/.tpmtb` by default.
            trusted_root: The Sigstore trusted root the bundle was verified
              with, written for offline loads. Left untouched when empty.

        Raises:
            CachingDisabled: The bundle was created with caching disabled.
            PersistFailed: A file could not be written.
        """
        if self._disable_local_cache:
            raise errors.CachingDisabled(
                "local cache is disabled; cannot persist bundle"
            )
        cache_dir = pathlib.Path(cache_dir or _cache.default_cache_dir())

        with self._lock:
            assets = self._state.assets
            config = _cache.CacheConfig(
                version=self._state.root_metadata.date,
                auto_update=self._auto_update,
                skip_verify=not (
                    assets.checksum
                    or assets.checksum_signature
                    or assets.provenance
                ),
                vendor_ids=list(self._vendor_filter),
            )
            _cache.persist_all(
                cache_dir,
                root_bundle=assets.root_bundle,
                intermediate_bundle=assets.intermediate_bundle,
                checksum=assets.checksum,
                checksum_signature=assets.checksum_signature,
                provenance=assets.provenance,
                trusted_root=trusted_root,
                config=config.to_json(),
            )
        logger.debug("Persisted bundle to %s", cache_dir)

    def start_watcher(
        self,
        interval: datetime.timedelta,
        fetch_latest: FetchLatest,
        cache_dir: Optional[pathlib.Path] = None,
    ) -> None:
        """Starts the auto-update thread.

        Args:
            interval: Time between two checks.
            fetch_latest: Returns the latest release as a bundle without a
              watcher. Receives the stop event to abandon network calls.
            cache_dir: Where updates are persisted. None disables
              persistence.
        """
        if self._watcher is not None:
            return
        self._watcher = threading.Thread(
            target=self._watch,
            args=(interval.total_seconds(), fetch_latest, cache_dir),
            name="tpmtb-auto-update",
            daemon=True,
        )
        self._watcher.start()

    def _watch(
        self,
        interval: float,
        fetch_latest: FetchLatest,
        cache_dir: Optional[pathlib.Path],
    ) -> None:
        while not self._stop_event.wait(interval):
            self._check_and_update(fetch_latest, cache_dir)
        logger.debug("Auto-update watcher stopped")

    def _check_and_update(
        self,
        fetch_latest: FetchLatest,
        cache_dir: Optional[pathlib.Path],
    ) -> None:
        # Failures keep the current bundle.
        try:
            latest = fetch_latest(self._stop_event)
        except Exception as err:
            logger.warning("Auto-update check failed: %s", err)
            return

        current = self.get_root_metadata()
        candidate = latest.get_root_metadata()
        if candidate.date <= current.date:
            logger.debug("Bundle %s is up to date", current.date)
            return
        if not self._update(latest):
            return
        logger.info(
            "Updated trusted bundle from %s to %s", current.date, candidate.date
        )

        if cache_dir is None or self._disable_local_cache:
            return
        try:
            self.persist(cache_dir)
        except Exception as err:
            logger.warning("Failed to persist updated bundle: %s", err)

    def stop(self) -> None:
        """Stops the auto-update watcher, if any.

        Safe to call several times. Once it returns, the bundle no longer
        changes.

        Raises:
            Timeout: The watcher did not exit within five seconds.
        """
        self._stop_event.set()
        if self._watcher is None:
            return
        self._watcher.join(STOP_TIMEOUT.total_seconds())
        if self._watcher.is_alive():
            raise errors.Timeout(
                "timeout waiting for auto-update watcher to stop"
            )
