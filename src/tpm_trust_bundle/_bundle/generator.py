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

"""Generation of bundles from a `GenerateConfig`.

Certificates are downloaded and checked against their fingerprints in
parallel. The output does not depend on the number of workers: once all
certificates are available, entries are written in the canonical order of
`(vendor, lowercased name, serial number)`.
"""

import concurrent.futures
import logging
import os
from typing import Optional

from tpm_trust_bundle import errors
from tpm_trust_bundle._bundle import codec
from tpm_trust_bundle._bundle import config as config_lib
from tpm_trust_bundle._bundle import metadata as metadata_lib


logger = logging.getLogger(__name__)

MAX_WORKERS = 10


def default_workers() -> int:
    """Returns the number of CPUs available to this process, capped."""
    if hasattr(os, "sched_getaffinity"):
        count = len(os.sched_getaffinity(0))
    else:
        count = os.cpu_count() or 1
    return max(1, min(count, MAX_WORKERS))


def _effective_workers(workers: int) -> int:
    if workers == 0:
        return default_workers()
    return max(1, min(workers, MAX_WORKERS))


class Generator:
    """Builds bundles by fetching every configured certificate."""

    def __init__(self, source: Optional[config_lib.CertificateSource] = None):
        self._source = source or config_lib.CertificateSource()

    def _process(
        self,
        certificate: config_lib.Certificate,
        vendor: config_lib.Vendor,
    ) -> codec.CertificateEntry:
        x509_cert = self._source.download_certificate(certificate.uri)
        entry = codec.CertificateEntry.from_certificate(
            x509_cert, name=certificate.name, owner=vendor.id
        )
        try:
            certificate.fingerprint.validate(entry.der)
        except errors.ChecksumMismatch as err:
            raise errors.ChecksumMismatch(
                f"certificate {certificate.name!r} from vendor "
                f"{vendor.name!r}: {err}"
            ) from err
        return entry

    def collect(
        self, config: config_lib.GenerateConfig, *, workers: int = 1
    ) -> list[codec.CertificateEntry]:
        """Fetches and checks all certificates, in canonical order.

        Args:
            config: The certificates to fetch.
            workers: Number of concurrent downloads; 0 picks a value from
              the number of CPUs. Capped at `MAX_WORKERS`.

        Returns:
            The certificate entries, sorted canonically.

        Raises:
            TrustBundleError: The first failure, in configuration order.
        """
        jobs = [
            (certificate, vendor)
            for vendor in config.vendors
            for certificate in vendor.certificates
        ]
        num_workers = _effective_workers(workers)
        logger.debug(
            "Fetching %d certificates with %d workers", len(jobs), num_workers
        )
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=num_workers
        ) as pool:
            futures = [pool.submit(self._process, c, v) for c, v in jobs]
            entries = [future.result() for future in futures]

        return sorted(entries, key=lambda entry: entry.sort_key)

    def generate(
        self,
        config: config_lib.GenerateConfig,
        *,
        date: str,
        commit: str,
        bundle_type: metadata_lib.BundleType = metadata_lib.BundleType.ROOT,
        workers: int = 1,
        filename: Optional[str] = None,
    ) -> bytes:
        """Generates a complete bundle.

        Args:
            config: The certificates to include.
            date: The release date written in the header.
            commit: The source commit written in the header.
            bundle_type: Whether the bundle lists root or intermediate
              certificates.
            workers: Number of concurrent downloads.
            filename: Name echoed in the header. Defaults to the release
              asset name for `bundle_type`.

        Returns:
            The bundle, byte for byte identical for any value of `workers`.
        """
        metadata_lib.validate_date(date)
        metadata_lib.validate_commit(commit)
        entries = self.collect(config, workers=workers)
        return codec.encode_bundle(
            entries,
            date=date,
            commit=commit,
            bundle_type=bundle_type,
            filename=filename,
        )
