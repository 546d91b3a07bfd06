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

"""Verification of a bundle against its release evidence.

A bundle is accepted when:

1. the signed `checksums.txt` lists its SHA-256 digest, the signature was
   made by the release workflow at the bundle commit, and logged on the
   bundle date;
2. at least one provenance attestation about the bundle digest was made by
   the release workflow, at the bundle commit, on the bundle date.

An intermediate bundle shipped alongside is checked the same way against the
same checksum signature, and must carry the same date and commit.
"""

import dataclasses
import logging
import pathlib
import threading
from typing import Optional

from sigstore import models as sigstore_models

from tpm_trust_bundle import _github
from tpm_trust_bundle import _http
from tpm_trust_bundle import _policy
from tpm_trust_bundle import _transparency
from tpm_trust_bundle import _trusted_root
from tpm_trust_bundle import errors
from tpm_trust_bundle._bundle import metadata as metadata_lib


logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Config:
    """Configuration of a `BundleVerifier`.

    Attributes:
        date: The expected bundle date, also the release tag.
        commit: The expected source commit.
        source_repo: The repository publishing bundles.
        workflow: Path of the release workflow in the repository.
        client: HTTP client for the trusted root and attestations.
        disable_local_cache: Keep no TUF metadata on disk.
        trusted_root: A trusted root document to use instead of TUF.
        cache_dir: Where TUF metadata is kept.
    """

    date: str = ""
    commit: str = ""
    source_repo: Optional[_github.Repo] = None
    workflow: str = _github.RELEASE_BUNDLE_WORKFLOW_PATH
    client: Optional[_http.HttpClient] = None
    disable_local_cache: bool = False
    trusted_root: bytes = b""
    cache_dir: Optional[pathlib.Path] = None

    def check_and_set_defaults(self) -> None:
        if not self.date:
            raise errors.ConfigInvalid("date cannot be empty")
        if not self.commit:
            raise errors.ConfigInvalid("commit cannot be empty")
        if self.source_repo is None:
            self.source_repo = _github.SOURCE_REPO
        self.source_repo.check_and_set_defaults()
        if not self.workflow:
            self.workflow = _github.RELEASE_BUNDLE_WORKFLOW_PATH
        if self.client is None:
            self.client = _http.HttpClient()


@dataclasses.dataclass(frozen=True)
class VerifyResult:
    """Evidence that a bundle was verified.

    Attributes:
        policy: The identity the evidence was checked against.
        cosign_result: The checksum signature verification of the bundle.
        attestation_results: Every attestation that passed all checks.
        intermediate_cosign_result: The checksum signature verification of
          the intermediate bundle, when one was verified.
    """

    policy: _policy.PolicyConfig
    cosign_result: _transparency.VerificationResult
    attestation_results: tuple[_transparency.VerificationResult, ...]
    intermediate_cosign_result: Optional[_transparency.VerificationResult] = (
        None
    )


class BundleVerifier:
    """Verifies bundles of one release."""

    def __init__(
        self, config: Config, *, cancel: Optional[threading.Event] = None
    ):
        config.check_and_set_defaults()
        self._config = config
        self._cancel = cancel
        self._transparency: Optional[_transparency.TransparencyVerifier] = None
        self._trusted_root_data = b""

    @property
    def policy_config(self) -> _policy.PolicyConfig:
        return _policy.PolicyConfig(
            source_repo=self._config.source_repo,
            build_workflow=self._config.workflow,
            tag=self._config.date,
        )

    @property
    def trusted_root_data(self) -> bytes:
        """The trusted root document used, empty until first needed."""
        return self._trusted_root_data

    def _load_trusted_root(self) -> sigstore_models.TrustedRoot:
        data = self._config.trusted_root
        if not data:
            data = _trusted_root.fetch_trusted_root(
                self._config.cache_dir,
                client=self._config.client,
                disable_local_cache=self._config.disable_local_cache,
                cancel=self._cancel,
            )
        trusted_root = _trusted_root.load_trusted_root(data)
        self._trusted_root_data = data
        return trusted_root

    def _verifier(self) -> _transparency.TransparencyVerifier:
        if self._transparency is None:
            self._transparency = _transparency.TransparencyVerifier(
                self._load_trusted_root()
            )
        return self._transparency

    def _verify_cosign(
        self, bundle: bytes, checksums: bytes, checksums_signature: bytes
    ) -> _transparency.VerificationResult:
        metadata = metadata_lib.parse_metadata(bundle)
        result = self._verifier().verify_checksum(
            self.policy_config,
            checksums,
            checksums_signature,
            bundle,
            metadata.type.filename,
        )
        _transparency.verify_commit(
            _transparency.source_repository_digest(result.certificate),
            self._config.commit,
        )
        _transparency.verify_date(result, self._config.date)
        return result

    def _check_intermediate(self, intermediate: bytes) -> None:
        metadata = metadata_lib.parse_metadata(intermediate)
        if metadata.date != self._config.date:
            raise errors.DateMismatch(
                f"intermediate bundle date {metadata.date} differs from "
                f"{self._config.date}"
            )
        if metadata.commit.lower() != self._config.commit.lower():
            raise errors.CommitMismatch(
                f"intermediate bundle commit {metadata.commit} differs from "
                f"{self._config.commit}"
            )

    def _attestations(self, provenance: bytes, digest: str) -> list[bytes]:
        if provenance:
            return [provenance]
        github = _github.GitHubClient(self._config.client)
        return github.get_attestations(
            self._config.source_repo, digest, cancel=self._cancel
        )

    def _verify_attestation(
        self, attestation: bytes, digest: str
    ) -> _transparency.VerificationResult:
        result = self._verifier().verify_attestation(
            self.policy_config, attestation, digest
        )
        _transparency.verify_date(result, self._config.date)
        _transparency.verify_commit(
            _transparency.attestation_commit(result), self._config.commit
        )
        return result

    def verify(
        self,
        bundle: bytes,
        checksums: bytes,
        checksums_signature: bytes,
        provenance: bytes = b"",
        *,
        intermediate: bytes = b"",
    ) -> VerifyResult:
        """Verifies `bundle` and, optionally, an intermediate bundle.

        Args:
            bundle: The bundle to verify.
            checksums: The content of `checksums.txt`.
            checksums_signature: The Sigstore bundle signing `checksums.txt`.
            provenance: An attestation bundle. When empty, attestations are
              fetched from GitHub.
            intermediate: An intermediate bundle of the same release.

        Returns:
            The verification evidence.

        Raises:
            VerificationFailed: A subclass naming the first failed check.
            MalformedBundle: A bundle header cannot be parsed.
        """
        cosign_result = self._verify_cosign(
            bundle, checksums, checksums_signature
        )

        intermediate_result = None
        if intermediate:
            self._check_intermediate(intermediate)
            intermediate_result = self._verify_cosign(
                intermediate, checksums, checksums_signature
            )

        digest = str(_policy.Digest.of(bundle))
        results = []
        last_error: Optional[errors.TrustBundleError] = None
        for i, attestation in enumerate(self._attestations(provenance, digest)):
            try:
                results.append(self._verify_attestation(attestation, digest))
            except errors.TrustBundleError as err:
                logger.debug("Attestation %d rejected: %s", i, err)
                last_error = err
        if not results:
            raise errors.NoValidAttestation(
                f"no valid attestation found for {digest}: {last_error}"
            ) from last_error

        return VerifyResult(
            policy=self.policy_config,
            cosign_result=cosign_result,
            attestation_results=tuple(results),
            intermediate_cosign_result=intermediate_result,
        )
