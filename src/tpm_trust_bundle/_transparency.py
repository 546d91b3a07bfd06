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

"""Keyless verification of checksum signatures and attestations.

Two kinds of evidence accompany each release:

- a Cosign keyless signature over `checksums.txt`, from which the digest of
  each bundle is read;
- GitHub attestations: DSSE envelopes holding SLSA provenance statements
  about the bundle digest.

Both are Sigstore bundles and are verified against the trusted root with
fixed evidence requirements: a signed certificate timestamp on the signing
certificate, a Rekor entry and an observer timestamp.
"""

import dataclasses
import datetime
import hashlib
import hmac
import json
import logging
from typing import Any, Optional

from cryptography import x509
from pyasn1.codec.der.decoder import decode as der_decode
from pyasn1.error import PyAsn1Error
from pyasn1.type.char import UTF8String
from sigstore import errors as sigstore_errors
from sigstore import models as sigstore_models
from sigstore import verify as sigstore_verifier

from tpm_trust_bundle import _policy
from tpm_trust_bundle import errors


logger = logging.getLogger(__name__)

IN_TOTO_PAYLOAD_TYPE = "application/vnd.in-toto+json"

# Evidence every bundle must carry. Not configurable.
SCT_THRESHOLD = 1
TLOG_THRESHOLD = 1
OBSERVER_TIMESTAMP_THRESHOLD = 1

SOURCE_REPOSITORY_DIGEST_OID = x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.13")


@dataclasses.dataclass(frozen=True)
class VerificationResult:
    """The outcome of verifying one Sigstore bundle.

    Attributes:
        certificate: The verified signing certificate.
        timestamps: Verified transparency log timestamps, oldest first, UTC.
        statement: The in-toto statement, for attestations.
        payload_type: The DSSE payload type, for attestations.
    """

    certificate: x509.Certificate
    timestamps: tuple[datetime.datetime, ...]
    statement: Optional[dict[str, Any]] = None
    payload_type: Optional[str] = None

    @property
    def earliest_timestamp(self) -> datetime.datetime:
        return self.timestamps[0]


def _der_decode_utf8string(der: bytes) -> str:
    return der_decode(der, UTF8String)[0].decode()


def source_repository_digest(cert: x509.Certificate) -> str:
    """Returns the commit the signing workflow ran on.

    Raises:
        CommitMismatch: The certificate has no Source Repository Digest.
    """
    try:
        extension = cert.extensions.get_extension_for_oid(
            SOURCE_REPOSITORY_DIGEST_OID
        )
        return _der_decode_utf8string(extension.value.public_bytes())
    except x509.ExtensionNotFound as err:
        raise errors.CommitMismatch(
            "git commit not found in certificate extensions"
        ) from err
    except PyAsn1Error as err:
        raise errors.CommitMismatch(
            f"invalid Source Repository Digest extension: {err}"
        ) from err


def parse_checksums(data: bytes) -> dict[str, str]:
    """Parses a `<hex>  <filename>` checksum manifest."""
    checksums = {}
    for line in data.decode("utf-8", errors="replace").splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        checksums.setdefault(fields[-1], fields[0].lower())
    return checksums


def verify_checksum_entry(
    checksum_data: bytes, artifact_data: bytes, artifact_name: str
) -> None:
    """Checks that `artifact_data` matches its line of the manifest.

    Raises:
        ArtifactMissingFromChecksums: No line names `artifact_name`.
        ChecksumMismatch: The SHA-256 digest differs.
    """
    expected = parse_checksums(checksum_data).get(artifact_name)
    if expected is None:
        raise errors.ArtifactMissingFromChecksums(
            f"{artifact_name} not found in checksums file"
        )
    actual = hashlib.sha256(artifact_data).hexdigest()
    if not hmac.compare_digest(expected, actual):
        raise errors.ChecksumMismatch(
            f"checksum mismatch for {artifact_name}: expected {expected}, got "
            f"{actual}"
        )


def _tlog_timestamps(bundle_data: bytes) -> list[datetime.datetime]:
    """Reads the integrated times of the Rekor entries of a bundle."""
    document = json.loads(bundle_data)
    entries = (document.get("verificationMaterial") or {}).get(
        "tlogEntries"
    ) or []
    timestamps = []
    for entry in entries:
        # Sigstore only vouches for integratedTime through the signed
        # entry timestamp of an inclusion promise.
        promise = entry.get("inclusionPromise") or {}
        if not promise.get("signedEntryTimestamp"):
            continue
        integrated = entry.get("integratedTime")
        if integrated in (None, "", "0", 0):
            continue
        timestamps.append(
            datetime.datetime.fromtimestamp(
                int(integrated), tz=datetime.timezone.utc
            )
        )
    return sorted(timestamps)


def _check_evidence(
    certificate: x509.Certificate, bundle_data: bytes
) -> tuple[datetime.datetime, ...]:
    try:
        scts = certificate.extensions.get_extension_for_class(
            x509.PrecertificateSignedCertificateTimestamps
        ).value
    except x509.ExtensionNotFound:
        scts = []
    if len(scts) < SCT_THRESHOLD:
        raise errors.SignatureInvalid(
            "signing certificate carries no signed certificate timestamp"
        )

    try:
        entries = (
            json.loads(bundle_data).get("verificationMaterial") or {}
        ).get("tlogEntries") or []
        timestamps = _tlog_timestamps(bundle_data)
    except (ValueError, TypeError, AttributeError) as err:
        raise errors.SignatureInvalid(
            f"invalid transparency log entries: {err}"
        ) from err
    if len(entries) < TLOG_THRESHOLD:
        raise errors.SignatureInvalid("bundle has no transparency log entry")
    if len(timestamps) < OBSERVER_TIMESTAMP_THRESHOLD:
        raise errors.SignatureInvalid("bundle has no verified timestamp")
    return tuple(timestamps)


def _classify_failure(
    err: sigstore_errors.VerificationError,
    identity,
    certificate: x509.Certificate,
) -> errors.TrustBundleError:
    """Tells apart identity mismatches from cryptographic failures."""
    try:
        identity.verify(certificate)
    except sigstore_errors.VerificationError as identity_err:
        return errors.UntrustedIdentity(
            f"certificate identity does not match policy: {identity_err}"
        )
    return errors.SignatureInvalid(f"signature verification failed: {err}")


def _load_bundle(data: bytes) -> sigstore_models.Bundle:
    try:
        return sigstore_models.Bundle.from_json(data)
    except Exception as err:
        raise errors.SignatureInvalid(
            f"failed to parse Sigstore bundle: {err}"
        ) from err


class TransparencyVerifier:
    """Verifies Sigstore bundles against a fixed trusted root."""

    def __init__(self, trusted_root: sigstore_models.TrustedRoot):
        self._verifier = sigstore_verifier.Verifier(trusted_root=trusted_root)

    def verify_checksum(
        self,
        policy_config: _policy.PolicyConfig,
        checksum_data: bytes,
        signature_bundle_data: bytes,
        artifact_data: bytes,
        artifact_name: str,
    ) -> VerificationResult:
        """Verifies the signed checksum manifest, then one artifact in it.

        Args:
            policy_config: The expected signing identity.
            checksum_data: The content of `checksums.txt`.
            signature_bundle_data: The Sigstore bundle signing the manifest.
            artifact_data: The artifact to check against the manifest.
            artifact_name: The name of the artifact in the manifest.

        Returns:
            The verification result of the signature.

        Raises:
            SignatureInvalid: The signature does not verify.
            UntrustedIdentity: The signer is not the release workflow.
            ArtifactMissingFromChecksums: The artifact is not listed.
            ChecksumMismatch: The artifact digest differs from the manifest.
        """
        bundle = _load_bundle(signature_bundle_data)
        policy = _policy.build_cosign_policy(checksum_data, policy_config)
        certificate = bundle.signing_certificate
        try:
            self._verifier.verify_artifact(
                policy.artifact, bundle, policy.identity
            )
        except sigstore_errors.VerificationError as err:
            raise _classify_failure(err, policy.identity, certificate) from err

        timestamps = _check_evidence(certificate, signature_bundle_data)
        verify_checksum_entry(checksum_data, artifact_data, artifact_name)
        logger.debug("Verified checksum of %s", artifact_name)
        return VerificationResult(
            certificate=certificate, timestamps=timestamps
        )

    def verify_attestation(
        self,
        policy_config: _policy.PolicyConfig,
        attestation_bundle: bytes,
        artifact_digest: str,
    ) -> VerificationResult:
        """Verifies a provenance attestation about `artifact_digest`.

        Args:
            policy_config: The expected signing identity.
            attestation_bundle: The Sigstore bundle holding the DSSE envelope.
            artifact_digest: The attested artifact, as `algorithm:hex`.

        Returns:
            The verification result, including the in-toto statement.

        Raises:
            InvalidPolicy: The digest is malformed.
            SignatureInvalid: The envelope does not verify, or the statement
              is not about `artifact_digest`.
            UntrustedIdentity: The signer is not the release workflow.
        """
        policy = _policy.build_attestation_policy(
            artifact_digest, policy_config
        )
        bundle = _load_bundle(attestation_bundle)
        certificate = bundle.signing_certificate
        try:
            payload_type, payload = self._verifier.verify_dsse(
                bundle, policy.identity
            )
        except sigstore_errors.VerificationError as err:
            raise _classify_failure(err, policy.identity, certificate) from err

        if payload_type != IN_TOTO_PAYLOAD_TYPE:
            raise errors.SignatureInvalid(
                f"unexpected DSSE payload type {payload_type!r}"
            )
        try:
            statement = json.loads(payload)
        except ValueError as err:
            raise errors.SignatureInvalid(
                f"invalid in-toto statement: {err}"
            ) from err
        _check_statement(statement, policy)

        timestamps = _check_evidence(certificate, attestation_bundle)
        return VerificationResult(
            certificate=certificate,
            timestamps=timestamps,
            statement=statement,
            payload_type=payload_type,
        )


def _check_statement(
    statement: Any, policy: _policy.AttestationPolicy
) -> None:
    if not isinstance(statement, dict):
        raise errors.SignatureInvalid("in-toto statement is not an object")

    predicate_type = statement.get("predicateType")
    if predicate_type != policy.predicate_type:
        raise errors.SignatureInvalid(
            f"unexpected predicate type {predicate_type!r}, expected "
            f"{policy.predicate_type!r}"
        )

    for subject in statement.get("subject") or []:
        digest = (subject.get("digest") or {}).get(policy.digest.algorithm)
        if digest and digest.lower() == policy.digest.value:
            return
    raise errors.SignatureInvalid(
        f"attestation is not about artifact {policy.digest}"
    )


def attestation_commit(result: VerificationResult) -> str:
    """Reads the source commit from a SLSA v1 provenance statement.

    Raises:
        CommitMismatch: The statement does not name a commit.
    """
    try:
        predicate = result.statement["predicate"]
        dependency = predicate["buildDefinition"]["resolvedDependencies"][0]
        commit = dependency["digest"]["gitCommit"]
    except (KeyError, IndexError, TypeError) as err:
        raise errors.CommitMismatch(
            "git commit not found in attestation"
        ) from err
    if not commit:
        raise errors.CommitMismatch("git commit not found in attestation")
    return commit


def verify_commit(actual: str, expected: str) -> None:
    """Compares two commits, ignoring case.

    Raises:
        CommitMismatch: The commits differ.
    """
    if actual.lower() != expected.lower():
        raise errors.CommitMismatch(
            f"commit mismatch: expected {expected}, got {actual}"
        )


def verify_date(result: VerificationResult, expected_date: str) -> None:
    """Compares the earliest log timestamp, as a UTC date, with a date.

    Raises:
        DateMismatch: The dates differ, or there is no timestamp.
    """
    if not result.timestamps:
        raise errors.DateMismatch("no verified timestamps found")
    timestamp = result.earliest_timestamp.astimezone(datetime.timezone.utc)
    actual = timestamp.strftime("%Y-%m-%d")
    if actual != expected_date:
        raise errors.DateMismatch(
            f"date mismatch between tag and Rekor entry: expected "
            f"{expected_date}, got {actual} (full timestamp: "
            f"{timestamp.isoformat()})"
        )
