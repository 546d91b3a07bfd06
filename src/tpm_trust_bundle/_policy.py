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

"""Verification policies binding evidence to the release workflow.

A bundle is only trusted when its signatures were produced by the release
workflow of the source repository, for the release tag matching the bundle's
date. The identity part of the policy checks, on the Fulcio certificate:

- a URI SAN under `https://github.com/{owner}/{name}/` (case insensitive);
- the OIDC issuer;
- the Build Signer URI, i.e. `{repo}/{workflow}@refs/tags/{tag}`;
- the Source Repository URI.

Two flavors of policy extend the identity with what is signed: the bytes of
an artifact (Cosign signatures) or the digest of an artifact (attestations).
"""

import dataclasses
import hashlib
import re
from typing import BinaryIO, Optional, Union

from cryptography import x509
from sigstore import errors as sigstore_errors
from sigstore.verify import policy as sigstore_policy

from tpm_trust_bundle import _github
from tpm_trust_bundle import errors


DEFAULT_OIDC_ISSUER = "https://token.actions.githubusercontent.com"
DEFAULT_PREDICATE_TYPE = "https://slsa.dev/provenance/v1"

_SUPPORTED_DIGESTS = {
    "sha256": hashlib.sha256().digest_size,
    "sha384": hashlib.sha384().digest_size,
    "sha512": hashlib.sha512().digest_size,
}
_HEX = re.compile(r"^[0-9a-fA-F]+$")


@dataclasses.dataclass
class PolicyConfig:
    """Identity expected from the release workflow.

    Attributes:
        source_repo: The repository publishing bundles.
        build_workflow: Path of the workflow file inside the repository.
        tag: The release tag, which is also the bundle date.
        oidc_issuer: The expected OIDC issuer.
        predicate_type: The expected in-toto predicate type of attestations.
    """

    source_repo: Optional[_github.Repo] = None
    build_workflow: str = ""
    tag: str = ""
    oidc_issuer: str = DEFAULT_OIDC_ISSUER
    predicate_type: str = DEFAULT_PREDICATE_TYPE

    def check_and_set_defaults(self) -> None:
        if self.source_repo is None:
            raise errors.InvalidPolicy("source repository is required")
        try:
            self.source_repo.check_and_set_defaults()
        except errors.ConfigInvalid as err:
            raise errors.InvalidPolicy(str(err)) from err
        if not self.build_workflow:
            raise errors.InvalidPolicy("build workflow is required")
        if not self.tag:
            raise errors.InvalidPolicy("tag is required")
        if not self.oidc_issuer:
            self.oidc_issuer = DEFAULT_OIDC_ISSUER
        if not self.predicate_type:
            self.predicate_type = DEFAULT_PREDICATE_TYPE

    @property
    def repository_uri(self) -> str:
        return f"https://github.com/{self.source_repo}"

    @property
    def build_signer_uri(self) -> str:
        workflow = f"{self.repository_uri}/{self.build_workflow}"
        return f"{workflow}@refs/tags/{self.tag}"

    @property
    def san_pattern(self) -> str:
        owner = re.escape(self.source_repo.owner)
        name = re.escape(self.source_repo.name)
        return rf"^https://github\.com/{owner}/{name}/"


class SubjectAlternativeNameRegex:
    """Requires a URI SAN of the certificate to match a regex."""

    def __init__(self, pattern: str):
        self._pattern = re.compile(pattern, re.IGNORECASE)

    def verify(self, cert: x509.Certificate) -> None:
        try:
            san = cert.extensions.get_extension_for_class(
                x509.SubjectAlternativeName
            ).value
        except x509.ExtensionNotFound as err:
            raise sigstore_errors.VerificationError(
                "Certificate does not contain a Subject Alternative Name"
            ) from err

        uris = san.get_values_for_type(x509.UniformResourceIdentifier)
        if not any(self._pattern.match(uri) for uri in uris):
            raise sigstore_errors.VerificationError(
                f"Certificate's SANs ({', '.join(uris) or 'none'}) do not "
                f"match {self._pattern.pattern}"
            )


def build_identity_policy(
    config: PolicyConfig,
) -> sigstore_policy.VerificationPolicy:
    """Builds the identity part shared by both policy flavors.

    Raises:
        InvalidPolicy: A required field is missing.
    """
    config.check_and_set_defaults()
    return sigstore_policy.AllOf(
        [
            SubjectAlternativeNameRegex(config.san_pattern),
            sigstore_policy.OIDCIssuerV2(config.oidc_issuer),
            sigstore_policy.OIDCBuildSignerURI(config.build_signer_uri),
            sigstore_policy.OIDCSourceRepositoryURI(config.repository_uri),
        ]
    )


@dataclasses.dataclass(frozen=True)
class Digest:
    """An artifact digest, written `algorithm:hex`."""

    algorithm: str
    value: str

    @classmethod
    def parse(cls, text: str) -> "Digest":
        """Parses `algorithm:hex`.

        Raises:
            InvalidPolicy: The string is not a well formed digest.
        """
        algorithm, sep, value = text.partition(":")
        algorithm = algorithm.lower()
        if not sep or not algorithm or not value:
            raise errors.InvalidPolicy(
                f"invalid digest {text!r}: expected 'algorithm:hex'"
            )
        size = _SUPPORTED_DIGESTS.get(algorithm)
        if size is None:
            raise errors.InvalidPolicy(
                f"invalid digest {text!r}: unsupported algorithm {algorithm}"
            )
        if not _HEX.match(value) or len(value) != 2 * size:
            raise errors.InvalidPolicy(
                f"invalid digest {text!r}: not a {algorithm} hex digest"
            )
        return cls(algorithm=algorithm, value=value.lower())

    @classmethod
    def of(cls, data: bytes, algorithm: str = "sha256") -> "Digest":
        value = hashlib.new(algorithm, data).hexdigest()
        return cls(algorithm=algorithm, value=value)

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.value}"


@dataclasses.dataclass(frozen=True)
class CosignPolicy:
    """Binds a keyless signature to the full bytes of an artifact."""

    identity: sigstore_policy.VerificationPolicy
    artifact: bytes


@dataclasses.dataclass(frozen=True)
class AttestationPolicy:
    """Binds an attestation to the digest of an artifact."""

    identity: sigstore_policy.VerificationPolicy
    digest: Digest
    predicate_type: str


def build_cosign_policy(
    artifact: Union[bytes, BinaryIO], config: PolicyConfig
) -> CosignPolicy:
    """Builds the policy for a Cosign signature over `artifact`.

    Args:
        artifact: The signed bytes, or a binary stream to read them from.
        config: The expected identity.

    Raises:
        InvalidPolicy: A required field is missing.
    """
    identity = build_identity_policy(config)
    if not isinstance(artifact, (bytes, bytearray)):
        artifact = artifact.read()
    return CosignPolicy(identity=identity, artifact=bytes(artifact))


def build_attestation_policy(
    digest: str, config: PolicyConfig
) -> AttestationPolicy:
    """Builds the policy for an attestation about the artifact `digest`.

    Raises:
        InvalidPolicy: A required field is missing or the digest is malformed.
    """
    parsed = Digest.parse(digest)
    identity = build_identity_policy(config)
    return AttestationPolicy(
        identity=identity,
        digest=parsed,
        predicate_type=config.predicate_type,
    )
