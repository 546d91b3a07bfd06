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

"""Errors raised by the `tpm_trust_bundle` library.

Every error derives from `TrustBundleError`, which is itself a `ValueError`,
so callers can either catch the broad class or a specific kind:

```python
try:
    tb = tpm_trust_bundle.api.get_trusted_bundle(config)
except tpm_trust_bundle.errors.CommitMismatch:
    ...
except tpm_trust_bundle.errors.TrustBundleError:
    ...
```
"""

from typing import Optional


class TrustBundleError(ValueError):
    """Base class for all errors raised by this library."""


class ConfigInvalid(TrustBundleError):
    """A configuration value is missing or malformed."""


class InvalidPolicy(ConfigInvalid):
    """A verification policy cannot be built from the given inputs."""


class NetworkError(TrustBundleError):
    """A transport failure that was not recovered by retrying."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TooLarge(TrustBundleError):
    """A response exceeded the configured byte ceiling."""


class NotFound(TrustBundleError):
    """A release, asset or file is absent."""


class Cancelled(TrustBundleError):
    """A network operation observed a cancellation request."""


class VerificationFailed(TrustBundleError):
    """Base class of every failure to verify the origin of a bundle."""


class MalformedBundle(TrustBundleError):
    """The bundle header or one of its certificate blocks was rejected."""


class SignatureInvalid(VerificationFailed):
    """Transparency verification failed before identity checks."""


class UntrustedIdentity(VerificationFailed):
    """The signing identity does not match the expected policy."""


class UntrustedRoot(UntrustedIdentity):
    """The Sigstore trusted root is not issued by the expected organization."""


class ChecksumMismatch(VerificationFailed):
    """An artifact hash does not match the signed checksum manifest."""


class ArtifactMissingFromChecksums(VerificationFailed):
    """An artifact name is absent from the checksum manifest."""


class CommitMismatch(VerificationFailed):
    """The commit bound to the evidence differs from the bundle's commit."""


class DateMismatch(VerificationFailed):
    """The transparency log date differs from the bundle's date."""


class NoValidAttestation(VerificationFailed):
    """Every attestation failed at least one check."""


class CertificateInvalid(TrustBundleError):
    """A certificate does not chain up to a root of the trusted bundle."""


class CachingDisabled(TrustBundleError):
    """Persisting was requested for a bundle created with caching disabled."""


class CacheIncomplete(TrustBundleError):
    """The cache lacks files required for the configured verification mode."""


class PersistFailed(TrustBundleError):
    """Bundle assets could not be written to disk."""


class Timeout(TrustBundleError):
    """A bounded wait expired."""
