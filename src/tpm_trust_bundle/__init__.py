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

"""Verified TPM Endorsement Key CA trust bundles.

A bundle is a PEM file listing the root (or intermediate) CA certificates of
TPM vendors, published as a dated GitHub release. Before a bundle is trusted,
its origin is checked with Sigstore:

- `checksums.txt` of the release lists the bundle digest and is signed by the
  release workflow, at the commit and on the date written in the bundle
  header;
- a SLSA provenance attestation for the bundle digest was produced by the
  same workflow, at the same commit and on the same date.

The API is split into:

- `tpm_trust_bundle.api`: getting, verifying, saving and loading bundles.
- `tpm_trust_bundle.trusted_bundle`: the parsed bundle, giving access to
  certificates per vendor, verifying EK certificate chains, and refreshing
  itself in the background.
- `tpm_trust_bundle.vendors`: the TCG TPM vendor registry.
- `tpm_trust_bundle.errors`: every error raised by the package.

Getting the latest bundle uses the local cache (`$HOME/.tpmtb`) when it holds
that release and keeps the bundle up to date every 24 hours:

```python
bundle = tpm_trust_bundle.api.get_trusted_bundle(
    tpm_trust_bundle.api.GetConfig()
)
chain = bundle.verify_certificate(ek_certificate)
bundle.stop()
```

The CLI that maps over the API is `tpmtb`.
"""

from tpm_trust_bundle import api
from tpm_trust_bundle import errors
from tpm_trust_bundle import trusted_bundle
from tpm_trust_bundle import vendors


__version__ = "0.1.0"


__all__ = ["api", "errors", "trusted_bundle", "vendors"]
