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

"""Configuration listing the certificates to include in a generated bundle.

The configuration is a YAML document:

```yaml
version: "alpha"
vendors:
  - id: IFX
    name: Infineon
    certificates:
      - name: Infineon OPTIGA(TM) RSA Root CA
        uri: https://pki.infineon.com/OptigaRsaRootCA/OptigaRsaRootCA.crt
        validation:
          fingerprint:
            sha256: AA:BB:...
      - name: Local copy
        uri: file:///{repo}/certs/local.cer
        validation:
          fingerprint:
            sha1: aabb...
```

The `{repo}` placeholder in `file://` URIs stands for the directory holding
the configuration file.
"""

import dataclasses
import hashlib
import hmac
import pathlib
import threading
from typing import Any, Optional
from urllib import parse

from cryptography import x509
import yaml

from tpm_trust_bundle import _http
from tpm_trust_bundle import errors
from tpm_trust_bundle import vendors
from tpm_trust_bundle._bundle import codec


REPO_PLACEHOLDER = "{repo}"

# Strongest first.
_FINGERPRINT_ALGORITHMS = ("sha512", "sha384", "sha256", "sha1")
_SUPPORTED_SCHEMES = ("https", "file")


def _normalize_hex(value: str) -> str:
    return value.replace(":", "").replace(" ", "").lower()


@dataclasses.dataclass
class Fingerprint:
    """Expected digests of a certificate; at least one must be set."""

    sha1: str = ""
    sha256: str = ""
    sha384: str = ""
    sha512: str = ""

    def check_and_set_defaults(self) -> None:
        if not any(getattr(self, alg) for alg in _FINGERPRINT_ALGORITHMS):
            raise errors.ConfigInvalid(
                "at least one fingerprint (sha1, sha256, sha384, sha512) must "
                "be provided"
            )

    def digests(self) -> list[tuple[str, str]]:
        """Returns `(algorithm, lowercase hex)` for every digest set."""
        return [
            (alg, _normalize_hex(getattr(self, alg)))
            for alg in _FINGERPRINT_ALGORITHMS
            if getattr(self, alg)
        ]

    def strongest(self) -> tuple[str, str]:
        """Returns the value and algorithm of the strongest digest set."""
        for alg in _FINGERPRINT_ALGORITHMS:
            value = getattr(self, alg)
            if value:
                return value, alg
        return "", "sha1"

    def validate(self, der: bytes) -> None:
        """Checks `der` against the strongest configured digest.

        Raises:
            ConfigInvalid: The configured fingerprint is not hex.
            ChecksumMismatch: The certificate does not match.
        """
        expected_text, alg = self.strongest()
        cleaned = _normalize_hex(expected_text)
        try:
            expected = bytes.fromhex(cleaned)
        except ValueError as err:
            raise errors.ConfigInvalid(
                f"invalid fingerprint format {expected_text!r}: {err}"
            ) from err

        actual = hashlib.new(alg, der).digest()
        if not hmac.compare_digest(actual, expected):
            raise errors.ChecksumMismatch(
                f"fingerprint mismatch: expected "
                f"{codec.format_fingerprint(expected)}, got "
                f"{codec.format_fingerprint(actual)}"
            )


@dataclasses.dataclass
class Certificate:
    """A certificate to download, and how to check it."""

    name: str
    uri: str
    fingerprint: Fingerprint

    def check_and_set_defaults(self) -> None:
        if not self.name:
            raise errors.ConfigInvalid("'name' cannot be empty")
        if not self.uri:
            raise errors.ConfigInvalid("either 'url' or 'uri' must be provided")
        scheme = parse.urlparse(self.uri).scheme
        if scheme not in _SUPPORTED_SCHEMES:
            raise errors.ConfigInvalid(
                f"invalid uri scheme {scheme!r}: must be 'https' or 'file'"
            )
        try:
            self.fingerprint.check_and_set_defaults()
        except errors.ConfigInvalid as err:
            raise errors.ConfigInvalid(f"validation: {err}") from err

    @property
    def is_remote(self) -> bool:
        return self.uri.startswith("https://")


@dataclasses.dataclass
class Vendor:
    """A vendor and the certificates it owns."""

    id: vendors.VendorID
    name: str
    certificates: list[Certificate] = dataclasses.field(default_factory=list)

    def check_and_set_defaults(self) -> None:
        if not self.name:
            raise errors.ConfigInvalid("'name' cannot be empty")
        for i, certificate in enumerate(self.certificates):
            try:
                certificate.check_and_set_defaults()
            except errors.ConfigInvalid as err:
                label = (
                    f"certificate.name: {certificate.name}"
                    if certificate.name
                    else f"certificate[{i}]"
                )
                raise errors.ConfigInvalid(f"{label}: {err}") from err


@dataclasses.dataclass
class GenerateConfig:
    """The full list of vendors and certificates of a bundle."""

    version: str
    vendors: list[Vendor] = dataclasses.field(default_factory=list)

    def check_and_set_defaults(self) -> None:
        if not self.version:
            raise errors.ConfigInvalid("'version' cannot be empty")
        if not self.vendors:
            raise errors.ConfigInvalid("at least one vendor must be defined")
        for i, vendor in enumerate(self.vendors):
            try:
                vendor.check_and_set_defaults()
            except errors.ConfigInvalid as err:
                label = (
                    f"vendor.name: {vendor.name}"
                    if vendor.name
                    else f"vendor[{i}]"
                )
                raise errors.ConfigInvalid(f"{label}: {err}") from err
        self._check_duplicates()

    def _check_duplicates(self) -> None:
        """Rejects a vendor or certificate listed twice.

        A certificate is a duplicate when its URI, or any of its digests,
        matches one of a certificate seen before it.
        """
        seen_vendors = set()
        seen_uris: dict[str, str] = {}
        seen_digests: dict[tuple[str, str], str] = {}
        for vendor in self.vendors:
            if vendor.id in seen_vendors:
                raise errors.ConfigInvalid(
                    f"duplicate vendor ID {vendor.id.value!r}"
                )
            seen_vendors.add(vendor.id)
            for certificate in vendor.certificates:
                label = f"certificate.name: {certificate.name}"
                if certificate.uri in seen_uris:
                    raise errors.ConfigInvalid(
                        f"{label}: duplicate URI {certificate.uri!r}, "
                        f"already used by {seen_uris[certificate.uri]!r}"
                    )
                seen_uris[certificate.uri] = certificate.name
                for digest in certificate.fingerprint.digests():
                    if digest in seen_digests:
                        raise errors.ConfigInvalid(
                            f"{label}: duplicate {digest[0]} fingerprint, "
                            f"matches {seen_digests[digest]!r}"
                        )
                    seen_digests[digest] = certificate.name

    @property
    def total_certificates(self) -> int:
        return sum(len(vendor.certificates) for vendor in self.vendors)


def _as_mapping(value: Any, what: str) -> dict:
    if not isinstance(value, dict):
        raise errors.ConfigInvalid(f"{what} must be a mapping")
    return value


def _parse_certificate(raw: Any) -> Certificate:
    raw = _as_mapping(raw, "certificate")
    validation = _as_mapping(raw.get("validation") or {}, "validation")
    fingerprint = _as_mapping(
        validation.get("fingerprint") or {}, "fingerprint"
    )
    return Certificate(
        name=str(raw.get("name") or ""),
        # `url` is the older spelling of `uri`.
        uri=str(raw.get("uri") or raw.get("url") or ""),
        fingerprint=Fingerprint(
            **{
                alg: str(fingerprint.get(alg) or "")
                for alg in _FINGERPRINT_ALGORITHMS
            }
        ),
    )


def _parse_vendor(raw: Any) -> Vendor:
    raw = _as_mapping(raw, "vendor")
    return Vendor(
        id=vendors.VendorID.parse(str(raw.get("id") or "")),
        name=str(raw.get("name") or ""),
        certificates=[
            _parse_certificate(c) for c in raw.get("certificates") or []
        ],
    )


def _resolve_placeholders(config: GenerateConfig, source_dir: pathlib.Path):
    root = str(source_dir.resolve())
    for vendor in config.vendors:
        for certificate in vendor.certificates:
            if certificate.is_remote:
                continue
            parsed = parse.urlparse(certificate.uri)
            path = parsed.path.replace("/" + REPO_PLACEHOLDER, root)
            certificate.uri = f"{parsed.scheme}://{path}"


def loads(content: str, source_dir: Optional[pathlib.Path] = None):
    """Parses and validates a configuration document.

    Args:
        content: The YAML document.
        source_dir: Directory substituted for `{repo}` in file URIs. Left
          untouched if missing.

    Returns:
        The validated `GenerateConfig`.

    Raises:
        ConfigInvalid: The document is not valid YAML or fails validation.
    """
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise errors.ConfigInvalid(f"failed to parse YAML: {err}") from err

    raw = _as_mapping(raw or {}, "configuration")
    config = GenerateConfig(
        version=str(raw.get("version") or ""),
        vendors=[_parse_vendor(v) for v in raw.get("vendors") or []],
    )
    try:
        config.check_and_set_defaults()
    except errors.ConfigInvalid as err:
        raise errors.ConfigInvalid(f"invalid configuration: {err}") from err

    if source_dir is not None:
        _resolve_placeholders(config, source_dir)
    return config


def load(path: pathlib.Path) -> GenerateConfig:
    """Reads a configuration file, resolving `{repo}` to its directory."""
    path = pathlib.Path(path)
    try:
        content = path.read_text()
    except OSError as err:
        raise errors.ConfigInvalid(
            f"failed to read config file {path}: {err}"
        ) from err
    return loads(content, source_dir=path.parent)


def parse_certificate(data: bytes) -> x509.Certificate:
    """Parses a certificate encoded as DER, or as PEM as a fallback."""
    try:
        return x509.load_der_x509_certificate(data)
    except ValueError:
        pass
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as err:
        raise errors.MalformedBundle(
            "failed to decode PEM block and DER parsing also failed"
        ) from err


class CertificateSource:
    """Fetches certificate bytes from `https://` or `file://` locations."""

    def __init__(self, client: Optional[_http.HttpClient] = None):
        self._client = client or _http.HttpClient()

    def fetch(
        self, uri: str, *, cancel: Optional[threading.Event] = None
    ) -> bytes:
        parsed = parse.urlparse(uri)
        if parsed.scheme == "https":
            return self._client.get(uri, cancel=cancel)
        if parsed.scheme == "file":
            path = pathlib.Path(parse.unquote(parsed.netloc + parsed.path))
            if not path.is_absolute():
                raise errors.ConfigInvalid(
                    f"relative paths are not supported: {uri}"
                )
            try:
                return path.read_bytes()
            except FileNotFoundError as err:
                raise errors.NotFound(f"failed to read file {path}") from err
            except OSError as err:
                raise errors.ConfigInvalid(
                    f"failed to read file {path}: {err}"
                ) from err
        raise errors.ConfigInvalid(f"unsupported uri scheme: {uri}")

    def download_certificate(
        self, uri: str, *, cancel: Optional[threading.Event] = None
    ) -> x509.Certificate:
        data = self.fetch(uri, cancel=cancel)
        try:
            return parse_certificate(data)
        except errors.MalformedBundle as err:
            raise errors.MalformedBundle(
                f"failed to parse certificate from {uri}: {err}"
            ) from err
