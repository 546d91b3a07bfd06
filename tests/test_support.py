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

"""Helpers and constants used in fixtures and tests. Not in the public API."""

from collections.abc import Iterable, Sequence
import base64
import datetime
import hashlib
import json
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
import requests

from tpm_trust_bundle import _github
from tpm_trust_bundle import _policy
from tpm_trust_bundle import _transparency
from tpm_trust_bundle import vendors
from tpm_trust_bundle._bundle import codec
from tpm_trust_bundle._bundle import metadata as metadata_lib


KNOWN_DATE = "2025-12-05"
KNOWN_COMMIT = "7422b99b8a4c3f5e6d7c8b9a0f1e2d3c4b5a6978"
OLDER_DATE = "2025-12-03"
OLDER_COMMIT = "1111111111111111111111111111111111111111"
TAMPERED_COMMIT = "a" * 40

REPO = _github.SOURCE_REPO
API = f"{_github.API_BASE_URL}/repos/{REPO}"
DOWNLOADS = f"{_github.DOWNLOAD_BASE_URL}/{REPO}/releases/download"

OIDC_ISSUER_OID = x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.8")
BUILD_SIGNER_URI_OID = x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.9")
SOURCE_REPOSITORY_URI_OID = x509.ObjectIdentifier("1.3.6.1.4.1.57264.1.12")
SCT_OID = x509.ObjectIdentifier("1.3.6.1.4.1.11129.2.4.2")
TPM_CRITICAL_OID = x509.ObjectIdentifier("2.23.133.8.1")

_NOW = datetime.datetime.now(datetime.timezone.utc)


def _der_length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    encoded = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(encoded)]) + encoded


def der_utf8_string(value: str) -> bytes:
    data = value.encode("utf-8")
    return b"\x0c" + _der_length(len(data)) + data


def _sct_list() -> bytes:
    """A DER OCTET STRING holding one well formed (unsigned) SCT."""
    sct = (
        b"\x00"  # v1
        + b"\x11" * 32  # log id
        + (1_764_936_000_000).to_bytes(8, "big")
        + b"\x00\x00"  # no extensions
        + b"\x04\x03"  # sha256, ecdsa
        + (8).to_bytes(2, "big")
        + b"\x30\x06\x02\x01\x01\x02\x01\x01"
    )
    entries = len(sct).to_bytes(2, "big") + sct
    tls = len(entries).to_bytes(2, "big") + entries
    return b"\x04" + _der_length(len(tls)) + tls


def make_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def make_certificate(
    common_name: str,
    *,
    key: Optional[ec.EllipticCurvePrivateKey] = None,
    issuer: Optional[x509.Certificate] = None,
    issuer_key: Optional[ec.EllipticCurvePrivateKey] = None,
    ca: Optional[bool] = True,
    not_before: Optional[datetime.datetime] = None,
    not_after: Optional[datetime.datetime] = None,
    serial_number: Optional[int] = None,
    extensions: Sequence[tuple[x509.ExtensionType, bool]] = (),
) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    """Creates a certificate, self-signed unless an issuer is given.

    With `ca=None`, the certificate has no basic constraints at all.
    """
    key = key or make_key()
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test TPM Vendor"),
        ]
    )
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.subject if issuer is not None else subject)
        .public_key(key.public_key())
        .serial_number(serial_number or x509.random_serial_number())
        .not_valid_before(not_before or _NOW - datetime.timedelta(days=1))
        .not_valid_after(not_after or _NOW + datetime.timedelta(days=365))
    )
    if ca is not None:
        builder = builder.add_extension(
            x509.BasicConstraints(ca=ca, path_length=None), critical=True
        )
    for extension, critical in extensions:
        builder = builder.add_extension(extension, critical=critical)
    certificate = builder.sign(issuer_key or key, hashes.SHA256())
    return certificate, key


def make_bundle(
    certificates: Iterable[tuple[x509.Certificate, str, vendors.VendorID]],
    *,
    date: str = KNOWN_DATE,
    commit: str = KNOWN_COMMIT,
    bundle_type: metadata_lib.BundleType = metadata_lib.BundleType.ROOT,
) -> bytes:
    entries = [
        codec.CertificateEntry.from_certificate(cert, name=name, owner=owner)
        for cert, name, owner in certificates
    ]
    return codec.encode_bundle(
        entries, date=date, commit=commit, bundle_type=bundle_type
    )


def make_signing_certificate(
    *, commit: str = KNOWN_COMMIT, tag: str = KNOWN_DATE, sct: bool = True
) -> x509.Certificate:
    """A Fulcio-like certificate issued to the release workflow."""
    config = _policy.PolicyConfig(
        source_repo=REPO,
        build_workflow=_github.RELEASE_BUNDLE_WORKFLOW_PATH,
        tag=tag,
    )
    extensions = [
        (
            x509.SubjectAlternativeName(
                [x509.UniformResourceIdentifier(config.build_signer_uri)]
            ),
            True,
        ),
        (
            x509.UnrecognizedExtension(
                OIDC_ISSUER_OID, der_utf8_string(config.oidc_issuer)
            ),
            False,
        ),
        (
            x509.UnrecognizedExtension(
                BUILD_SIGNER_URI_OID, der_utf8_string(config.build_signer_uri)
            ),
            False,
        ),
        (
            x509.UnrecognizedExtension(
                SOURCE_REPOSITORY_URI_OID,
                der_utf8_string(config.repository_uri),
            ),
            False,
        ),
        (
            x509.UnrecognizedExtension(
                _transparency.SOURCE_REPOSITORY_DIGEST_OID,
                der_utf8_string(commit),
            ),
            False,
        ),
    ]
    if sct:
        extensions.append(
            (x509.UnrecognizedExtension(SCT_OID, _sct_list()), False)
        )
    certificate, _ = make_certificate(
        "sigstore-intermediate", ca=False, extensions=extensions
    )
    return certificate


def epoch_of(date: str, hour: int = 12) -> int:
    day = datetime.date.fromisoformat(date)
    moment = datetime.datetime(
        day.year, day.month, day.day, hour, tzinfo=datetime.timezone.utc
    )
    return int(moment.timestamp())


def sigstore_bundle(
    certificate: x509.Certificate,
    *,
    signed_on: str = KNOWN_DATE,
    statement: Optional[dict] = None,
) -> bytes:
    """A Sigstore bundle JSON document understood by `FakeSigstoreBundle`.

    Only the transparency log entries are real; the certificate is carried
    as PEM and the in-toto statement in clear.
    """
    document = {
        "mediaType": "application/vnd.dev.sigstore.bundle.v0.3+json",
        "verificationMaterial": {
            "tlogEntries": [
                {
                    "integratedTime": str(epoch_of(signed_on)),
                    "inclusionPromise": {
                        "signedEntryTimestamp": base64.b64encode(
                            b"signed entry timestamp"
                        ).decode()
                    },
                }
            ],
        },
        "testCertificate": certificate.public_bytes(
            serialization.Encoding.PEM
        ).decode("ascii"),
    }
    if statement is not None:
        document["testStatement"] = statement
    return json.dumps(document).encode("utf-8")


def provenance_statement(
    artifacts: Iterable[bytes], *, commit: str = KNOWN_COMMIT
) -> dict:
    return {
        "_type": "https://in-toto.io/Statement/v1",
        "subject": [
            {
                "name": "bundle",
                "digest": {"sha256": hashlib.sha256(a).hexdigest()},
            }
            for a in artifacts
            if a
        ],
        "predicateType": _policy.DEFAULT_PREDICATE_TYPE,
        "predicate": {
            "buildDefinition": {
                "resolvedDependencies": [
                    {"digest": {"gitCommit": commit}},
                ],
            },
        },
    }


class FakeSigstoreBundle:
    """Stands in for `sigstore.models.Bundle`."""

    def __init__(self, document: dict):
        self.document = document
        self.signing_certificate = x509.load_pem_x509_certificate(
            document["testCertificate"].encode("ascii")
        )

    @classmethod
    def from_json(cls, data: Union[bytes, str]) -> "FakeSigstoreBundle":
        return cls(json.loads(data))


def fake_verify_dsse(bundle: FakeSigstoreBundle, policy):
    """Replacement for `sigstore.verify.Verifier.verify_dsse`."""
    return (
        _transparency.IN_TOTO_PAYLOAD_TYPE,
        json.dumps(bundle.document["testStatement"]).encode("utf-8"),
    )


class Release:
    """All assets of a release, signed by a fake release workflow."""

    def __init__(
        self,
        date: str = KNOWN_DATE,
        commit: str = KNOWN_COMMIT,
        *,
        signed_on: Optional[str] = None,
        certificate_commit: Optional[str] = None,
        with_intermediate: bool = True,
    ):
        self.date = date
        self.commit = commit
        signed_on = signed_on or date

        ifx_root, ifx_key = make_certificate("IFX Root CA")
        ntc_root, _ = make_certificate("NTC Root CA")
        ifx_intermediate, ifx_intermediate_key = make_certificate(
            "IFX Intermediate CA", issuer=ifx_root, issuer_key=ifx_key
        )
        self.roots = {vendors.IFX: ifx_root, vendors.NTC: ntc_root}
        self.intermediate = ifx_intermediate
        self.ek_certificate, _ = make_certificate(
            "IFX EK",
            ca=False,
            issuer=ifx_intermediate,
            issuer_key=ifx_intermediate_key,
            extensions=[
                (
                    x509.UnrecognizedExtension(TPM_CRITICAL_OID, b"\x05\x00"),
                    True,
                )
            ],
        )

        self.root_bundle = make_bundle(
            [
                (ifx_root, "IFX Root CA", vendors.IFX),
                (ntc_root, "NTC Root CA", vendors.NTC),
            ],
            date=date,
            commit=commit,
        )
        self.intermediate_bundle = b""
        if with_intermediate:
            self.intermediate_bundle = make_bundle(
                [(ifx_intermediate, "IFX Intermediate CA", vendors.IFX)],
                date=date,
                commit=commit,
                bundle_type=metadata_lib.BundleType.INTERMEDIATE,
            )

        lines = [
            f"{hashlib.sha256(self.root_bundle).hexdigest()}  "
            f"{metadata_lib.ROOT_BUNDLE_FILENAME}"
        ]
        if with_intermediate:
            lines.append(
                f"{hashlib.sha256(self.intermediate_bundle).hexdigest()}  "
                f"{metadata_lib.INTERMEDIATE_BUNDLE_FILENAME}"
            )
        self.checksums = ("\n".join(lines) + "\n").encode("utf-8")

        self.signing_certificate = make_signing_certificate(
            commit=certificate_commit or commit, tag=date
        )
        self.checksums_signature = sigstore_bundle(
            self.signing_certificate, signed_on=signed_on
        )
        self.provenance = sigstore_bundle(
            self.signing_certificate,
            signed_on=signed_on,
            statement=provenance_statement(
                [self.root_bundle, self.intermediate_bundle], commit=commit
            ),
        )

    @property
    def digest(self) -> str:
        return f"sha256:{hashlib.sha256(self.root_bundle).hexdigest()}"

    def routes(self) -> dict[str, bytes]:
        """URL to body, for every request a client may make."""
        assets = {
            metadata_lib.ROOT_BUNDLE_FILENAME: self.root_bundle,
            "checksums.txt": self.checksums,
            "checksums.txt.sigstore.json": self.checksums_signature,
        }
        if self.intermediate_bundle:
            assets[metadata_lib.INTERMEDIATE_BUNDLE_FILENAME] = (
                self.intermediate_bundle
            )
        routes = {
            f"{DOWNLOADS}/{self.date}/{name}": data
            for name, data in assets.items()
        }
        routes[f"{API}/releases/tags/{self.date}"] = json.dumps(
            {"tag_name": self.date}
        ).encode()
        attestations = {
            "attestations": [{"bundle": json.loads(self.provenance)}]
        }
        for artifact in (self.root_bundle, self.intermediate_bundle):
            if artifact:
                digest = hashlib.sha256(artifact).hexdigest()
                routes[f"{API}/attestations/sha256:{digest}"] = json.dumps(
                    attestations
                ).encode()
        return routes


def releases_listing(*releases: Release) -> bytes:
    return json.dumps(
        [
            {
                "tag_name": release.date,
                "name": release.date,
                "published_at": f"{release.date}T12:00:00Z",
                "assets": [],
            }
            for release in releases
        ]
    ).encode()


class FakeResponse:
    """The subset of `requests.Response` used by `HttpClient`."""

    def __init__(
        self,
        status_code: int = 200,
        body: bytes = b"",
        headers: Optional[dict[str, str]] = None,
    ):
        self.status_code = status_code
        self.headers = headers if headers is not None else {
            "Content-Length": str(len(body))
        }
        self._body = body
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession(requests.Session):
    """A session answering from a URL map, recording every request.

    Values are response bodies, `FakeResponse` objects, or lists of them
    consumed one per request.
    """

    def __init__(self, routes: Optional[dict] = None):
        super().__init__()
        self.routes = dict(routes or {})
        self.requested: list[str] = []

    def get(self, url, **kwargs):
        self.requested.append(url)
        value = self.routes.get(url)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if value is None:
            return FakeResponse(404, b"not found")
        if isinstance(value, FakeResponse):
            return value
        return FakeResponse(200, value)


class OfflineSession(requests.Session):
    """A session failing every request, as without network."""

    def __init__(self):
        super().__init__()
        self.requested: list[str] = []

    def get(self, url, **kwargs):
        self.requested.append(url)
        raise requests.ConnectionError(f"network unreachable: {url}")


# Content of a pinned trusted root; never parsed when Sigstore is mocked.
TRUSTED_ROOT = (
    b'{"mediaType": "application/vnd.dev.sigstore.trustedroot+json;'
    b'version=0.1"}'
)
