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

"""Reading and writing of the text bundle format.

A bundle is a header (see `metadata`) followed by one entry per certificate.
Each entry is a block of `#` comment lines describing the certificate and its
owner, followed by the PEM encoding of the certificate:

```
#
# Certificate: Infineon OPTIGA(TM) RSA Root CA
# Owner: IFX
#
# Issuer: CN=Infineon OPTIGA(TM) RSA Root CA,OU=OPTIGA(TM) Devices,...
# Serial Number: 9 (0x9)
# Subject: CN=Infineon OPTIGA(TM) RSA Root CA,OU=OPTIGA(TM) Devices,...
# Not Valid Before: Wed Jul 27 00:00:00 2013
# Not Valid After : Sun Jul 27 00:00:00 2042
# Fingerprint (SHA-256): AA:BB:...
# Fingerprint (SHA1): AA:BB:...
-----BEGIN CERTIFICATE-----
...
-----END CERTIFICATE-----
```
"""

import dataclasses
import datetime
import hashlib
import pathlib
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from tpm_trust_bundle import errors
from tpm_trust_bundle import vendors
from tpm_trust_bundle._bundle import metadata as metadata_lib


CERT_METADATA_PREFIX = "#"
PEM_BEGIN_MARKER = "-----BEGIN CERTIFICATE-----"
PEM_END_MARKER = "-----END CERTIFICATE-----"

CERTIFICATE_KEY = "Certificate"
OWNER_KEY = "Owner"
ISSUER_KEY = "Issuer"
SERIAL_NUMBER_KEY = "Serial Number"
SUBJECT_KEY = "Subject"
NOT_VALID_BEFORE_KEY = "Not Valid Before"
NOT_VALID_AFTER_KEY = "Not Valid After"
SHA256_FINGERPRINT_KEY = "Fingerprint (SHA-256)"
SHA1_FINGERPRINT_KEY = "Fingerprint (SHA1)"

_TIME_FORMAT = "%a %b %d %H:%M:%S %Y"


def format_fingerprint(digest: bytes) -> str:
    """Formats a digest as colon separated uppercase hex (`AA:BB:CC`)."""
    return ":".join(f"{b:02X}" for b in digest)


def _format_time(value: datetime.datetime) -> str:
    return value.astimezone(datetime.timezone.utc).strftime(_TIME_FORMAT)


@dataclasses.dataclass(frozen=True)
class CertificateEntry:
    """A certificate of the bundle together with its annotations.

    Everything but `name` and `owner` is derived from the DER encoding so
    that the entry cannot disagree with the certificate it describes.
    """

    name: str
    owner: vendors.VendorID
    issuer: str
    serial_number: int
    subject: str
    not_before: datetime.datetime
    not_after: datetime.datetime
    sha256_fingerprint: str
    sha1_fingerprint: str
    der: bytes = dataclasses.field(repr=False)

    @classmethod
    def from_certificate(
        cls,
        certificate: x509.Certificate,
        *,
        name: str,
        owner: vendors.VendorID,
    ) -> "CertificateEntry":
        der = certificate.public_bytes(serialization.Encoding.DER)
        return cls(
            name=name,
            owner=owner,
            issuer=certificate.issuer.rfc4514_string(),
            serial_number=certificate.serial_number,
            subject=certificate.subject.rfc4514_string(),
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
            sha256_fingerprint=format_fingerprint(hashlib.sha256(der).digest()),
            sha1_fingerprint=format_fingerprint(hashlib.sha1(der).digest()),
            der=der,
        )

    @property
    def certificate(self) -> x509.Certificate:
        """The parsed X.509 certificate."""
        return x509.load_der_x509_certificate(self.der)

    @property
    def sort_key(self) -> tuple[str, str, int]:
        """The canonical position of the entry inside a bundle."""
        return (self.owner.value, self.name.lower(), self.serial_number)

    def encode(self) -> str:
        """Renders the annotated PEM block of this entry."""
        pem = self.certificate.public_bytes(serialization.Encoding.PEM)
        lines = [
            CERT_METADATA_PREFIX,
            f"# {CERTIFICATE_KEY}: {self.name}",
            f"# {OWNER_KEY}: {self.owner.value}",
            CERT_METADATA_PREFIX,
            f"# {ISSUER_KEY}: {self.issuer}",
            f"# {SERIAL_NUMBER_KEY}: {self.serial_number} "
            f"({self.serial_number:#x})",
            f"# {SUBJECT_KEY}: {self.subject}",
            f"# {NOT_VALID_BEFORE_KEY}: {_format_time(self.not_before)}",
            f"# {NOT_VALID_AFTER_KEY} : {_format_time(self.not_after)}",
            f"# {SHA256_FINGERPRINT_KEY}: {self.sha256_fingerprint}",
            f"# {SHA1_FINGERPRINT_KEY}: {self.sha1_fingerprint}",
        ]
        return "\n".join(lines) + "\n" + pem.decode("ascii")


VendorCatalog = dict[vendors.VendorID, list[CertificateEntry]]


def encode_header(
    date: str,
    commit: str,
    bundle_type: metadata_lib.BundleType = metadata_lib.BundleType.ROOT,
    filename: Optional[str] = None,
) -> str:
    """Renders the global header of a bundle."""
    if filename:
        filename = pathlib.PurePath(filename).name
    else:
        filename = bundle_type.filename
    lines = [
        "##",
        f"## {filename}",
        "##",
        f"## {metadata_lib.DATE_KEY}: {date}",
        f"## {metadata_lib.COMMIT_KEY}: {commit}",
        "##",
        "## This file has been auto-generated by tpmtb (TPM Trust Bundle)",
        f"## and contains a list of verified {bundle_type.description}.",
        "##",
        "",
    ]
    return "\n".join(lines) + "\n"


def encode_bundle(
    entries: list[CertificateEntry],
    *,
    date: str,
    commit: str,
    bundle_type: metadata_lib.BundleType = metadata_lib.BundleType.ROOT,
    filename: Optional[str] = None,
) -> bytes:
    """Renders a complete bundle.

    Entries are written in canonical order, whatever the order they are
    passed in.
    """
    ordered = sorted(entries, key=lambda entry: entry.sort_key)
    header = encode_header(date, commit, bundle_type, filename)
    body = "\n".join(entry.encode() for entry in ordered)
    return (header + body).encode("utf-8")


def _parse_comment(line: str) -> tuple[str, str]:
    """Splits a `# Key: Value` line, tolerating `Key : Value`."""
    content = line[len(CERT_METADATA_PREFIX) :].strip()
    key, sep, value = content.partition(":")
    if not sep:
        return "", ""
    return key.strip(), value.strip()


def parse_entries(data: bytes) -> list[CertificateEntry]:
    """Parses all certificate entries of a bundle, in file order.

    Args:
        data: The raw bundle.

    Returns:
        The list of entries.

    Raises:
        MalformedBundle: A PEM block is not a valid certificate, an owner is
          unknown or missing, the same certificate is claimed by two owners,
          or the bundle holds no certificate at all.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise errors.MalformedBundle("bundle is not valid UTF-8") from err

    entries = []
    owners_by_der: dict[bytes, vendors.VendorID] = {}
    name = ""
    owner: Optional[vendors.VendorID] = None
    pem_lines: Optional[list[str]] = None

    for lineno, line in enumerate(text.splitlines(), start=1):
        if pem_lines is not None:
            pem_lines.append(line)
            if not line.startswith(PEM_END_MARKER):
                continue
            pem = "\n".join(pem_lines) + "\n"
            pem_lines = None
            try:
                certificate = x509.load_pem_x509_certificate(pem.encode())
            except ValueError as err:
                raise errors.MalformedBundle(
                    f"failed to parse certificate ending at line {lineno}: "
                    f"{err}"
                ) from err
            if owner is None:
                raise errors.MalformedBundle(
                    f"certificate ending at line {lineno} has no owner metadata"
                )
            entry = CertificateEntry.from_certificate(
                certificate, name=name, owner=owner
            )
            previous = owners_by_der.setdefault(entry.der, owner)
            if previous != owner:
                raise errors.MalformedBundle(
                    f"certificate {entry.sha256_fingerprint} is listed under "
                    f"both {previous.value} and {owner.value}"
                )
            entries.append(entry)
            name = ""
            owner = None
            continue

        if line.startswith(metadata_lib.GLOBAL_METADATA_PREFIX):
            continue
        if line.startswith(PEM_BEGIN_MARKER):
            pem_lines = [line]
            continue
        if not line.startswith(CERT_METADATA_PREFIX):
            continue

        key, value = _parse_comment(line)
        if key == CERTIFICATE_KEY:
            name = value
        elif key == OWNER_KEY:
            try:
                owner = vendors.VendorID.parse(value)
            except errors.ConfigInvalid as err:
                raise errors.MalformedBundle(
                    f"invalid vendor ID in certificate metadata at line "
                    f"{lineno}: {err}"
                ) from err

    if pem_lines is not None:
        raise errors.MalformedBundle("unterminated PEM block at end of bundle")
    if not entries:
        raise errors.MalformedBundle("no certificates found in bundle")

    return entries


def parse_bundle(data: bytes) -> VendorCatalog:
    """Parses a bundle into a catalog of certificates keyed by owner.

    Vendors appear in order of first occurrence and certificates keep the
    order of the file.
    """
    catalog: VendorCatalog = {}
    for entry in parse_entries(data):
        catalog.setdefault(entry.owner, []).append(entry)
    return catalog


MAX_VALIDATION_ERRORS = 10

_REQUIRED_ANNOTATIONS = (
    CERTIFICATE_KEY,
    OWNER_KEY,
    ISSUER_KEY,
    SERIAL_NUMBER_KEY,
    SUBJECT_KEY,
    NOT_VALID_BEFORE_KEY,
    NOT_VALID_AFTER_KEY,
    SHA256_FINGERPRINT_KEY,
    SHA1_FINGERPRINT_KEY,
)


def _expected_annotations(certificate: x509.Certificate) -> dict[str, str]:
    der = certificate.public_bytes(serialization.Encoding.DER)
    serial = certificate.serial_number
    return {
        ISSUER_KEY: certificate.issuer.rfc4514_string(),
        SERIAL_NUMBER_KEY: f"{serial} ({serial:#x})",
        SUBJECT_KEY: certificate.subject.rfc4514_string(),
        NOT_VALID_BEFORE_KEY: _format_time(certificate.not_valid_before_utc),
        NOT_VALID_AFTER_KEY: _format_time(certificate.not_valid_after_utc),
        SHA256_FINGERPRINT_KEY: format_fingerprint(
            hashlib.sha256(der).digest()
        ),
        SHA1_FINGERPRINT_KEY: format_fingerprint(hashlib.sha1(der).digest()),
    }


def validate_bundle(data: bytes) -> None:
    """Checks a bundle line by line, including every annotation.

    Unlike `parse_entries`, which only reads the name and owner of each
    certificate, every annotation is compared with the certificate it
    describes. Problems are reported with the line they were found on, up
    to `MAX_VALIDATION_ERRORS` of them.

    Args:
        data: The raw bundle.

    Raises:
        MalformedBundle: The bundle has at least one problem. The message
          holds one `line N: ...` entry per problem.
    """
    problems: list[tuple[int, str]] = []

    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise errors.MalformedBundle("bundle is not valid UTF-8") from err

    lines = text.splitlines()
    if not lines or lines[0] != metadata_lib.GLOBAL_METADATA_PREFIX:
        problems.append(
            (1, "bundle must start with the global metadata marker '##'")
        )
    try:
        metadata_lib.validate_metadata(metadata_lib.parse_metadata(data))
    except errors.MalformedBundle as err:
        problems.append((1, str(err)))

    # Annotation key to (line number, value) for the current entry.
    annotations: dict[str, tuple[int, str]] = {}
    block_start = 0
    pem_lines: Optional[list[str]] = None
    pem_start = 0
    found = 0

    for lineno, line in enumerate(lines, start=1):
        if pem_lines is not None:
            pem_lines.append(line)
            if not line.startswith(PEM_END_MARKER):
                continue
            pem = "\n".join(pem_lines) + "\n"
            pem_lines = None
            found += 1
            problems.extend(
                _check_entry(pem, annotations, block_start, pem_start)
            )
            annotations = {}
            block_start = 0
            continue

        if line.startswith(metadata_lib.GLOBAL_METADATA_PREFIX):
            continue
        if line.startswith(PEM_BEGIN_MARKER):
            pem_lines = [line]
            pem_start = lineno
            continue
        if not line.startswith(CERT_METADATA_PREFIX):
            continue
        if line == CERT_METADATA_PREFIX:
            block_start = block_start or lineno
            continue

        key, value = _parse_comment(line)
        if not key:
            problems.append(
                (lineno, f"expected '# Key: Value', got {line!r}")
            )
            continue
        block_start = block_start or lineno
        annotations[key] = (lineno, value)
        if key == OWNER_KEY:
            try:
                vendors.VendorID.parse(value)
            except errors.ConfigInvalid as err:
                problems.append((lineno, f"invalid vendor ID: {err}"))

    if pem_lines is not None:
        problems.append((pem_start, "unterminated PEM block"))
    if not found:
        problems.append((len(lines), "no certificates found in bundle"))

    if problems:
        problems.sort(key=lambda problem: problem[0])
        raise errors.MalformedBundle(
            "\n".join(
                f"line {lineno}: {message}"
                for lineno, message in problems[:MAX_VALIDATION_ERRORS]
            )
        )


def _check_entry(
    pem: str,
    annotations: dict[str, tuple[int, str]],
    block_start: int,
    pem_start: int,
) -> list[tuple[int, str]]:
    """Compares the annotations of one entry with its certificate."""
    if not annotations:
        return [(pem_start, "certificate found without metadata block")]

    problems = [
        (block_start, f"certificate metadata missing required {key!r} field")
        for key in _REQUIRED_ANNOTATIONS
        if key not in annotations
    ]
    try:
        certificate = x509.load_pem_x509_certificate(pem.encode())
    except ValueError as err:
        problems.append((pem_start, f"failed to parse certificate: {err}"))
        return problems

    for key, expected in _expected_annotations(certificate).items():
        if key not in annotations:
            continue
        lineno, value = annotations[key]
        if value != expected:
            problems.append(
                (
                    lineno,
                    f"{key} mismatch: metadata has {value!r}, certificate "
                    f"has {expected!r}",
                )
            )
    return problems
