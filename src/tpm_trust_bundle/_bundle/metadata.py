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

"""Global metadata of a bundle: release date, source commit and type.

The metadata lives in the leading `##` lines of a bundle:

```
##
## tpm-ca-certificates.pem
##
## Date: 2025-12-05
## Commit: 7422b99b0b5d4a3a8a5e0a3ed1f2b0c4f1f1e2d3
##
## This file has been auto-generated by tpmtb (TPM Trust Bundle)
## and contains a list of verified TPM Root Endorsement Certificates.
##
```
"""

import dataclasses
import datetime
import enum
import re

from tpm_trust_bundle import errors


GLOBAL_METADATA_PREFIX = "##"
DATE_KEY = "Date"
COMMIT_KEY = "Commit"

ROOT_BUNDLE_FILENAME = "tpm-ca-certificates.pem"
INTERMEDIATE_BUNDLE_FILENAME = "tpm-intermediate-ca-certificates.pem"

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_COMMIT_PATTERN = re.compile(r"^[0-9a-f]{40}$")


class BundleType(str, enum.Enum):
    """The kind of certificates contained in a bundle."""

    ROOT = "root"
    INTERMEDIATE = "intermediate"

    def __str__(self) -> str:
        return self.value

    @property
    def filename(self) -> str:
        """The release asset name for bundles of this type."""
        if self is BundleType.INTERMEDIATE:
            return INTERMEDIATE_BUNDLE_FILENAME
        return ROOT_BUNDLE_FILENAME

    @property
    def description(self) -> str:
        """The sentence identifying bundles of this type in the header."""
        if self is BundleType.INTERMEDIATE:
            return "TPM Intermediate Endorsement Certificates"
        return "TPM Root Endorsement Certificates"

    @classmethod
    def parse(cls, value: "str | BundleType") -> "BundleType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as err:
            raise errors.ConfigInvalid(
                f"invalid bundle type {value!r}: must be one of "
                "[root, intermediate]"
            ) from err


@dataclasses.dataclass(frozen=True)
class Metadata:
    """Global metadata of a bundle.

    Attributes:
        date: The release date, as `YYYY-MM-DD`.
        commit: The git commit the bundle was generated from.
        type: Whether the bundle holds root or intermediate certificates.
    """

    date: str
    commit: str
    type: BundleType = BundleType.ROOT


def parse_metadata(data: bytes) -> Metadata:
    """Extracts the global metadata from a bundle.

    Only the leading `##` block is scanned, after optional blank lines.

    Args:
        data: The raw bundle.

    Returns:
        The metadata of the bundle.

    Raises:
        MalformedBundle: The header is missing the date, the commit or the
          sentence identifying the type of the bundle.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise errors.MalformedBundle("bundle is not valid UTF-8") from err

    date = ""
    commit = ""
    bundle_type = None
    started = False
    for line in text.splitlines():
        if not line.strip() and not started:
            continue
        if not line.startswith(GLOBAL_METADATA_PREFIX):
            break
        started = True

        content = line[len(GLOBAL_METADATA_PREFIX) :].strip()
        key, sep, value = content.partition(":")
        if sep and key == DATE_KEY:
            date = value.strip()
        elif sep and key == COMMIT_KEY:
            commit = value.strip()
        elif BundleType.INTERMEDIATE.description in content:
            bundle_type = BundleType.INTERMEDIATE
        elif BundleType.ROOT.description in content:
            bundle_type = BundleType.ROOT

    if not date:
        raise errors.MalformedBundle(
            "bundle does not contain required 'Date' metadata in header"
        )
    if not commit:
        raise errors.MalformedBundle(
            "bundle does not contain required 'Commit' metadata in header"
        )
    if bundle_type is None:
        raise errors.MalformedBundle(
            "bundle header does not state whether it contains root or "
            "intermediate endorsement certificates"
        )

    return Metadata(date=date, commit=commit, type=bundle_type)


def validate_date(date: str) -> None:
    """Checks that `date` is a real calendar date written as `YYYY-MM-DD`."""
    if not _DATE_PATTERN.match(date):
        raise errors.ConfigInvalid(
            f"invalid date {date!r}: expected format YYYY-MM-DD"
        )
    try:
        datetime.date.fromisoformat(date)
    except ValueError as err:
        raise errors.ConfigInvalid(f"invalid date {date!r}: {err}") from err


def validate_commit(commit: str) -> None:
    """Checks that `commit` is a 40 character lowercase hex object id."""
    if not _COMMIT_PATTERN.match(commit):
        raise errors.ConfigInvalid(
            f"invalid commit {commit!r}: expected 40 lowercase hex characters"
        )


def validate_metadata(metadata: Metadata) -> None:
    """Validates both fields of `metadata`.

    Raises:
        MalformedBundle: Either the date or the commit is malformed.
    """
    try:
        validate_date(metadata.date)
        validate_commit(metadata.commit)
    except errors.ConfigInvalid as err:
        raise errors.MalformedBundle(str(err)) from err


def is_date_tag(tag: str) -> bool:
    """Returns whether a release tag looks like a bundle release date."""
    return bool(_DATE_PATTERN.match(tag))
