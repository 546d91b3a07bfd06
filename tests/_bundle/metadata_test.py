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

import pytest

from tests import test_support
from tpm_trust_bundle import errors
from tpm_trust_bundle._bundle import codec
from tpm_trust_bundle._bundle import metadata


def _header(date="2025-12-05", commit=test_support.KNOWN_COMMIT, **kwargs):
    return codec.encode_header(date, commit, **kwargs).encode()


class TestParseMetadata:
    def test_root_header(self):
        parsed = metadata.parse_metadata(_header())
        assert parsed == metadata.Metadata(
            date="2025-12-05",
            commit=test_support.KNOWN_COMMIT,
            type=metadata.BundleType.ROOT,
        )

    def test_intermediate_header(self):
        parsed = metadata.parse_metadata(
            _header(bundle_type=metadata.BundleType.INTERMEDIATE)
        )
        assert parsed.type is metadata.BundleType.INTERMEDIATE

    def test_leading_blank_lines_are_skipped(self):
        parsed = metadata.parse_metadata(b"\n\n" + _header())
        assert parsed.date == "2025-12-05"

    def test_only_leading_block_is_scanned(self):
        data = (
            b"##\n## Date: 2025-12-05\n"
            b"## and contains a list of verified TPM Root Endorsement "
            b"Certificates.\n"
            b"#\n## Commit: " + test_support.KNOWN_COMMIT.encode() + b"\n"
        )
        with pytest.raises(errors.MalformedBundle, match="'Commit'"):
            metadata.parse_metadata(data)

    def test_missing_date(self):
        data = _header().replace(b"## Date: 2025-12-05\n", b"")
        with pytest.raises(errors.MalformedBundle, match="'Date'"):
            metadata.parse_metadata(data)

    def test_missing_commit(self):
        data = _header().replace(b"Commit:", b"Comet:")
        with pytest.raises(errors.MalformedBundle, match="'Commit'"):
            metadata.parse_metadata(data)

    def test_missing_type_sentence(self):
        data = _header().replace(b"TPM Root Endorsement", b"things")
        with pytest.raises(errors.MalformedBundle, match="root or"):
            metadata.parse_metadata(data)

    def test_not_utf8(self):
        with pytest.raises(errors.MalformedBundle, match="UTF-8"):
            metadata.parse_metadata(b"## Date: \xff\xfe")


class TestValidation:
    @pytest.mark.parametrize("date", ["2025-12-05", "2024-02-29"])
    def test_valid_dates(self, date):
        metadata.validate_date(date)

    @pytest.mark.parametrize(
        "date", ["2025-13-01", "2025-02-30", "25-12-05", "2025/12/05", ""]
    )
    def test_invalid_dates(self, date):
        with pytest.raises(errors.ConfigInvalid):
            metadata.validate_date(date)

    def test_commit_must_be_lowercase(self):
        with pytest.raises(errors.ConfigInvalid, match="lowercase"):
            metadata.validate_commit(test_support.KNOWN_COMMIT.upper())

    def test_commit_must_be_full_length(self):
        with pytest.raises(errors.ConfigInvalid):
            metadata.validate_commit(test_support.KNOWN_COMMIT[:7])

    def test_validate_metadata_reports_malformed_bundle(self):
        with pytest.raises(errors.MalformedBundle):
            metadata.validate_metadata(
                metadata.Metadata(date="2025-12-05", commit="abc")
            )

    def test_is_date_tag(self):
        assert metadata.is_date_tag("2025-12-05")
        assert not metadata.is_date_tag("v1.0.0")


class TestBundleType:
    def test_filenames(self):
        assert metadata.BundleType.ROOT.filename == "tpm-ca-certificates.pem"
        assert metadata.BundleType.INTERMEDIATE.filename == (
            "tpm-intermediate-ca-certificates.pem"
        )

    def test_parse_invalid(self):
        with pytest.raises(errors.ConfigInvalid, match="root, intermediate"):
            metadata.BundleType.parse("leaf")
