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

"""Tests for verifying bundles against their release evidence."""

import json

import pytest

from tests import test_support
from tpm_trust_bundle import _http
from tpm_trust_bundle import _verifier
from tpm_trust_bundle import errors


def _verifier_for(
    release, *, session=None, commit=None, trusted_root=b"", cache_dir=None
):
    return _verifier.BundleVerifier(
        _verifier.Config(
            date=release.date,
            commit=commit or release.commit,
            client=_http.HttpClient(
                session or test_support.OfflineSession(),
                randomize_backoff=False,
            ),
            trusted_root=trusted_root,
            cache_dir=cache_dir,
        )
    )


def _verify(verifier, release, **kwargs):
    return verifier.verify(
        release.root_bundle,
        release.checksums,
        release.checksums_signature,
        release.provenance,
        **kwargs,
    )


class TestBundleVerifier:
    def test_success(self, mocked_sigstore, release):
        result = _verify(_verifier_for(release), release)
        assert result.policy.tag == release.date
        assert len(result.attestation_results) == 1
        assert result.intermediate_cosign_result is None

    def test_intermediate_is_verified(self, mocked_sigstore, release):
        result = _verify(
            _verifier_for(release),
            release,
            intermediate=release.intermediate_bundle,
        )
        assert result.intermediate_cosign_result is not None

    def test_commit_is_case_insensitive(self, mocked_sigstore, release):
        verifier = _verifier_for(release, commit=release.commit.upper())
        _verify(verifier, release)

    def test_signature_from_other_commit(self, mocked_sigstore):
        release = test_support.Release(
            certificate_commit=test_support.TAMPERED_COMMIT
        )
        with pytest.raises(errors.CommitMismatch, match="aaaaaaaa"):
            _verify(_verifier_for(release), release)

    def test_signed_on_other_day(self, mocked_sigstore):
        release = test_support.Release(signed_on=test_support.OLDER_DATE)
        with pytest.raises(errors.DateMismatch, match="2025-12-03"):
            _verify(_verifier_for(release), release)

    def test_failures_are_verification_failures(self, mocked_sigstore):
        release = test_support.Release(signed_on=test_support.OLDER_DATE)
        with pytest.raises(errors.VerificationFailed):
            _verify(_verifier_for(release), release)

    def test_tampered_bundle(self, mocked_sigstore, release):
        tampered = release.root_bundle.replace(b"IFX Root CA", b"IFX Evil CA")
        with pytest.raises(errors.ChecksumMismatch):
            _verifier_for(release).verify(
                tampered,
                release.checksums,
                release.checksums_signature,
                release.provenance,
            )

    def test_intermediate_from_other_release(self, mocked_sigstore, release):
        other = test_support.Release(
            test_support.OLDER_DATE, test_support.OLDER_COMMIT
        )
        with pytest.raises(errors.DateMismatch, match="intermediate"):
            _verify(
                _verifier_for(release),
                release,
                intermediate=other.intermediate_bundle,
            )

    def test_attestation_with_other_commit(self, mocked_sigstore, release):
        attestation = test_support.sigstore_bundle(
            release.signing_certificate,
            statement=test_support.provenance_statement(
                [release.root_bundle], commit=test_support.TAMPERED_COMMIT
            ),
        )
        with pytest.raises(errors.NoValidAttestation, match="commit"):
            _verifier_for(release).verify(
                release.root_bundle,
                release.checksums,
                release.checksums_signature,
                attestation,
            )

    def test_attestations_fetched_when_missing(self, mocked_sigstore, release):
        session = test_support.FakeSession(release.routes())
        verifier = _verifier_for(release, session=session)
        result = verifier.verify(
            release.root_bundle,
            release.checksums,
            release.checksums_signature,
        )
        assert len(result.attestation_results) == 1
        assert session.requested == [
            f"{test_support.API}/attestations/{release.digest}"
        ]

    def test_one_valid_attestation_is_enough(self, mocked_sigstore, release):
        bad = test_support.sigstore_bundle(
            release.signing_certificate,
            signed_on=test_support.OLDER_DATE,
            statement=test_support.provenance_statement([release.root_bundle]),
        )
        routes = release.routes()
        routes[f"{test_support.API}/attestations/{release.digest}"] = (
            json.dumps(
                {
                    "attestations": [
                        {"bundle": json.loads(bad)},
                        {"bundle": json.loads(release.provenance)},
                    ]
                }
            ).encode()
        )
        verifier = _verifier_for(
            release, session=test_support.FakeSession(routes)
        )
        result = verifier.verify(
            release.root_bundle,
            release.checksums,
            release.checksums_signature,
        )
        assert len(result.attestation_results) == 1


class TestTrustedRoot:
    def test_fetched_root_is_recorded(
        self, mocked_sigstore, mocked_trusted_root, release, cache_dir
    ):
        verifier = _verifier_for(release, cache_dir=cache_dir)
        assert verifier.trusted_root_data == b""
        _verify(verifier, release)
        assert verifier.trusted_root_data == test_support.TRUSTED_ROOT
        fetch = mocked_trusted_root["fetch_trusted_root"]
        fetch.assert_called_once()
        assert fetch.call_args.args[0] == cache_dir
        load = mocked_trusted_root["load_trusted_root"]
        load.assert_called_once_with(test_support.TRUSTED_ROOT)

    def test_provided_root_skips_fetch(
        self, mocked_sigstore, mocked_trusted_root, release
    ):
        verifier = _verifier_for(release, trusted_root=b"pinned")
        _verify(verifier, release)
        assert verifier.trusted_root_data == b"pinned"
        mocked_trusted_root["fetch_trusted_root"].assert_not_called()
        mocked_trusted_root["load_trusted_root"].assert_called_once_with(
            b"pinned"
        )


def test_date_and_commit_are_required():
    with pytest.raises(errors.ConfigInvalid, match="commit"):
        _verifier.BundleVerifier(
            _verifier.Config(date=test_support.KNOWN_DATE)
        )
