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

"""Test fixtures to share between tests. Not part of the public API."""

from unittest import mock

import pytest

from tests import test_support
from tpm_trust_bundle import _transparency
from tpm_trust_bundle import _trusted_root


@pytest.fixture
def release():
    """A release with a root and an intermediate bundle."""
    return test_support.Release()


@pytest.fixture
def cache_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def mocked_sigstore_models():
    with mock.patch.object(
        _transparency.sigstore_models, "Bundle", autospec=True
    ) as mocked_bundle:
        mocked_bundle.from_json = test_support.FakeSigstoreBundle.from_json
        yield mocked_bundle


@pytest.fixture
def mocked_sigstore_verifier():
    with mock.patch.object(
        _transparency.sigstore_verifier, "Verifier", autospec=True
    ) as mocked_verifier:
        mocked_verifier.verify_dsse = test_support.fake_verify_dsse
        mocked_verifier.return_value = mocked_verifier
        yield mocked_verifier


@pytest.fixture
def mocked_trusted_root():
    with mock.patch.multiple(
        _trusted_root,
        fetch_trusted_root=mock.DEFAULT,
        load_trusted_root=mock.DEFAULT,
        autospec=True,
    ) as mocked_objects:
        mocked_fetch = mocked_objects["fetch_trusted_root"]
        mocked_fetch.return_value = test_support.TRUSTED_ROOT
        yield mocked_objects


@pytest.fixture
def mocked_sigstore(
    mocked_sigstore_models, mocked_sigstore_verifier, mocked_trusted_root
):
    """Collect all sigstore mocking fixtures in just one."""
    return mocked_sigstore_verifier
