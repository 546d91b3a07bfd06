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

from tpm_trust_bundle import errors
from tpm_trust_bundle import vendors


class TestVendorID:
    def test_registry_size(self):
        assert len(vendors.VendorID) == 29

    def test_parse_known(self):
        assert vendors.VendorID.parse("IFX") is vendors.IFX

    def test_parse_is_case_sensitive(self):
        with pytest.raises(errors.ConfigInvalid, match="TCG TPM Vendor ID"):
            vendors.VendorID.parse("ifx")

    def test_parse_unknown(self):
        with pytest.raises(errors.ConfigInvalid, match="'ACME'"):
            vendors.VendorID.parse("ACME")

    def test_str_is_value(self):
        assert str(vendors.NTC) == "NTC"

    def test_is_valid(self):
        assert vendors.is_valid("STM")
        assert not vendors.is_valid("stm")


class TestParseIds:
    def test_drops_duplicates_keeping_order(self):
        parsed = vendors.parse_ids(["NTC", vendors.IFX, "NTC"])
        assert parsed == [vendors.NTC, vendors.IFX]

    def test_empty(self):
        assert vendors.parse_ids([]) == []

    def test_invalid_member_fails_whole_list(self):
        with pytest.raises(errors.ConfigInvalid):
            vendors.parse_ids(["IFX", "NOPE"])

    def test_csv(self):
        assert vendors.parse_csv(" IFX, ,INTC ") == [vendors.IFX, vendors.INTC]

    def test_csv_empty(self):
        assert vendors.parse_csv("") == []
