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

"""TPM vendor identifiers from the TCG TPM Vendor ID Registry.

Each certificate in a bundle is owned by exactly one vendor. The set of
vendors is closed: an identifier not listed here is rejected.
"""

from collections.abc import Iterable
import enum

from tpm_trust_bundle import errors


class VendorID(str, enum.Enum):
    """A vendor identifier, as listed in the TCG registry."""

    AMD = "AMD"
    ANT = "ANT"
    ATML = "ATML"
    BRCM = "BRCM"
    CSCO = "CSCO"
    FLYS = "FLYS"
    GOOG = "GOOG"
    HPI = "HPI"
    HPE = "HPE"
    HISI = "HISI"
    IBM = "IBM"
    IFX = "IFX"
    INTC = "INTC"
    LEN = "LEN"
    MSFT = "MSFT"
    NSG = "NSG"
    NSM = "NSM"
    NTC = "NTC"
    NTZ = "NTZ"
    QCOM = "QCOM"
    ROCC = "ROCC"
    SEAL = "SEAL"
    SECE = "SECE"
    SMSN = "SMSN"
    SMSC = "SMSC"
    SNS = "SNS"
    STM = "STM"
    TXN = "TXN"
    WEC = "WEC"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: "str | VendorID") -> "VendorID":
        """Converts a string into a `VendorID`.

        Args:
            value: The vendor identifier. Matching is case sensitive, as
              in the registry.

        Returns:
            The matching `VendorID`.

        Raises:
            ConfigInvalid: The identifier is not part of the registry.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as err:
            raise errors.ConfigInvalid(
                f"invalid vendor ID {value!r}: not found in TCG TPM Vendor ID "
                "Registry"
            ) from err


def is_valid(value: str) -> bool:
    """Returns whether `value` names a registered vendor."""
    return value in VendorID._value2member_map_


def parse_ids(values: Iterable["str | VendorID"]) -> list[VendorID]:
    """Converts and validates a list of vendor identifiers.

    Duplicates are dropped, keeping the first occurrence.
    """
    result = []
    for value in values:
        vendor = VendorID.parse(value)
        if vendor not in result:
            result.append(vendor)
    return result


def parse_csv(value: str) -> list[VendorID]:
    """Parses a comma separated list of vendor identifiers."""
    return parse_ids(v.strip() for v in value.split(",") if v.strip())


# The vendors most commonly found in the bundle.
IFX = VendorID.IFX
INTC = VendorID.INTC
NTC = VendorID.NTC
STM = VendorID.STM
