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

"""On-disk cache of a bundle release and its verification assets.

The cache is a flat directory holding at most seven files. `config.json`
describes which release is cached and whether verification assets were kept.
The cache has a single writer; no locking is performed.
"""

import dataclasses
import datetime
import json
import os
import pathlib
from typing import Any, Optional

from tpm_trust_bundle import errors
from tpm_trust_bundle import vendors
from tpm_trust_bundle._bundle import metadata as metadata_lib


CACHE_DIR_NAME = ".tpmtb"

CONFIG_FILENAME = "config.json"
ROOT_BUNDLE_FILENAME = metadata_lib.ROOT_BUNDLE_FILENAME
INTERMEDIATE_BUNDLE_FILENAME = metadata_lib.INTERMEDIATE_BUNDLE_FILENAME
CHECKSUMS_FILENAME = "checksums.txt"
CHECKSUMS_SIGNATURE_FILENAME = "checksums.txt.sigstore.json"
PROVENANCE_FILENAME = "provenance.json"
TRUSTED_ROOT_FILENAME = "trusted-root.json"

CACHE_FILENAMES = (
    ROOT_BUNDLE_FILENAME,
    INTERMEDIATE_BUNDLE_FILENAME,
    CHECKSUMS_FILENAME,
    CHECKSUMS_SIGNATURE_FILENAME,
    PROVENANCE_FILENAME,
    TRUSTED_ROOT_FILENAME,
    CONFIG_FILENAME,
)

_OPTIONAL_FILENAMES = frozenset([INTERMEDIATE_BUNDLE_FILENAME])
_VERIFICATION_FILENAMES = (
    CHECKSUMS_FILENAME,
    CHECKSUMS_SIGNATURE_FILENAME,
    PROVENANCE_FILENAME,
)

DEFAULT_AUTO_UPDATE_INTERVAL = datetime.timedelta(hours=24)


def default_cache_dir() -> pathlib.Path:
    """Returns `$HOME/.tpmtb`, or a temporary location without a home."""
    try:
        home = pathlib.Path.home()
    except RuntimeError:
        home = pathlib.Path(os.environ.get("TMPDIR", "/tmp"))
    return home / CACHE_DIR_NAME


def load_file(cache_dir: pathlib.Path, filename: str) -> bytes:
    """Reads one file of the cache.

    Raises:
        NotFound: The file does not exist.
    """
    path = pathlib.Path(cache_dir) / filename
    try:
        return path.read_bytes()
    except (FileNotFoundError, NotADirectoryError) as err:
        raise errors.NotFound(
            f"{filename} not found in cache {cache_dir}"
        ) from err


def save_file(cache_dir: pathlib.Path, filename: str, data: bytes) -> None:
    """Writes one file of the cache; empty data is not written.

    Raises:
        PersistFailed: The file could not be written.
    """
    if not data:
        return
    path = pathlib.Path(cache_dir) / filename
    mode = 0o600 if filename == TRUSTED_ROOT_FILENAME else 0o644
    try:
        # The trusted root is never readable by others, not even briefly.
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            # os.open does not change the mode of an existing file.
            os.fchmod(f.fileno(), mode)
            f.write(data)
    except OSError as err:
        raise errors.PersistFailed(
            f"failed to write {filename} to cache: {err}"
        ) from err


def validate_cache_files(cache_dir: pathlib.Path) -> None:
    """Checks that every required file of the cache is present.

    Raises:
        CacheIncomplete: At least one required file is missing.
    """
    missing = [
        filename
        for filename in CACHE_FILENAMES
        if filename not in _OPTIONAL_FILENAMES
        and not (pathlib.Path(cache_dir) / filename).is_file()
    ]
    if missing:
        raise errors.CacheIncomplete(
            f"missing required cache files: {', '.join(missing)}"
        )


@dataclasses.dataclass
class AutoUpdateConfig:
    """Background refresh of a trusted bundle.

    Attributes:
        disable_auto_update: Do not start the watcher.
        interval: Time between two checks for a newer release.
    """

    disable_auto_update: bool = False
    interval: datetime.timedelta = DEFAULT_AUTO_UPDATE_INTERVAL

    def check_and_set_defaults(self) -> None:
        if not self.interval and not self.disable_auto_update:
            self.interval = DEFAULT_AUTO_UPDATE_INTERVAL
        if self.interval and self.interval.total_seconds() < 0:
            raise errors.ConfigInvalid("auto-update interval must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            "disableAutoUpdate": self.disable_auto_update,
            "interval": int(self.interval.total_seconds()),
        }

    @classmethod
    def from_dict(cls, value: dict[str, Any]) -> "AutoUpdateConfig":
        return cls(
            disable_auto_update=bool(value.get("disableAutoUpdate", False)),
            interval=datetime.timedelta(seconds=value.get("interval") or 0),
        )


@dataclasses.dataclass
class CacheConfig:
    """The content of `config.json`.

    Attributes:
        version: The cached release, i.e. the bundle date.
        auto_update: The auto-update configuration of the cached bundle.
        skip_verify: Whether verification assets were left out.
        vendor_ids: The vendor filter of the cached bundle.
        last_timestamp: When the cache was written.
    """

    version: str
    auto_update: Optional[AutoUpdateConfig] = None
    skip_verify: bool = False
    vendor_ids: list[vendors.VendorID] = dataclasses.field(
        default_factory=list
    )
    last_timestamp: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )

    def check_and_set_defaults(self) -> None:
        if not self.version:
            raise errors.ConfigInvalid("cache version cannot be empty")
        if self.auto_update is not None:
            self.auto_update.check_and_set_defaults()
        self.vendor_ids = vendors.parse_ids(self.vendor_ids)

    def to_json(self) -> bytes:
        document: dict[str, Any] = {"version": self.version}
        if self.auto_update is not None:
            document["autoUpdate"] = self.auto_update.to_dict()
        if self.skip_verify:
            document["skipVerify"] = True
        if self.vendor_ids:
            document["vendorIDs"] = [str(v) for v in self.vendor_ids]
        document["lastTimestamp"] = self.last_timestamp.isoformat()
        return json.dumps(document).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "CacheConfig":
        """Parses and validates `config.json`.

        Raises:
            ConfigInvalid: The document is malformed.
        """
        try:
            document = json.loads(data)
        except ValueError as err:
            raise errors.ConfigInvalid(
                f"failed to parse cache config: {err}"
            ) from err
        if not isinstance(document, dict):
            raise errors.ConfigInvalid("cache config is not a JSON object")

        auto_update = document.get("autoUpdate")
        timestamp = document.get("lastTimestamp")
        try:
            last_timestamp = (
                datetime.datetime.fromisoformat(
                    timestamp.replace("Z", "+00:00")
                )
                if timestamp
                else datetime.datetime.now(datetime.timezone.utc)
            )
        except (AttributeError, ValueError) as err:
            raise errors.ConfigInvalid(
                f"invalid lastTimestamp {timestamp!r}"
            ) from err

        config = cls(
            version=document.get("version") or "",
            auto_update=(
                AutoUpdateConfig.from_dict(auto_update)
                if isinstance(auto_update, dict)
                else None
            ),
            skip_verify=bool(document.get("skipVerify", False)),
            vendor_ids=list(document.get("vendorIDs") or []),
            last_timestamp=last_timestamp,
        )
        config.check_and_set_defaults()
        return config


def load_config(cache_dir: pathlib.Path) -> CacheConfig:
    return CacheConfig.from_json(load_file(cache_dir, CONFIG_FILENAME))


def is_complete(cache_dir: pathlib.Path, version: str) -> bool:
    """Returns whether the cache holds release `version` in full.

    The root bundle is always required; checksums, their signature and the
    provenance are required unless the cache was written without
    verification.
    """
    cache_dir = pathlib.Path(cache_dir)
    try:
        config = load_config(cache_dir)
    except errors.TrustBundleError:
        return False
    if config.version != version:
        return False

    required = [ROOT_BUNDLE_FILENAME]
    if not config.skip_verify:
        required.extend(_VERIFICATION_FILENAMES)
    return all((cache_dir / filename).is_file() for filename in required)


def persist_all(
    cache_dir: pathlib.Path,
    *,
    root_bundle: bytes,
    intermediate_bundle: Optional[bytes] = None,
    checksum: Optional[bytes] = None,
    checksum_signature: Optional[bytes] = None,
    provenance: Optional[bytes] = None,
    trusted_root: Optional[bytes] = None,
    config: bytes,
) -> None:
    """Creates `cache_dir` with mode 0700 and writes every non-empty file.

    Raises:
        PersistFailed: The directory or a file could not be written.
    """
    cache_dir = pathlib.Path(cache_dir)
    try:
        cache_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as err:
        raise errors.PersistFailed(
            f"failed to create cache directory {cache_dir}: {err}"
        ) from err

    files = (
        (ROOT_BUNDLE_FILENAME, root_bundle),
        (INTERMEDIATE_BUNDLE_FILENAME, intermediate_bundle),
        (CHECKSUMS_FILENAME, checksum),
        (CHECKSUMS_SIGNATURE_FILENAME, checksum_signature),
        (PROVENANCE_FILENAME, provenance),
        (TRUSTED_ROOT_FILENAME, trusted_root),
        (CONFIG_FILENAME, config),
    )
    for filename, data in files:
        save_file(cache_dir, filename, data or b"")
