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

"""Loading and fetching of the Sigstore trusted root.

The trusted root lists the Fulcio certificate authorities and the Rekor keys
used to verify keyless signatures. It is either supplied by the caller (for
example from the offline cache) or fetched from the Sigstore public-good TUF
repository. In both cases every certificate authority must be issued by the
`sigstore.dev` organization.
"""

import base64
import binascii
from collections.abc import Iterator
import datetime
import importlib.resources
import json
import logging
import pathlib
import shutil
import tempfile
import threading
import time
from typing import Optional
from urllib import parse

from cryptography import x509
from sigstore import models as sigstore_models
from tuf.api import exceptions as tuf_exceptions
from tuf.ngclient import FetcherInterface
from tuf.ngclient import Updater
from typing_extensions import override

from tpm_trust_bundle import _http
from tpm_trust_bundle import errors


logger = logging.getLogger(__name__)

EXPECTED_ORGANIZATION = "sigstore.dev"

TUF_URL = "https://tuf-repo-cdn.sigstore.dev"
TRUSTED_ROOT_TARGET = "trusted_root.json"
TUF_CACHE_DIR = pathlib.Path(".sigstore") / "root"
TUF_CACHE_VALIDITY = datetime.timedelta(days=1)
TUF_DEFAULT_TIMEOUT = 5.0
TUF_MAX_RETRIES = 3


def _lowest_certificates(document: dict) -> Iterator[x509.Certificate]:
    """Yields the lowest certificate of each certificate authority."""
    authorities = document.get("certificateAuthorities") or []
    if not authorities:
        raise errors.UntrustedRoot("trusted root has no certificate authority")

    for i, authority in enumerate(authorities):
        chain = (authority.get("certChain") or {}).get("certificates") or []
        if not chain:
            raise errors.UntrustedRoot(
                f"certificate authority {i} has an empty certificate chain"
            )
        # The chain is ordered from the lowest intermediate up to the root.
        try:
            der = base64.b64decode(chain[0]["rawBytes"], validate=True)
            yield x509.load_der_x509_certificate(der)
        except (KeyError, binascii.Error, ValueError) as err:
            raise errors.UntrustedRoot(
                f"certificate authority {i} has an invalid certificate: {err}"
            ) from err


def check_organization(data: bytes) -> None:
    """Checks that all certificate authorities are issued by sigstore.dev.

    Args:
        data: The trusted root JSON document.

    Raises:
        UntrustedRoot: The document is malformed or an authority is issued by
          another organization.
    """
    try:
        document = json.loads(data)
    except ValueError as err:
        raise errors.UntrustedRoot(f"invalid trusted root: {err}") from err
    if not isinstance(document, dict):
        raise errors.UntrustedRoot("invalid trusted root: not a JSON object")

    for certificate in _lowest_certificates(document):
        organizations = certificate.issuer.get_attributes_for_oid(
            x509.NameOID.ORGANIZATION_NAME
        )
        organization = organizations[0].value if organizations else ""
        if organization != EXPECTED_ORGANIZATION:
            raise errors.UntrustedRoot(
                f"certificate authority issued by {organization!r}, expected "
                f"{EXPECTED_ORGANIZATION!r}"
            )


def load_trusted_root(data: bytes) -> sigstore_models.TrustedRoot:
    """Loads a trusted root document after checking its issuer.

    Args:
        data: The trusted root JSON document.

    Returns:
        The trusted root, ready to build a Sigstore verifier.

    Raises:
        UntrustedRoot: The document is malformed or not issued by
          sigstore.dev.
    """
    check_organization(data)
    with tempfile.TemporaryDirectory() as tmp:
        path = pathlib.Path(tmp) / TRUSTED_ROOT_TARGET
        path.write_bytes(data)
        try:
            return sigstore_models.TrustedRoot.from_file(str(path))
        except Exception as err:
            raise errors.UntrustedRoot(
                f"failed to load trusted root: {err}"
            ) from err


class RetryingFetcher(FetcherInterface):
    """TUF fetcher going through `HttpClient`, retrying transient failures."""

    def __init__(
        self,
        client: Optional[_http.HttpClient] = None,
        *,
        timeout: float = TUF_DEFAULT_TIMEOUT,
        cancel: Optional[threading.Event] = None,
    ):
        self._client = client or _http.HttpClient(max_retries=TUF_MAX_RETRIES)
        self._timeout = timeout
        self._cancel = cancel

    @override
    def _fetch(self, url: str) -> Iterator[bytes]:
        try:
            data = self._client.get(
                url, timeout=self._timeout, cancel=self._cancel
            )
        except errors.NotFound as err:
            raise tuf_exceptions.DownloadHTTPError(str(err), 404) from err
        except errors.NetworkError as err:
            if err.status_code is not None:
                raise tuf_exceptions.DownloadHTTPError(
                    str(err), err.status_code
                ) from err
            raise tuf_exceptions.DownloadError(str(err)) from err
        except errors.TooLarge as err:
            raise tuf_exceptions.DownloadLengthMismatchError(str(err)) from err
        return iter([data])


def _bootstrap_root() -> bytes:
    """Returns the TUF root of the public-good instance.

    sigstore-python ships it as package data, keyed by the quoted URL of the
    repository. Other repositories need their root passed explicitly.

    Raises:
        UntrustedRoot: The installed sigstore-python does not ship it.
    """
    store = importlib.resources.files("sigstore") / "_store"
    try:
        return (
            store / parse.quote(TUF_URL, safe="") / "root.json"
        ).read_bytes()
    except OSError as err:
        raise errors.UntrustedRoot(
            f"no bootstrap TUF root for {TUF_URL} in the installed "
            f"sigstore package: {err}"
        ) from err


def _is_fresh(path: pathlib.Path) -> bool:
    if not path.is_file():
        return False
    age = time.time() - path.stat().st_mtime
    return age < TUF_CACHE_VALIDITY.total_seconds()


def _fetch_with_tuf(
    directory: pathlib.Path,
    fetcher: FetcherInterface,
    url: str,
    *,
    bootstrap_root: bytes = b"",
) -> bytes:
    metadata_dir = directory / "metadata"
    targets_dir = directory / "targets"
    metadata_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    targets_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

    root = metadata_dir / "root.json"
    if not root.exists():
        root.write_bytes(bootstrap_root or _bootstrap_root())

    updater = Updater(
        metadata_dir=str(metadata_dir),
        metadata_base_url=f"{url}/",
        target_base_url=f"{url}/targets/",
        target_dir=str(targets_dir),
        fetcher=fetcher,
    )
    try:
        updater.refresh()
        info = updater.get_targetinfo(TRUSTED_ROOT_TARGET)
        if info is None:
            raise errors.NotFound(
                f"{TRUSTED_ROOT_TARGET} is not a target of {url}"
            )
        path = updater.find_cached_target(info)
        if path is None:
            path = updater.download_target(info)
    except tuf_exceptions.RepositoryError as err:
        raise errors.UntrustedRoot(f"TUF repository error: {err}") from err
    except tuf_exceptions.DownloadError as err:
        raise errors.NetworkError(
            f"failed to fetch trusted root from {url}: {err}"
        ) from err

    target = pathlib.Path(path)
    # Refreshes the one day validity window even when TUF found no change.
    target.touch()
    return target.read_bytes()


def fetch_trusted_root(
    cache_dir: Optional[pathlib.Path] = None,
    *,
    client: Optional[_http.HttpClient] = None,
    disable_local_cache: bool = False,
    timeout: float = TUF_DEFAULT_TIMEOUT,
    cancel: Optional[threading.Event] = None,
    url: str = TUF_URL,
    bootstrap_root: bytes = b"",
) -> bytes:
    """Fetches the trusted root JSON document through TUF.

    Args:
        cache_dir: The application cache directory. TUF metadata is kept in
          its `.sigstore/root` sub-directory.
        client: The HTTP client used by the TUF fetcher.
        disable_local_cache: Use a throw-away directory for TUF metadata.
        timeout: Per request timeout, in seconds.
        cancel: Cancellation token.
        url: The TUF repository.
        bootstrap_root: The initial TUF root of `url`, trusted on first use.
          Defaults to the one shipped with sigstore-python for the
          public-good instance.

    Returns:
        The raw trusted root document, checked for its issuer.

    Raises:
        UntrustedRoot: TUF verification failed or the root is not issued by
          sigstore.dev.
        NetworkError: The repository could not be reached.
    """
    fetcher = RetryingFetcher(client, timeout=timeout, cancel=cancel)

    if disable_local_cache or cache_dir is None:
        tmp = tempfile.mkdtemp(prefix="tpmtb-tuf-")
        try:
            data = _fetch_with_tuf(
                pathlib.Path(tmp),
                fetcher,
                url,
                bootstrap_root=bootstrap_root,
            )
        finally:
            shutil.rmtree(tmp, ignore_errors=True)
    else:
        directory = pathlib.Path(cache_dir) / TUF_CACHE_DIR
        cached = directory / "targets" / TRUSTED_ROOT_TARGET
        if _is_fresh(cached):
            logger.debug("Using cached trusted root from %s", cached)
            data = cached.read_bytes()
        else:
            data = _fetch_with_tuf(
                directory, fetcher, url, bootstrap_root=bootstrap_root
            )

    check_organization(data)
    return data
