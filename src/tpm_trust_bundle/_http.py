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

"""Size limited HTTP GET with retries on server errors.

Every download in the library goes through `HttpClient.get`, which:

- refuses responses larger than a ceiling (5 MiB by default), checking both
  the announced `Content-Length` and the number of bytes actually streamed;
- retries up to three times on 5xx responses, with exponential backoff
  starting at 100ms and capped at 500ms;
- never retries on 4xx responses, transport errors or cancellation.
"""

from collections.abc import Mapping
import logging
import random
import threading
import time
from typing import Optional

import requests

from tpm_trust_bundle import errors


logger = logging.getLogger(__name__)

DEFAULT_MAX_RESPONSE_SIZE = 5 * 1024 * 1024
DEFAULT_TIMEOUT = 30.0

MAX_RETRIES = 3
INITIAL_BACKOFF = 0.1
MAX_BACKOFF = 0.5
BACKOFF_MULTIPLIER = 2.0
RANDOMIZATION_FACTOR = 0.5

_CHUNK_SIZE = 64 * 1024


def _wait(delay: float, cancel: Optional[threading.Event]) -> bool:
    """Sleeps for `delay` seconds, returning True if cancelled meanwhile."""
    if cancel is None:
        time.sleep(delay)
        return False
    return cancel.wait(delay)


def _check_cancelled(url: str, cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise errors.Cancelled(f"request to {url} cancelled")


class _RetryableStatus(Exception):
    """Internal marker for a 5xx response."""

    def __init__(self, status_code: int):
        super().__init__(status_code)
        self.status_code = status_code


class HttpClient:
    """A thin layer over `requests.Session` enforcing the download contract."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        randomize_backoff: bool = True,
    ):
        """Initializes the client.

        Args:
            session: The session to issue requests with. A new one is
              created if missing.
            timeout: Per request timeout, in seconds.
            max_retries: How many times a 5xx response is retried.
            randomize_backoff: Whether to apply a +/-50% jitter to each
              backoff delay. Tests disable it.
        """
        self.session = session if session is not None else requests.Session()
        self._timeout = timeout
        self._max_retries = max_retries
        self._randomize_backoff = randomize_backoff

    def backoff_delays(self) -> list[float]:
        """Returns the delays slept before each retry."""
        delays = []
        delay = INITIAL_BACKOFF
        for _ in range(self._max_retries):
            current = min(delay, MAX_BACKOFF)
            if self._randomize_backoff:
                spread = current * RANDOMIZATION_FACTOR
                current = random.uniform(current - spread, current + spread)
            delays.append(current)
            delay *= BACKOFF_MULTIPLIER
        return delays

    def get(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        max_size: int = DEFAULT_MAX_RESPONSE_SIZE,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bytes:
        """Downloads `url` and returns the body.

        Args:
            url: The URL to fetch.
            headers: Extra request headers.
            max_size: The largest accepted body, in bytes.
            timeout: Overrides the client timeout for this call.
            cancel: When set, the download is abandoned as soon as possible.

        Returns:
            The response body.

        Raises:
            NotFound: The server answered 404.
            TooLarge: The body exceeds `max_size`.
            NetworkError: Any other failure, including 5xx responses still
              failing after all retries.
            Cancelled: `cancel` was set.
        """
        delays = self.backoff_delays()
        attempt = 0
        while True:
            _check_cancelled(url, cancel)
            try:
                return self._get_once(
                    url, headers, max_size, timeout or self._timeout, cancel
                )
            except _RetryableStatus as status:
                if attempt >= len(delays):
                    raise errors.NetworkError(
                        f"failed to download from {url}: HTTP "
                        f"{status.status_code} after {attempt + 1} attempts",
                        status_code=status.status_code,
                    ) from None
                logger.debug(
                    "HTTP %d from %s, retrying in %.3fs",
                    status.status_code,
                    url,
                    delays[attempt],
                )
                if _wait(delays[attempt], cancel):
                    raise errors.Cancelled(
                        f"request to {url} cancelled"
                    ) from None
                attempt += 1

    def _get_once(
        self,
        url: str,
        headers: Optional[Mapping[str, str]],
        max_size: int,
        timeout: float,
        cancel: Optional[threading.Event],
    ) -> bytes:
        try:
            response = self.session.get(
                url, headers=dict(headers or {}), timeout=timeout, stream=True
            )
        except requests.RequestException as err:
            raise errors.NetworkError(
                f"failed to download from {url}: {err}"
            ) from err

        try:
            status = response.status_code
            if 500 <= status < 600:
                raise _RetryableStatus(status)
            if status == 404:
                raise errors.NotFound(
                    f"failed to download from {url}: HTTP 404",
                )
            if status != 200:
                raise errors.NetworkError(
                    f"failed to download from {url}: HTTP {status}",
                    status_code=status,
                )

            length = response.headers.get("Content-Length")
            if length:
                try:
                    announced = int(length)
                except ValueError as err:
                    raise errors.NetworkError(
                        f"invalid Content-Length {length!r} from {url}"
                    ) from err
                if announced > max_size:
                    raise errors.TooLarge(
                        f"download failed for {url}, length {announced} is "
                        f"larger than expected {max_size}"
                    )

            return _read_limited(response, url, max_size, cancel)
        finally:
            response.close()


def _read_limited(
    response: requests.Response,
    url: str,
    max_size: int,
    cancel: Optional[threading.Event],
) -> bytes:
    """Reads at most `max_size + 1` bytes, failing if the limit is crossed."""
    body = bytearray()
    try:
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            _check_cancelled(url, cancel)
            body.extend(chunk[: max_size + 1 - len(body)])
            if len(body) > max_size:
                raise errors.TooLarge(
                    f"download failed for {url}, length exceeds {max_size}"
                )
    except requests.RequestException as err:
        raise errors.NetworkError(
            f"failed to read body of {url}: {err}"
        ) from err
    return bytes(body)
