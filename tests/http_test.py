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

"""Tests for the size limited, retrying HTTP client."""

import threading
from unittest import mock

import pytest

from tests import test_support
from tpm_trust_bundle import _http
from tpm_trust_bundle import errors


URL = "https://example.com/asset"


@pytest.fixture
def mocked_sleep():
    with mock.patch.object(_http.time, "sleep", autospec=True) as sleep:
        yield sleep


def _client(responses, **kwargs):
    session = test_support.FakeSession({URL: responses})
    kwargs.setdefault("randomize_backoff", False)
    return _http.HttpClient(session, **kwargs), session


class TestBackoff:
    def test_deterministic_delays(self):
        client = _http.HttpClient(randomize_backoff=False)
        assert client.backoff_delays() == [0.1, 0.2, 0.4]

    def test_delays_are_capped(self):
        client = _http.HttpClient(max_retries=5, randomize_backoff=False)
        assert client.backoff_delays() == [0.1, 0.2, 0.4, 0.5, 0.5]

    def test_randomized_delays_stay_in_range(self):
        client = _http.HttpClient()
        for delay, nominal in zip(client.backoff_delays(), [0.1, 0.2, 0.4]):
            assert nominal * 0.5 <= delay <= nominal * 1.5


class TestGet:
    def test_success(self, mocked_sleep):
        client, session = _client(b"payload")
        assert client.get(URL) == b"payload"
        assert session.requested == [URL]
        mocked_sleep.assert_not_called()

    def test_retries_server_errors(self, mocked_sleep):
        client, session = _client(
            [
                test_support.FakeResponse(503),
                test_support.FakeResponse(500),
                test_support.FakeResponse(200, b"ok"),
            ]
        )
        assert client.get(URL) == b"ok"
        assert len(session.requested) == 3
        assert mocked_sleep.call_args_list == [mock.call(0.1), mock.call(0.2)]

    def test_gives_up_after_three_retries(self, mocked_sleep):
        client, session = _client([test_support.FakeResponse(502)])
        with pytest.raises(errors.NetworkError, match="after 4 attempts") as e:
            client.get(URL)
        assert e.value.status_code == 502
        assert len(session.requested) == 4
        assert [c.args[0] for c in mocked_sleep.call_args_list] == [
            0.1,
            0.2,
            0.4,
        ]

    def test_not_found_is_not_retried(self, mocked_sleep):
        client, session = _client([test_support.FakeResponse(404)])
        with pytest.raises(errors.NotFound):
            client.get(URL)
        assert len(session.requested) == 1

    def test_client_error_is_not_retried(self, mocked_sleep):
        client, session = _client([test_support.FakeResponse(403)])
        with pytest.raises(errors.NetworkError, match="HTTP 403") as e:
            client.get(URL)
        assert e.value.status_code == 403
        assert len(session.requested) == 1
        mocked_sleep.assert_not_called()

    def test_transport_error_is_not_retried(self):
        session = test_support.OfflineSession()
        client = _http.HttpClient(session)
        with pytest.raises(errors.NetworkError, match="unreachable"):
            client.get(URL)
        assert len(session.requested) == 1

    def test_announced_length_too_large(self):
        response = test_support.FakeResponse(
            200, b"tiny", headers={"Content-Length": "11"}
        )
        client, _ = _client(response)
        with pytest.raises(errors.TooLarge, match="length 11"):
            client.get(URL, max_size=10)
        assert response.closed

    def test_streamed_body_too_large(self):
        response = test_support.FakeResponse(200, b"x" * 11, headers={})
        client, _ = _client(response)
        with pytest.raises(errors.TooLarge, match="exceeds 10"):
            client.get(URL, max_size=10)

    def test_body_at_limit(self):
        client, _ = _client(test_support.FakeResponse(200, b"x" * 10))
        assert client.get(URL, max_size=10) == b"x" * 10

    def test_invalid_content_length(self):
        response = test_support.FakeResponse(
            200, b"x", headers={"Content-Length": "ten"}
        )
        client, _ = _client(response)
        with pytest.raises(errors.NetworkError, match="Content-Length"):
            client.get(URL)

    def test_cancelled_before_request(self):
        client, session = _client(b"payload")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(errors.Cancelled):
            client.get(URL, cancel=cancel)
        assert session.requested == []

    def test_cancelled_during_backoff(self):
        client, session = _client([test_support.FakeResponse(503)])
        cancel = mock.create_autospec(threading.Event, instance=True)
        cancel.is_set.return_value = False
        cancel.wait.return_value = True
        with pytest.raises(errors.Cancelled):
            client.get(URL, cancel=cancel)
        assert len(session.requested) == 1
        cancel.wait.assert_called_once_with(0.1)
