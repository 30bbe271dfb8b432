from unittest import mock

import pytest
import requests
import responses

from samlidp.httpclient import (
    HTTPClient,
    HTTPClientOptions,
    HTTPStatusError,
    build_http_client_opts,
    success_or_redirect_or_unauthorized_response_validator,
    success_or_redirect_response_validator,
)

URL = "https://idp.example.com/login"
FINAL = "https://idp.example.com/final"


@pytest.fixture
def mocked():
    with responses.RequestsMock() as rsps:
        yield rsps


def test_do_get_ok(mocked):
    mocked.add(responses.GET, URL, body="OK")
    client = HTTPClient(HTTPClientOptions(is_with_retries=False))
    response = client.do("GET", URL)
    assert response.status_code == 200
    assert response.text == "OK"


def test_user_agent_is_set(mocked):
    mocked.add(responses.GET, URL, body="OK")
    client = HTTPClient()
    client.get(URL, headers={"User-Agent": "other"})
    assert mocked.calls[0].request.headers["User-Agent"].startswith("samlidp/1.0 (")


def test_disable_redirect(mocked):
    mocked.add(responses.GET, URL, status=302, headers={"Location": FINAL}, body="OK")
    client = HTTPClient(HTTPClientOptions(is_with_retries=False))
    client.disable_follow_redirect()
    response = client.do("GET", URL)
    assert response.status_code == 302


def test_enable_redirect_follows(mocked):
    mocked.add(responses.GET, URL, status=302, headers={"Location": FINAL})
    mocked.add(responses.GET, FINAL, body="done")
    client = HTTPClient()
    client.disable_follow_redirect()
    client.enable_follow_redirect()
    response = client.get(URL)
    assert response.status_code == 200
    assert response.text == "done"


def test_response_check_raises(mocked):
    mocked.add(responses.GET, URL, status=400, body="OK")
    client = HTTPClient(
        HTTPClientOptions(is_with_retries=False),
        check_response_status=success_or_redirect_response_validator,
    )
    with pytest.raises(HTTPStatusError) as info:
        client.do("GET", URL)
    assert info.value.response.status_code == 400
    assert str(info.value) == f"request for url: {URL} failed status: 400 Bad Request"


def test_unauthorized_validator_allows_401(mocked):
    mocked.add(responses.GET, URL, status=401)
    client = HTTPClient(check_response_status=success_or_redirect_or_unauthorized_response_validator)
    assert client.get(URL).status_code == 401


def test_unauthorized_validator_rejects_500(mocked):
    mocked.add(responses.GET, URL, status=500)
    client = HTTPClient(check_response_status=success_or_redirect_or_unauthorized_response_validator)
    with pytest.raises(HTTPStatusError) as info:
        client.get(URL)
    assert info.value.response.status_code == 500


def test_retry_after_connection_error(mocked):
    mocked.add(responses.GET, URL, body=requests.ConnectionError("boom"))
    mocked.add(responses.GET, URL, body="OK")
    client = HTTPClient(HTTPClientOptions(is_with_retries=True, attempts_count=3, retry_delay=1.0))
    with mock.patch("samlidp.httpclient.time.sleep") as sleep:
        response = client.get(URL)
    assert response.text == "OK"
    assert len(mocked.calls) == 2
    sleep.assert_called_once_with(1.0)


def test_retry_gives_up_after_attempts(mocked):
    mocked.add(responses.GET, URL, body=requests.ConnectionError("boom"))
    client = HTTPClient(HTTPClientOptions(is_with_retries=True, attempts_count=2, retry_delay=1.0))
    with mock.patch("samlidp.httpclient.time.sleep"):
        with pytest.raises(requests.ConnectionError):
            client.get(URL)
    assert len(mocked.calls) == 2


def test_build_opts_valid():
    opts = build_http_client_opts("3", "5")
    assert opts == HTTPClientOptions(is_with_retries=True, attempts_count=3, retry_delay=5.0)


@pytest.mark.parametrize("attempts,delay", [("", ""), ("abc", "x"), ("-1", "-2"), ("+2", "1.5")])
def test_build_opts_invalid_uses_defaults(attempts, delay):
    opts = build_http_client_opts(attempts, delay)
    assert opts == HTTPClientOptions(is_with_retries=False, attempts_count=1, retry_delay=1.0)


def test_build_opts_zero_attempts_enables_retries():
    opts = build_http_client_opts("0", "2")
    assert opts.is_with_retries is True
    assert opts.attempts_count == 0
    assert opts.retry_delay == 2.0