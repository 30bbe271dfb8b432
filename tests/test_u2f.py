import json
from unittest import mock

import pytest

from samlidp.u2f import (
    AuthenticateRequest,
    AuthenticateResponse,
    NoDeviceFoundError,
    UserPresenceRequiredError,
    b64_safe,
    new_u2f_client,
)


class FakeDevice:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []
        self.closed = False

    def open(self):
        pass

    def close(self):
        self.closed = True

    def authenticate(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_new_client_when_device_found():
    device = FakeDevice([AuthenticateResponse()])
    client = new_u2f_client("challengeNonce", "appID", "version", "keyHandle", lambda: device)
    assert client.device is device
    assert client.challenge_nonce == "challengeNonce"
    assert client.app_id == "appID"
    assert client.facet == "version"
    assert client.key_handle == "keyHandle"


def test_new_client_no_device_is_not_retried():
    finder = mock.Mock(side_effect=NoDeviceFoundError())
    with pytest.raises(NoDeviceFoundError) as info:
        new_u2f_client("c", "a", "f", "k", finder)
    assert finder.call_count == 1
    assert str(info.value) == "no U2F devices found. device might not be plugged in"


def test_new_client_gives_up_after_retries():
    finder = mock.Mock(side_effect=OSError("busy"))
    with mock.patch("samlidp.u2f.time.sleep") as sleep:
        with pytest.raises(RuntimeError) as info:
            new_u2f_client("c", "a", "f", "k", finder)
    assert finder.call_count == 10
    assert sleep.call_count == 10
    assert str(info.value) == "failed to create client: busy. exceeded max retries of 10"


def test_new_client_recovers_after_transient_failure():
    device = FakeDevice([AuthenticateResponse()])
    finder = mock.Mock(side_effect=[OSError("busy"), OSError("busy"), device])
    with mock.patch("samlidp.u2f.time.sleep") as sleep:
        client = new_u2f_client("c", "a", "f", "k", finder)
    assert client.device is device
    assert sleep.call_args_list == [mock.call(0.2), mock.call(0.2)]


def test_challenge_returns_signed_assertion():
    response = AuthenticateResponse(key_handle="kh", client_data="cd", signature_data="sig")
    device = FakeDevice([response])
    client = new_u2f_client("dGVzdAo=", "appID", "facet", "dGVzdAo=", lambda: device)
    with mock.patch("samlidp.u2f.time.sleep"):
        result = client.challenge_u2f()
    assert json.loads(result) == {"keyHandle": "kh", "clientData": "cd", "signatureData": "sig"}
    assert device.requests == [
        AuthenticateRequest(challenge="dGVzdAo", facet="facet", app_id="appID", key_handle="dGVzdAo")
    ]
    assert device.closed is True


def test_challenge_waits_for_touch(capsys):
    response = AuthenticateResponse(key_handle="kh")
    device = FakeDevice([UserPresenceRequiredError(), UserPresenceRequiredError(), response])
    client = new_u2f_client("dGVzdAo=", "appID", "facet", "dGVzdAo=", lambda: device)
    with mock.patch("samlidp.u2f.time.sleep"):
        result = client.challenge_u2f()
    assert json.loads(result)["keyHandle"] == "kh"
    assert len(device.requests) == 3
    err = capsys.readouterr().err
    assert err.count("Touch the flashing U2F device to authenticate...") == 1
    assert "Touch accepted" in err


def test_challenge_propagates_device_error():
    device = FakeDevice([OSError("broken")])
    client = new_u2f_client("dGVzdAo=", "appID", "facet", "dGVzdAo=", lambda: device)
    with mock.patch("samlidp.u2f.time.sleep"):
        with pytest.raises(OSError, match="broken"):
            client.challenge_u2f()
    assert device.closed is True


def test_challenge_times_out():
    device = FakeDevice([UserPresenceRequiredError()])
    client = new_u2f_client("dGVzdAo=", "appID", "facet", "dGVzdAo=", lambda: device)
    clock = {"now": 0.0}

    def fake_sleep(seconds):
        clock["now"] += seconds

    with mock.patch("samlidp.u2f.time.sleep", side_effect=fake_sleep), mock.patch(
        "samlidp.u2f.time.monotonic", side_effect=lambda: clock["now"]
    ):
        with pytest.raises(TimeoutError, match="after 25 seconds"):
            client.challenge_u2f()
    assert len(device.requests) == 99
    assert device.closed is True


def test_challenge_without_device():
    device = FakeDevice([AuthenticateResponse()])
    client = new_u2f_client("dGVzdAo=", "appID", "facet", "dGVzdAo=", lambda: device)
    client.device = None
    with pytest.raises(NoDeviceFoundError, match="No Device Found"):
        client.challenge_u2f()


@pytest.mark.parametrize(
    "data,expected",
    [("dGVzdAo=", "dGVzdAo"), ("+/+/", "-_-_"), ("", ""), ("AQID", "AQID")],
)
def test_b64_safe(data, expected):
    assert b64_safe(data) == expected


def test_b64_safe_rejects_invalid():
    with pytest.raises(ValueError):
        b64_safe("abc")