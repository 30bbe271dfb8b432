"""U2F security-key challenge handling."""

from __future__ import annotations

import base64
import json
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

MAX_OPEN_RETRIES = 10
RETRY_DELAY = 0.2
AUTH_TIMEOUT = 25.0
POLL_INTERVAL = 0.25


class UserPresenceRequiredError(Exception):
    """The device is waiting for the user to touch it."""


class NoDeviceFoundError(Exception):
    """No U2F device is available."""

    def __init__(self, message: str = "no U2F devices found. device might not be plugged in") -> None:
        super().__init__(message)


@dataclass
class AuthenticateRequest:
    """An authentication request sent to a device."""

    challenge: str
    facet: str
    app_id: str
    key_handle: str
    channel_id_public_key: Optional[bytes] = None
    channel_id_unused: bool = False
    check_only: bool = False
    web_authn: bool = False


@dataclass
class AuthenticateResponse:
    """A device's answer to an authentication request."""

    key_handle: str = ""
    client_data: str = ""
    signature_data: str = ""
    authenticator_data: str = field(default="")


class U2FDevice(Protocol):
    """What a U2F device must offer."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def authenticate(self, request: AuthenticateRequest) -> AuthenticateResponse: ...


DeviceFinder = Callable[[], U2FDevice]


def _find_device(device_finder: DeviceFinder) -> U2FDevice:
    """Ask the finder for a device, retrying transient failures."""
    last_error: Optional[Exception] = None
    for _ in range(MAX_OPEN_RETRIES):
        try:
            return device_finder()
        except NoDeviceFoundError:
            raise
        except Exception as exc:  # any other failure may be transient
            last_error = exc
            time.sleep(RETRY_DELAY)
    raise RuntimeError(
        f"failed to create client: {last_error}. exceeded max retries of {MAX_OPEN_RETRIES}"
    ) from last_error


def _authenticate_with_touch(device: U2FDevice, request: AuthenticateRequest) -> AuthenticateResponse:
    """Poll the device until the user touches it; always closes the device."""
    prompted = False
    deadline = time.monotonic() + AUTH_TIMEOUT
    try:
        while True:
            time.sleep(POLL_INTERVAL)
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Failed to get authentication response after {int(AUTH_TIMEOUT)} seconds"
                )
            try:
                response = device.authenticate(request)
            except UserPresenceRequiredError:
                if not prompted:
                    print("Touch the flashing U2F device to authenticate...", file=sys.stderr)
                    prompted = True
                continue
            print("  ==> Touch accepted. Proceeding with authentication", file=sys.stderr)
            return response
    finally:
        device.close()


def _response_json(response: AuthenticateResponse) -> str:
    payload = {
        "keyHandle": response.key_handle,
        "clientData": response.client_data,
        "signatureData": response.signature_data,
    }
    if response.authenticator_data:
        payload["authenticatorData"] = response.authenticator_data
    return json.dumps(payload)


def b64_safe(data: str) -> str:
    """Re-encode padded standard base64 as unpadded URL-safe base64."""
    raw = base64.b64decode(data, validate=True)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


@dataclass
class U2FClient:
    """A challenge together with the device that will answer it."""

    challenge_nonce: str
    app_id: str
    facet: str
    device: Optional[U2FDevice]
    key_handle: str

    def challenge_u2f(self) -> str:
        """Have the device sign the challenge and return the response as JSON."""
        if self.device is None:
            raise NoDeviceFoundError("No Device Found")
        request = AuthenticateRequest(
            challenge=b64_safe(self.challenge_nonce),
            facet=self.facet,
            app_id=self.app_id,
            key_handle=b64_safe(self.key_handle),
        )
        return _response_json(_authenticate_with_touch(self.device, request))


def new_u2f_client(
    challenge_nonce: str,
    app_id: str,
    facet: str,
    key_handle: str,
    device_finder: DeviceFinder,
) -> U2FClient:
    """Find a device and return a client bound to it."""
    device = _find_device(device_finder)
    return U2FClient(
        challenge_nonce=challenge_nonce,
        app_id=app_id,
        facet=facet,
        device=device,
        key_handle=key_handle,
    )