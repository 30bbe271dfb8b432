"""WebAuthn assertions for the JumpCloud console, answered by a U2F device."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Optional

from samlidp.u2f import (
    AuthenticateRequest,
    DeviceFinder,
    NoDeviceFoundError,
    U2FDevice,
    _authenticate_with_touch,
    _find_device,
)

JUMPCLOUD_ORIGIN = "https://console.jumpcloud.com"


def url_encode(std_encoded: str) -> str:
    """Re-encode padded standard base64 as unpadded URL-safe base64."""
    raw = base64.b64decode(std_encoded, validate=True)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


@dataclass
class PublicKeyResponse:
    """The authenticator's part of a public-key credential."""

    client_data: str
    authenticator_data: str
    signature_data: str
    user_handle: Optional[str] = None


@dataclass
class PublicKey:
    """A public-key credential as sent to JumpCloud."""

    id: str
    raw_id: str
    type: str
    response: PublicKeyResponse


@dataclass
class JumpCloudResponse:
    """The body posted back to JumpCloud after a WebAuthn challenge."""

    public_key_credential: PublicKey
    token: str

    def to_dict(self) -> dict:
        """Return the JSON-ready form with JumpCloud's field names."""
        credential = self.public_key_credential
        return {
            "publicKeyCredential": {
                "id": credential.id,
                "rawId": credential.raw_id,
                "type": credential.type,
                "response": {
                    "clientDataJSON": credential.response.client_data,
                    "authenticatorData": credential.response.authenticator_data,
                    "signature": credential.response.signature_data,
                    "userHandle": credential.response.user_handle,
                },
            },
            "token": self.token,
        }


@dataclass
class FidoClient:
    """A WebAuthn challenge together with the device that will answer it."""

    challenge: str
    rp_id: str
    key_handle: str
    token: str
    device: Optional[U2FDevice]

    def challenge_u2f(self) -> JumpCloudResponse:
        """Have the device sign the challenge and build JumpCloud's response."""
        if self.device is None:
            raise NoDeviceFoundError("No Device Found")
        request = AuthenticateRequest(
            challenge=self.challenge,
            facet=JUMPCLOUD_ORIGIN,
            app_id=self.rp_id,
            key_handle=self.key_handle,
            web_authn=True,
        )
        response = _authenticate_with_touch(self.device, request)
        return JumpCloudResponse(
            public_key_credential=PublicKey(
                id=response.key_handle,
                raw_id=response.key_handle,
                type="public-key",
                response=PublicKeyResponse(
                    client_data=response.client_data,
                    authenticator_data=url_encode(response.authenticator_data),
                    signature_data=url_encode(response.signature_data),
                    user_handle=None,
                ),
            ),
            token=self.token,
        )


def new_fido_client(
    challenge: str,
    rp_id: str,
    key_handle: str,
    token: str,
    device_finder: DeviceFinder,
) -> FidoClient:
    """Find a device and return a WebAuthn client bound to it."""
    device = _find_device(device_finder)
    return FidoClient(
        challenge=challenge,
        rp_id=rp_id,
        key_handle=key_handle,
        token=token,
        device=device,
    )