"""JumpCloud single sign-on login, with TOTP, WebAuthn, Duo and push second factors."""

from __future__ import annotations

import html
import json
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Sequence

import requests
from bs4 import BeautifulSoup

from samlidp.httpclient import HTTPClient, HTTPClientOptions
from samlidp.jumpcloud_protect import json_headers, jumpcloud_protect_auth
from samlidp.jumpcloud_webauthn import new_fido_client
from samlidp.u2f import DeviceFinder, NoDeviceFoundError, U2FDevice

logger = logging.getLogger(__name__)

JC_SSO_BASE_URL = "https://sso.jumpcloud.com/"
XSRF_URL = "https://console.jumpcloud.com/userconsole/xsrf"
AUTH_SUBMIT_URL = "https://console.jumpcloud.com/userconsole/auth"
WEBAUTHN_SUBMIT_URL = "https://console.jumpcloud.com/userconsole/auth/webauthn"
DUO_AUTH_SUBMIT_URL = "https://console.jumpcloud.com/userconsole/auth/duo"
JUMPCLOUD_PROTECT_SUBMIT_URL = "https://console.jumpcloud.com/userconsole/auth/push"

IDENTIFIER_TOTP_MFA = "totp"
IDENTIFIER_DUO_MFA = "duo"
IDENTIFIER_U2F = "webauthn"
IDENTIFIER_JUMPCLOUD_PROTECT = "push"

SUPPORTED_MFA_OPTIONS = {
    IDENTIFIER_TOTP_MFA: "TOTP MFA authentication",
    IDENTIFIER_DUO_MFA: "DUO MFA authentication",
    IDENTIFIER_U2F: "FIDO WebAuthn authentication",
    IDENTIFIER_JUMPCLOUD_PROTECT: "PUSH MFA authentication (JumpCloud Protect)",
}

DUO_MFA_OPTIONS = ("Duo Push", "Passcode")
DUO_POLL_INTERVAL = 3.0

# The base URL is used as a regular expression, as the service does.
_SSO_BASE_RE = re.compile(JC_SSO_BASE_URL)
_FORM_CONTENT_TYPE = {"Content-Type": "application/x-www-form-urlencoded"}


@dataclass
class AuthRequest:
    """The body of a JumpCloud console authentication request."""

    context: str = ""
    redirect_to: str = ""
    email: str = ""
    password: str = ""
    otp: str = ""

    def to_json(self) -> str:
        """Return the JSON body with the field names the console expects."""
        return json.dumps(
            {
                "Context": self.context,
                "RedirectTo": self.redirect_to,
                "Email": self.email,
                "Password": self.password,
                "OTP": self.otp,
            }
        )


def _lookup(data: Any, path: str) -> Any:
    """Follow a dotted path through nested objects and arrays; None when absent."""
    current = data
    for key in path.split("."):
        if isinstance(current, dict):
            if key not in current:
                return None
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps(value)


def _json_or_none(content: bytes) -> Any:
    try:
        return json.loads(content)
    except ValueError:
        return None


def _field(content: bytes, path: str) -> str:
    return _text(_lookup(_json_or_none(content), path))


def _prompt_required(label: str) -> str:
    while True:
        value = input(f"{label}: ").strip()
        if value:
            return value


def _choose(label: str, options: Sequence[str]) -> int:
    for position, option in enumerate(options, start=1):
        print(f"{position}. {option}")
    while True:
        answer = input(f"{label} [1-{len(options)}]: ").strip()
        if answer.isdigit() and 1 <= int(answer) <= len(options):
            return int(answer) - 1


def _no_device() -> U2FDevice:
    raise NoDeviceFoundError()


def _extract_saml_assertion(content: bytes) -> str:
    doc = BeautifulSoup(content, "html.parser")
    assertion = ""
    for element in doc.find_all("input"):
        name = element.get("name")
        if name is None:
            raise ValueError("unable to locate IDP authentication form submit URL")
        if name == "SAMLResponse":
            if not element.has_attr("value"):
                raise ValueError("unable to locate saml assertion value")
            assertion = element["value"]
    return assertion


class JumpCloudClient:
    """Logs into JumpCloud and returns the SAML assertion."""

    def __init__(
        self,
        mfa: str = "Auto",
        *,
        client: Optional[HTTPClient] = None,
        options: Optional[HTTPClientOptions] = None,
        skip_verify: bool = False,
        prompt: Optional[Callable[[str], str]] = None,
        chooser: Optional[Callable[[str, Sequence[str]], int]] = None,
        device_finder: Optional[DeviceFinder] = None,
        duo_poll_interval: float = DUO_POLL_INTERVAL,
    ) -> None:
        self.mfa = mfa
        self.client = client if client is not None else HTTPClient(options, skip_verify=skip_verify)
        self.prompt = prompt if prompt is not None else _prompt_required
        self.chooser = chooser if chooser is not None else _choose
        self.device_finder = device_finder if device_finder is not None else _no_device
        self.duo_poll_interval = duo_poll_interval

    def authenticate(
        self,
        url: str,
        username: str,
        password: str,
        mfa_token: str = "",
        duo_mfa_option: str = "",
    ) -> str:
        """Log in for the application at url and return the SAML assertion."""
        try:
            response = self.client.get(XSRF_URL)
        except requests.RequestException as exc:
            raise RuntimeError(f"error retieving XSRF Token: {exc}") from exc
        payload = _json_or_none(response.content)
        if not isinstance(payload, dict):
            raise ValueError("Error unmarshalling xsrf response!")
        xsrf_token = _text(payload.get("xsrf"))

        auth_request = AuthRequest(
            context="sso",
            redirect_to=_SSO_BASE_RE.sub("", url),
            email=username,
            password=password,
        )
        try:
            response = self.client.do(
                "POST",
                AUTH_SUBMIT_URL,
                data=auth_request.to_json().encode(),
                headers=json_headers(xsrf_token),
            )
        except requests.RequestException as exc:
            raise RuntimeError(f"error retrieving login form: {exc}") from exc

        # A 401 either asks for a second factor or reports a fatal problem.
        if response.status_code == 401:
            message_payload = _json_or_none(response.content)
            if not isinstance(message_payload, dict):
                raise ValueError("Error unmarshalling message response!")
            message = _text(message_payload.get("message"))
            if message != "MFA required.":
                raise RuntimeError(f"Jumpcloud error: {message}")
            response = self.verify_mfa(
                xsrf_token, auth_request, response.content, mfa_token, duo_mfa_option
            )

        if response.status_code != 200:
            raise RuntimeError(f"error when trying to auth, status code {response.status_code}")

        redirect = _json_or_none(response.content)
        if not isinstance(redirect, dict):
            raise ValueError("Error unmarshalling redirectTo response!")
        address = _text(redirect.get("redirectTo"))

        try:
            saml_page = self.client.get(address)
        except requests.RequestException as exc:
            raise RuntimeError(f"error submitting request for SAML value: {exc}") from exc
        return _extract_saml_assertion(saml_page.content)

    def get_user_option(self, body: bytes) -> str:
        """Pick the second factor to use from the factors the server offers."""
        payload = _json_or_none(body)
        factors = _lookup(payload, "factors")
        if factors is None:
            raise ValueError("Mfa not configured")
        if not isinstance(factors, list):
            factors = [factors]

        identifiers = []
        labels = []
        for factor in factors:
            if _text(_lookup(factor, "status")) != "available":
                continue
            identifier = _text(_lookup(factor, "type"))
            if identifier not in SUPPORTED_MFA_OPTIONS:
                continue
            if self.mfa != "Auto" and self.mfa.lower() == identifier:
                return identifier
            identifiers.append(identifier)
            labels.append(SUPPORTED_MFA_OPTIONS[identifier])

        if not identifiers:
            raise ValueError("No MFA options available")
        if len(identifiers) == 1:
            return identifiers[0]
        return identifiers[self.chooser("Select which MFA option to use", labels)]

    def verify_mfa(
        self,
        xsrf_token: str,
        auth_request: AuthRequest,
        body: bytes,
        mfa_token: str = "",
        duo_mfa_option: str = "",
    ) -> requests.Response:
        """Complete the second factor and return the console's final answer."""
        option = self.get_user_option(body)
        self.mfa = option

        if option == IDENTIFIER_TOTP_MFA:
            otp = mfa_token or self.prompt("MFA Token")
            request_body = replace(auth_request, otp=otp).to_json().encode()
            return self.client.do(
                "POST", AUTH_SUBMIT_URL, data=request_body, headers=json_headers(xsrf_token)
            )
        if option == IDENTIFIER_U2F:
            return self._verify_webauthn(xsrf_token)
        if option == IDENTIFIER_JUMPCLOUD_PROTECT:
            return jumpcloud_protect_auth(self.client, JUMPCLOUD_PROTECT_SUBMIT_URL, xsrf_token)
        if option == IDENTIFIER_DUO_MFA:
            return self._verify_duo(xsrf_token, duo_mfa_option)
        raise ValueError("no MFA method provided")

    def _verify_webauthn(self, xsrf_token: str) -> requests.Response:
        try:
            response = self.client.get(WEBAUTHN_SUBMIT_URL)
        except requests.RequestException as exc:
            raise RuntimeError(f"error submitting request for SAML value: {exc}") from exc
        payload = _json_or_none(response.content)

        allow_credentials = _lookup(payload, "publicKey.allowCredentials")
        if not isinstance(allow_credentials, list) or not allow_credentials:
            raise ValueError(
                "unsupported case, we expect publicKey to be an array of at least one element"
            )
        first = allow_credentials[0]
        if not isinstance(first, dict) or "id" not in first:
            raise ValueError("can't find key handle or key id in the allowed credentials map")

        fido_client = new_fido_client(
            _text(_lookup(payload, "publicKey.challenge")),
            _text(_lookup(payload, "publicKey.rpId")),
            _text(first["id"]),
            _text(_lookup(payload, "token")),
            self.device_finder,
        )
        signed = fido_client.challenge_u2f()
        return self.client.do(
            "POST",
            WEBAUTHN_SUBMIT_URL,
            data=json.dumps(signed.to_dict()).encode(),
            headers=json_headers(xsrf_token),
        )

    def _post_form(self, url: str, form, **kwargs) -> requests.Response:
        try:
            return self.client.do("POST", url, data=form, headers=_FORM_CONTENT_TYPE, **kwargs)
        except requests.RequestException as exc:
            raise RuntimeError(f"error retrieving verify response: {exc}") from exc

    def _verify_duo(self, xsrf_token: str, duo_mfa_option: str) -> requests.Response:
        try:
            response = self.client.get(DUO_AUTH_SUBMIT_URL, headers=json_headers(xsrf_token))
        except requests.RequestException as exc:
            raise RuntimeError(f"error retrieving Duo configuration: {exc}") from exc
        if response.status_code != 200:
            raise RuntimeError("error retrieving Duo configuration, non 200 status returned")

        duo_host = _field(response.content, "api_host")
        signatures = _field(response.content, "sig_request").split(":")
        duo_token = _field(response.content, "token")
        if len(signatures) < 2:
            raise ValueError("unexpected Duo signature request format")

        init_form = [
            ("parent", "https://console.jumpcloud.com/duo2fa"),
            ("java_version", ""),
            ("java_version", ""),
            ("flash_version", ""),
            ("screen_resolution_width", "3008"),
            ("screen_resolution_height", "1692"),
            ("color_depth", "24"),
        ]
        response = self._post_form(
            f"https://{duo_host}/frame/web/v1/auth", init_form, params={"tx": signatures[0]}
        )
        doc = BeautifulSoup(response.content, "html.parser")
        sid_input = doc.select_one('input[name="sid"]')
        if sid_input is None or not sid_input.has_attr("value"):
            raise ValueError("unable to locate saml response")
        duo_sid = html.unescape(sid_input["value"])

        # Only push and passcode are supported.
        if duo_mfa_option in DUO_MFA_OPTIONS:
            factor = duo_mfa_option
        else:
            factor = DUO_MFA_OPTIONS[self.chooser("Select a DUO MFA Option", list(DUO_MFA_OPTIONS))]

        prompt_form = [
            ("sid", duo_sid),
            ("device", "phone1"),
            ("factor", factor),
            ("out_of_date", "false"),
        ]
        if factor == "Passcode":
            prompt_form.append(("passcode", self.prompt("Enter passcode")))

        response = self._post_form(f"https://{duo_host}/frame/prompt", prompt_form)
        if _field(response.content, "stat") != "OK":
            raise RuntimeError("error authenticating mfa device")
        tx_id = _field(response.content, "response.txid")

        status_url = f"https://{duo_host}/frame/status"
        status_form = [("sid", duo_sid), ("txid", tx_id)]

        result = ""
        result_url = ""
        while True:
            response = self._post_form(status_url, status_form)
            result = _field(response.content, "response.result")
            result_url = _field(response.content, "response.result_url")
            new_sid = _field(response.content, "response.sid")
            if new_sid:
                duo_sid = new_sid
            logger.info("%s", _field(response.content, "response.status"))

            if result == "SUCCESS":
                break
            if result == "FAILURE":
                raise RuntimeError("failed to authenticate device")
            # Most likely a push waiting for approval.
            time.sleep(self.duo_poll_interval)

        try:
            response = self.client.do(
                "POST",
                f"https://{duo_host}{result_url}",
                data=[("sid", duo_sid)],
                headers=_FORM_CONTENT_TYPE,
            )
        except requests.RequestException as exc:
            raise RuntimeError(f"error retrieving duo result response: {exc}") from exc

        stat = _field(response.content, "stat")
        if stat != "OK":
            message = _field(response.content, "message")
            raise RuntimeError(f"duoResultSubmit: {stat} {message}")
        cookie = _field(response.content, "response.cookie")
        if not cookie:
            raise RuntimeError("duoResultSubmit: Unable to get response.cookie")

        payload = json.dumps({"token": duo_token, "sig_response": f"{cookie}:{signatures[1]}"})
        return self.client.do(
            "POST", DUO_AUTH_SUBMIT_URL, data=payload.encode(), headers=json_headers(xsrf_token)
        )