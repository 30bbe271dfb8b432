"""Keycloak identity-provider login, with TOTP and WebAuthn second factors."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from bs4 import BeautifulSoup

from samlidp.httpclient import HTTPClient, HTTPClientOptions
from samlidp.jumpcloud_webauthn import url_encode
from samlidp.u2f import (
    AuthenticateRequest,
    AuthenticateResponse,
    DeviceFinder,
    NoDeviceFoundError,
    U2FDevice,
    _authenticate_with_touch,
    _find_device,
)

logger = logging.getLogger(__name__)

_FORM_CONTENT_TYPE = {"Content-Type": "application/x-www-form-urlencoded"}
_CHALLENGE_RE = re.compile(r'let challenge = "(.+)";')
_RP_ID_RE = re.compile(r'let rpId = "(.+)"')
_SECURITY_CODE_FORMAT = "000000"

FormValues = dict


class BadKeyHandleError(Exception):
    """Raised by a device that does not hold the requested key handle."""


@dataclass
class AuthContext:
    """State carried across login attempts: the token and which authenticator is next."""

    mfa_token: str = ""
    authenticator_index: int = 0
    authenticator_index_valid: bool = True


def _parse(content) -> BeautifulSoup:
    return BeautifulSoup(content, "html.parser")


def _script_text(tag) -> str:
    return "".join(str(part) for part in tag.contents)


def _add(form: FormValues, name: str, value: str) -> None:
    form.setdefault(name, []).append(value)


def _request_security_code(fmt: str) -> str:
    while True:
        value = input(f"Security Token [{fmt}]: ").strip()
        if value:
            return value


def generate_authenticator_element_id(index: int) -> str:
    """Element id of the OTP credential radio button at the given index."""
    return f"kc-otp-credential-{index}"


def extract_webauthn_parameters(doc: BeautifulSoup) -> tuple:
    """Return (credential_ids, challenge, rp_id) from a WebAuthn page."""
    credential_ids = [
        element["value"]
        for element in doc.select("input[name=authn_use_chk]")
        if element.has_attr("value")
    ]
    if not credential_ids:
        raise ValueError("no credentialID found on page")

    challenge = ""
    rp_id = ""
    for script in doc.find_all("script"):
        content = _script_text(script)
        challenge_match = _CHALLENGE_RE.search(content)
        if challenge_match is None:
            continue
        challenge = challenge_match.group(1)
        rp_id_match = _RP_ID_RE.search(content)
        if rp_id_match is None:
            continue
        rp_id = rp_id_match.group(1)
    return credential_ids, challenge, rp_id


def extract_submit_url(doc: BeautifulSoup) -> str:
    """Return the action of the last form that has one."""
    submit_url = ""
    for form in doc.find_all("form"):
        if form.has_attr("action"):
            submit_url = form["action"]
    if not submit_url:
        raise ValueError("unable to locate form submit URL")
    return submit_url


def extract_saml_response(doc: BeautifulSoup) -> str:
    """Return the value of the SAMLResponse input."""
    assertion = ""
    error: Optional[str] = "unable to locate saml response field"
    for element in doc.find_all("input"):
        if element.get("name") != "SAMLResponse":
            continue
        if not element.has_attr("value"):
            error = "unable to locate saml assertion value"
            continue
        error = None
        assertion = element["value"]
    if error is not None:
        raise ValueError(error)
    return assertion


def password_valid(doc: BeautifulSoup) -> bool:
    """False when the page reports an invalid username or password."""
    return not any(
        "Invalid username or password." in span.get_text()
        for span in doc.select("span#input-error")
    )


def contains_totp_form(doc: BeautifulSoup) -> bool:
    """True when the page asks for a one-time password."""
    # "totp" before Keycloak 8.0.1, "otp" from then on.
    return bool(doc.select("input#totp")) or bool(doc.select("input#otp"))


def contains_webauthn_form(doc: BeautifulSoup) -> bool:
    """True when the page asks for a WebAuthn assertion."""
    return bool(doc.select("form#webauth"))


def _login_form_values(doc: BeautifulSoup, username: str, password: str) -> FormValues:
    form: FormValues = {}
    for element in doc.find_all("input"):
        name = element.get("name")
        if name is None:
            continue
        lname = name.lower()
        if "username" in lname:
            _add(form, name, username)
        elif "password" in lname:
            _add(form, name, password)
        elif "tryanotherway" in lname:
            logger.debug("Ignoring other ways to log in (not implemented)")
        elif element.has_attr("value"):
            _add(form, name, element["value"])
    return form


def _otp_form_values(auth_ctx: AuthContext, doc: BeautifulSoup) -> FormValues:
    form: FormValues = {}
    wanted_id = generate_authenticator_element_id(auth_ctx.authenticator_index)
    for element in doc.find_all("input"):
        name = element.get("name")
        if name is None:
            continue
        lname = name.lower()
        if "otp" in lname:
            _add(form, name, auth_ctx.mfa_token)
        elif "selectedcredentialid" in lname:
            if element.get("id") == wanted_id and element.has_attr("value"):
                _add(form, name, element["value"])
    return form


class KeycloakClient:
    """Logs into a Keycloak realm and returns the SAML assertion."""

    def __init__(
        self,
        *,
        client: Optional[HTTPClient] = None,
        options: Optional[HTTPClientOptions] = None,
        skip_verify: bool = False,
        security_code_prompt: Optional[Callable[[str], str]] = None,
        device_finder: Optional[DeviceFinder] = None,
    ) -> None:
        self.client = client if client is not None else HTTPClient(options, skip_verify=skip_verify)
        self.security_code_prompt = (
            security_code_prompt if security_code_prompt is not None else _request_security_code
        )
        self.device_finder = device_finder

    def authenticate(self, url: str, username: str, password: str, mfa_token: str = "") -> str:
        """Log in at url and return the SAML assertion."""
        auth_ctx = AuthContext(mfa_token=mfa_token)
        login_url = url
        while True:
            try:
                login_url, submit_url, form = self._fetch_login_form(login_url, username, password)
            except (ValueError, requests.RequestException) as exc:
                raise RuntimeError(f"error retrieving login form from idp: {exc}") from exc

            try:
                data = self.post_login_form(submit_url, form)
            except requests.RequestException as exc:
                raise RuntimeError("error submitting login form") from exc

            doc = _parse(data)

            if contains_totp_form(doc):
                try:
                    totp_submit_url = extract_submit_url(doc)
                except ValueError as exc:
                    raise ValueError(f"unable to locate IDP totp form submit URL: {exc}") from exc
                doc = self.post_totp_form(auth_ctx, totp_submit_url, doc)
            elif contains_webauthn_form(doc):
                try:
                    credential_ids, challenge, rp_id = extract_webauthn_parameters(doc)
                except ValueError as exc:
                    raise ValueError(f"could not extract Webauthn parameters: {exc}") from exc
                try:
                    webauthn_submit_url = extract_submit_url(doc)
                except ValueError as exc:
                    raise ValueError(
                        f"unable to locate IDP Webauthn form submit URL: {exc}"
                    ) from exc
                doc = self._post_webauthn_form(webauthn_submit_url, credential_ids, challenge, rp_id)

            try:
                return extract_saml_response(doc)
            except ValueError:
                if auth_ctx.authenticator_index_valid and password_valid(doc):
                    continue
                raise

    def get_login_form(self, login_url: str, username: str, password: str) -> tuple:
        """Fetch the login page and return (submit_url, form values)."""
        _, submit_url, form = self._fetch_login_form(login_url, username, password)
        return submit_url, form

    def _fetch_login_form(self, login_url: str, username: str, password: str) -> tuple:
        while True:
            response = self.client.get(login_url)
            doc = _parse(response.content)
            if response.status_code == 401:
                try:
                    login_url = extract_submit_url(doc)
                except ValueError as exc:
                    raise ValueError(
                        f"unable to locate IDP authentication form submit URL: {exc}"
                    ) from exc
                continue
            form = _login_form_values(doc, username, password)
            try:
                submit_url = extract_submit_url(doc)
            except ValueError as exc:
                raise ValueError(
                    f"unable to locate IDP authentication form submit URL: {exc}"
                ) from exc
            return login_url, submit_url, form

    def post_login_form(self, submit_url: str, form: FormValues) -> bytes:
        """Submit the login form and return the body of the answer."""
        response = self.client.do("POST", submit_url, data=form, headers=_FORM_CONTENT_TYPE)
        return response.content

    def post_totp_form(self, auth_ctx: AuthContext, submit_url: str, doc: BeautifulSoup) -> BeautifulSoup:
        """Submit the one-time password and return the parsed answer.

        Advances auth_ctx to the next authenticator and records whether the
        page offers one.
        """
        if not auth_ctx.mfa_token:
            auth_ctx.mfa_token = self.security_code_prompt(_SECURITY_CODE_FORMAT)

        form = _otp_form_values(auth_ctx, doc)

        auth_ctx.authenticator_index += 1
        next_id = generate_authenticator_element_id(auth_ctx.authenticator_index)
        auth_ctx.authenticator_index_valid = len(doc.select(f"input#{next_id}")) == 1

        response = self.client.do("POST", submit_url, data=form, headers=_FORM_CONTENT_TYPE)
        return _parse(response.content)

    def _sign(self, credential_id: str, challenge: str, rp_id: str) -> AuthenticateResponse:
        if self.device_finder is None:
            raise NoDeviceFoundError()
        device: U2FDevice = _find_device(self.device_finder)
        request = AuthenticateRequest(
            challenge=challenge,
            facet=f"https://{rp_id}",
            app_id=rp_id,
            key_handle=credential_id,
            web_authn=True,
        )
        return _authenticate_with_touch(device, request)

    def _post_webauthn_form(
        self, submit_url: str, credential_ids: list, challenge: str, rp_id: str
    ) -> BeautifulSoup:
        assertion: Optional[AuthenticateResponse] = None
        picked = ""
        last = len(credential_ids) - 1
        for position, credential_id in enumerate(credential_ids):
            try:
                assertion = self._sign(credential_id, challenge, rp_id)
            except BadKeyHandleError as exc:
                if position < last:
                    logger.info("Device does not have key handle, trying next ...")
                    continue
                raise RuntimeError(f"error while getting Webauthn challenge: {exc}") from exc
            picked = credential_id
            break
        if assertion is None:
            raise RuntimeError("tried all Webauthn devices, none was recognized")

        try:
            signature = url_encode(assertion.signature_data)
        except ValueError as exc:
            raise ValueError(f"unexpected format for Webauthn signature data: {exc}") from exc
        try:
            authenticator_data = url_encode(assertion.authenticator_data)
        except ValueError as exc:
            raise ValueError(f"unexpected format for Webauthn authenticator data: {exc}") from exc

        form = {
            "clientDataJSON": assertion.client_data,
            "authenticatorData": authenticator_data,
            "signature": signature,
            "credentialId": picked,
            "userHandle": "",
            "error": "",
        }
        response = self.client.do("POST", submit_url, data=form, headers=_FORM_CONTENT_TYPE)
        return _parse(response.content)