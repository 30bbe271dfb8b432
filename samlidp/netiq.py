"""NetIQ Access Manager identity-provider login."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional

from bs4 import BeautifulSoup

from samlidp.httpclient import HTTPClient, HTTPClientOptions

logger = logging.getLogger(__name__)

SAML_URL = "/nidp/saml2/idpsend?PID=STSPv8a5kc"
PRIVILEGED_LOGIN_PATH = "/nidp/app/login?id=privacc&sid=0&option=credential"

_GET_TO_CONTENT = re.compile(r"getToContent\('(.*)',.*\);")
_WIN_LOC_HREF = re.compile(r"window.location.href='(.*)';")

# Input names of the user/password form and of the user/RSA-token form.
_LOGIN_FIELDS = ("Ecom_User_ID", "Ecom_Password")
_RSA_FIELDS = ("Ecom_User_ID", "Ecom_Token")


@dataclass
class Form:
    """A form to submit: target URL, method and field values."""

    url: str
    method: str = "POST"
    values: dict = field(default_factory=dict)


def _prompt_required(label: str) -> str:
    while True:
        value = input(f"{label}: ").strip()
        if value:
            return value


def _log_doc_detected(doc_type: str, data: str) -> None:
    logger.debug("doc detect docType=%s data=%s", doc_type, data)


def _root(doc: BeautifulSoup):
    return doc.body if doc.body is not None else doc


def _script_text(tag) -> str:
    return "".join(str(part) for part in tag.contents)


def is_saml_response(doc: BeautifulSoup) -> bool:
    """True when the page holds exactly one SAMLResponse input."""
    return len(doc.select('input[name="SAMLResponse"]')) == 1


def extract_saml_assertion(doc: BeautifulSoup) -> str:
    """Return the value of the SAMLResponse input."""
    element = doc.select_one('input[name="SAMLResponse"]')
    if element is None or not element.has_attr("value"):
        raise ValueError("no SAML assertion in response")
    assertion = element["value"]
    _log_doc_detected("samlResponse", assertion)
    return assertion


def _single_script_match(doc: BeautifulSoup, needle: str, pattern: re.Pattern) -> Optional[str]:
    scripts = [
        text
        for text in (_script_text(s) for s in _root(doc).find_all("script"))
        if needle in text
    ]
    if len(scripts) != 1:
        return None
    match = pattern.search(scripts[0].strip())
    return match.group(1) if match else None


def extract_get_to_content_url(doc: BeautifulSoup) -> Optional[str]:
    """Return the resource path of a getToContent script, or None."""
    path = _single_script_match(doc, "getToContent", _GET_TO_CONTENT)
    if path is not None:
        _log_doc_detected("getToContent", path)
    return path


def extract_win_loc_href_url(doc: BeautifulSoup) -> Optional[str]:
    """Return the target of a window.location.href script, or None."""
    target = _single_script_match(doc, "window.location.href", _WIN_LOC_HREF)
    if target is not None:
        _log_doc_detected("winLocHref", target)
    return target


def _extract_login_form(doc: BeautifulSoup, field_name: str, doc_type: str) -> Optional[Form]:
    forms = [
        form
        for form in _root(doc).find_all("form")
        if form.select_one(f'input[name="{field_name}"]') is not None
    ]
    if len(forms) != 1 or not forms[0].has_attr("action"):
        return None
    action = forms[0]["action"]
    _log_doc_detected(doc_type, action)
    return Form(url=action, method="POST")


def extract_idp_login_pass(doc: BeautifulSoup) -> Optional[Form]:
    """Return the user/password login form, or None."""
    return _extract_login_form(doc, _LOGIN_FIELDS[1], "idpLoginPass")


def extract_idp_login_rsa(doc: BeautifulSoup) -> Optional[Form]:
    """Return the user/token (RSA) login form, or None."""
    return _extract_login_form(doc, _RSA_FIELDS[1], "idpLoginRsa")


def get_login_url(mfa: str, base_url: str, default_resource_path: str) -> str:
    """Choose the login URL for the MFA mode: Auto or Privileged."""
    if mfa == "Auto":
        return base_url + default_resource_path
    if mfa == "Privileged":
        # Privileged accounts skip MFA and log in elsewhere.
        return base_url + PRIVILEGED_LOGIN_PATH
    raise ValueError("Unsupported MFA")


class NetIQClient:
    """Logs into a NetIQ identity provider and returns the SAML assertion."""

    def __init__(
        self,
        mfa: str = "Auto",
        *,
        client: Optional[HTTPClient] = None,
        options: Optional[HTTPClientOptions] = None,
        skip_verify: bool = False,
        token_prompt: Optional[Callable[[str], str]] = None,
    ) -> None:
        self.mfa = mfa
        self.client = client if client is not None else HTTPClient(options, skip_verify=skip_verify)
        self.token_prompt = token_prompt if token_prompt is not None else _prompt_required

    def authenticate(self, url: str, username: str, password: str) -> str:
        """Follow the login pages from the IdP at url until a SAML assertion appears."""
        response = self.client.get(url + SAML_URL)
        while True:
            doc = BeautifulSoup(response.content, "html.parser")

            if is_saml_response(doc):
                return extract_saml_assertion(doc)

            resource_path = extract_get_to_content_url(doc)
            if resource_path is not None:
                try:
                    login_url = get_login_url(self.mfa, url, resource_path)
                except ValueError as exc:
                    raise ValueError(
                        f"MFA option unsupported. Valid MFA options are: Auto or Privileged: {exc}"
                    ) from exc
                response = self.client.get(login_url + "&uiDestination=contentDiv")
                continue

            target = extract_win_loc_href_url(doc)
            if target is not None:
                response = self.client.get(target)
                continue

            form = extract_idp_login_pass(doc)
            if form is not None:
                form.values.update(zip(_LOGIN_FIELDS, (username, password)))
                response = self._submit(form)
                continue

            form = extract_idp_login_rsa(doc)
            if form is not None:
                rsa_code = self.token_prompt("Enter concatenated pin and token")
                form.values.update(zip(_RSA_FIELDS, (username, rsa_code)))
                response = self._submit(form)
                continue

            raise ValueError("unknown document type")

    def _submit(self, form: Form):
        return self.client.do(form.method, form.url, data=form.values)