"""JumpCloud Protect push-notification approval."""

from __future__ import annotations

import json
import logging
import posixpath
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Union
from urllib.parse import urlsplit, urlunsplit

import requests

from samlidp.httpclient import HTTPClient

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)

_EMPTY_JSON = b"{}"
_FRACTION = re.compile(r"\.(\d+)")
_FIELDS = {
    "id": "id",
    "expiresAt": "expires_at",
    "initiatedAt": "initiated_at",
    "status": "status",
    "userId": "user_id",
}
_TIME_FIELDS = {"expires_at", "initiated_at"}


def _parse_time(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp, keeping at most microsecond precision."""
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {value!r}")
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp has no time zone: {value!r}")
    return parsed


@dataclass
class JumpCloudPushResponse:
    """The state of a JumpCloud Protect push request."""

    id: str = ""
    expires_at: datetime = ZERO_TIME
    initiated_at: datetime = ZERO_TIME
    status: str = ""
    user_id: str = ""

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "JumpCloudPushResponse":
        """Build a push response from its JSON form."""
        return cls()._merged(data)

    def _merged(self, data: Union[str, bytes]) -> "JumpCloudPushResponse":
        """Return a copy updated with the fields present in the JSON document."""
        payload = json.loads(data)
        if not isinstance(payload, dict):
            raise ValueError("push response is not a JSON object")
        changes: dict = {}
        for key, attr in _FIELDS.items():
            value = payload.get(key)
            if value is None:
                continue
            if attr in _TIME_FIELDS:
                value = _parse_time(value)
            elif not isinstance(value, str):
                raise ValueError(f"{key} must be a string, got {value!r}")
            changes[attr] = value
        return replace(self, **changes)


def json_headers(xsrf_token: str) -> dict:
    """Headers JumpCloud's console API expects on JSON requests."""
    return {
        "X-Xsrftoken": xsrf_token,
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def _join_path(url: str, segment: str) -> str:
    parts = urlsplit(url)
    joined = posixpath.normpath(posixpath.join(parts.path, segment))
    if parts.netloc and not joined.startswith("/"):
        joined = "/" + joined
    return urlunsplit((parts.scheme, parts.netloc, joined, parts.query, parts.fragment))


def jumpcloud_protect_auth(
    client: HTTPClient, submit_url: str, xsrf_token: str
) -> requests.Response:
    """Start a push approval, wait for it to be accepted and log in.

    Returns the response of the final login request.
    """
    headers = json_headers(xsrf_token)

    response = client.do("POST", submit_url, data=_EMPTY_JSON, headers=headers)
    if response.status_code != 200:
        raise RuntimeError("error retrieving JumpCloud PUSH payload, non 200 status returned")
    try:
        push = JumpCloudPushResponse.from_json(response.content)
    except ValueError as exc:
        raise ValueError(f"failed to unmarshal JumpCloud PUSH payload to struct: {exc}") from exc

    poll_url = _join_path(submit_url, push.id)

    # Poll until the status is something other than "pending":
    # accepted, expired or denied.
    while push.status == "pending":
        if datetime.now(timezone.utc) > push.expires_at:
            raise TimeoutError("the session is expired try again")

        poll = client.do("GET", poll_url, headers=headers)
        if poll.status_code != 200:
            raise RuntimeError(f"received non 200 http code, http code = {poll.status_code}")
        try:
            push = push._merged(poll.content)
        except ValueError as exc:
            raise ValueError(f"failed to unmarshal poll result json into struct: {exc}") from exc
        logger.debug("push status=%s", push.status)

        time.sleep(POLL_INTERVAL)

    if push.status != "accepted":
        raise RuntimeError(f"didn't receive accepted, status={push.status}")

    return client.do("POST", _join_path(poll_url, "login"), data=_EMPTY_JSON, headers=headers)