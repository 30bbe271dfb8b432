# samlidp

`samlidp` signs in to a SAML identity provider for you and returns the
base64 `SAMLResponse` assertion. This is the value the provider would
otherwise post to the service provider from a browser. It handles
password login and these second factors: TOTP codes, push approval, Duo,
and FIDO/U2F security keys.

## Supported providers

| Provider  | Module              | Client class      | Second factors                                   |
|-----------|---------------------|-------------------|--------------------------------------------------|
| JumpCloud | `samlidp.jumpcloud` | `JumpCloudClient` | TOTP, Duo (push or passcode), WebAuthn, JumpCloud Protect push |
| Keycloak  | `samlidp.keycloak`  | `KeycloakClient`  | TOTP (one or more authenticators), WebAuthn      |
| NetIQ     | `samlidp.netiq`     | `NetIQClient`     | RSA token, or the "Privileged" login path        |

## Installation

The package needs `requests` and `beautifulsoup4`. The `test` extra adds
`pytest` and `responses`, which the test suite in `tests/` uses.

## HTTP client

Every provider client talks to the identity provider through
`samlidp.httpclient.HTTPClient`. The client:

- wraps a `requests.Session`, so cookies are kept between requests;
- sends a fixed `User-Agent`;
- can retry failed requests;
- can check each response with a validator.

Each provider client takes its own `client=`. If you leave that out,
pass `options=` and `skip_verify=` instead and the provider client
builds one for you.

```python
from samlidp.httpclient import (
    HTTPClient,
    build_http_client_opts,
    success_or_redirect_response_validator,
)

# Both arguments are strings, as read from a configuration file.
options = build_http_client_opts("3", "2")

client = HTTPClient(options, skip_verify=False)
client.check_response_status = success_or_redirect_response_validator

response = client.get("https://idp.example.com/login")
```

How `build_http_client_opts` reads its two strings:

- The attempts count turns retries on only if it is a valid unsigned
  integer. Anything else means a single attempt with no retries.
- The retry delay is in seconds. If it is invalid, one second is used.

When retries are on, only connection-level failures are retried, that
is `requests.RequestException`. The wait doubles after each failed
attempt, starting from the delay. An attempts count of `0` means the
request is retried without limit.

If a validator rejects a response, it raises `HTTPStatusError`. The
response is available on the error as `.response`. There are two
validators:

- `success_or_redirect_response_validator` accepts status codes 200 to
  399.
- `success_or_redirect_or_unauthorized_response_validator` accepts the
  same codes and also 401.

Redirects are followed by default. `client.disable_follow_redirect()`
makes the client return 3xx responses as they are, and
`client.enable_follow_redirect()` turns following back on.

## Logging in

When a code, a passcode or a choice is needed, the clients ask for it on
standard input. To ask for it some other way, pass your own callables.

### Keycloak

```python
from samlidp.keycloak import KeycloakClient

password = "password"
keycloak = KeycloakClient(security_code_prompt=lambda fmt: input(f"Code [{fmt}]: "))
assertion = keycloak.authenticate(
    "https://id.example.com/auth/realms/master/protocol/saml/clients/amazon-aws",
    "user@example.com",
    password,
    "",  # TOTP code; empty means security_code_prompt is asked
)
```

If the login page offers more than one OTP authenticator, the client
tries each in turn until a SAML response comes back. It starts the
login again only while the page still accepts the password.

WebAuthn pages need `device_finder=`, described under "Security keys"
below. Without one, `NoDeviceFoundError` is raised. A credential the
device does not hold is skipped, and the next one is tried.

`get_login_form`, `post_login_form` and `post_totp_form` expose the
individual steps of the login. The page helpers `extract_submit_url`,
`extract_saml_response`, `extract_webauthn_parameters`,
`contains_totp_form`, `contains_webauthn_form` and `password_valid` work
on a parsed `BeautifulSoup` document.

### JumpCloud

```python
from samlidp.jumpcloud import JumpCloudClient

password = "password"
jumpcloud = JumpCloudClient(mfa="Auto")
assertion = jumpcloud.authenticate(
    "https://sso.jumpcloud.com/saml2/example-app",
    "user@example.com",
    password,
    "",          # TOTP code; empty means it is asked for
    "Duo Push",  # "Duo Push", "Passcode", or "" to be asked
)
```

How the second factor is chosen:

- The client only considers the factors the account reports as
  available.
- With `mfa="Auto"`, if just one factor is available it is used. If
  several are, `chooser` is asked which one to use.
- Any other value (`"totp"`, `"duo"`, `"webauthn"` or `"push"`, in any
  case) selects that factor directly when it is available. Otherwise
  the choice is made as for `"Auto"`.

These keyword arguments change how the client asks and waits:

- `prompt` replaces the text prompts.
- `chooser` replaces the menu prompts.
- `duo_poll_interval` sets the seconds between Duo status polls. The
  default is 3.
- `device_finder` supplies a security key for WebAuthn. Without one,
  WebAuthn raises `NoDeviceFoundError`.

Push approval is in `samlidp.jumpcloud_protect`.
`jumpcloud_protect_auth(client, submit_url, xsrf_token)` starts a push
request and polls it every half second until it is no longer pending.
It then logs in and returns the response to that login. It raises in
these cases:

- the push has expired;
- a poll returns a status other than 200;
- the final status is anything but `accepted`.

### NetIQ

```python
from samlidp.netiq import NetIQClient

password = "password"
netiq = NetIQClient(mfa="Auto")  # or "Privileged"
assertion = netiq.authenticate("https://login.example.com", "user", password)
```

The client follows the provider's chain of pages until it reaches the
one that carries the SAML response. Along the way it handles
`getToContent` redirects, `window.location.href` hops, the password
form and the RSA token form. The RSA code is read through
`token_prompt`.

If the chain reaches a `getToContent` page, `mfa` must be `Auto` or
`Privileged`. Any other value raises `ValueError`. A page the client
does not recognise also raises `ValueError("unknown document type")`.

## Security keys

A device finder is a callable with no arguments. It returns an object
that implements the `samlidp.u2f.U2FDevice` protocol: `open()`,
`close()` and `authenticate(request)`.

- If no key is present, the finder should raise `NoDeviceFoundError`.
  That error is passed on at once.
- Any other error from the finder is retried up to ten times, with a
  pause of 0.2 seconds between tries.

`authenticate` should raise `UserPresenceRequiredError` while it waits
for a touch. The client asks the device every 250 ms. The first time a
touch is needed, a prompt is printed to standard error. If no touch
comes within 25 seconds, `TimeoutError` is raised. The device is closed
afterwards in every case.

```python
from samlidp.u2f import new_u2f_client

u2f = new_u2f_client(challenge_nonce, app_id, facet, key_handle, finder)
signed = u2f.challenge_u2f()  # JSON text of the signed assertion
```

`b64_safe` and `samlidp.jumpcloud_webauthn.url_encode` both re-encode
padded standard base64 as unpadded URL-safe base64.

For JumpCloud WebAuthn, `samlidp.jumpcloud_webauthn.new_fido_client`
returns a `FidoClient`. Its `challenge_u2f()` returns a
`JumpCloudResponse`, and `to_dict()` gives the JSON body the console
expects.

## What the package does not do

- It has no command-line program. It is a library to call from your own
  code.
- It does not store credentials or configuration.
- It does not exchange the assertion for cloud credentials.
- It contains no security-key driver. Keys are reached only through the
  device finder you supply.

## Errors

A failure raises an exception that names the step of the login that
failed. The exception types used are `RuntimeError`, `ValueError`,
`TimeoutError`, `HTTPStatusError` and `NoDeviceFoundError`, and errors
from `requests` may also come through. No status codes are returned for
you to check.