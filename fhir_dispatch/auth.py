"""Code for the various ways to authenticate against a FHIR server"""

import base64
import logging

import httpx

from fhir_dispatch import common, errors, transport


class Auth:
    """Abstracted authentication for a FHIR server. By default, does nothing."""

    def authorize(self, session: httpx.Client) -> None:
        """Authorize against the server, before this strategy is put to use"""
        del session

    def sign_headers(self) -> dict[str, str]:
        """New headers to add, with the signature token"""
        return {}

    def transport(self, session: httpx.Client) -> transport.Transport:
        """The transport that requests should flow through while this strategy is active"""
        return transport.DirectTransport(session)

    def close(self) -> None:
        """Release anything held on to by this strategy"""


class StaticHeaderAuth(Auth):
    """Authentication by way of a fixed Authorization header on every request"""

    def __init__(self, authorization: str):
        super().__init__()
        self._authorization = authorization

    def sign_headers(self) -> dict[str, str]:
        return {"Authorization": self._authorization}


class BasicAuth(StaticHeaderAuth):
    """Authentication with basic user/password"""

    def __init__(self, user: str, password: str):
        # Assume utf8 is acceptable -- we should in theory also run these through Unicode normalization, in case they
        # have interesting Unicode characters. But we can always add that in the future.
        combo_bytes = f"{user}:{password}".encode()
        super().__init__(f"Basic {base64.standard_b64encode(combo_bytes).decode('ascii')}")


class BearerAuth(StaticHeaderAuth):
    """Authentication with a static bearer token"""

    def __init__(self, bearer_token: str):
        super().__init__(f"Bearer {bearer_token}")


class OAuth2Session:
    """
    A sub-client that carries an OAuth2 access token.

    Like most OAuth2 libraries, this raises an httpx.HTTPStatusError for any non-2xx
    response (with the response attached to the exception).
    """

    def __init__(self, session: httpx.Client, access_token: str):
        self._session = session
        self.access_token = access_token

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        content: str | bytes | None = None,
    ) -> httpx.Response:
        headers = dict(headers or {})
        headers["Authorization"] = f"Bearer {self.access_token}"
        request = self._session.build_request(method, url, headers=headers, content=content)
        response = self._session.send(request, follow_redirects=True)
        response.raise_for_status()
        return response


class OAuth2Auth(Auth):
    """
    Authentication with an OAuth2 client-credentials grant.

    The token is requested eagerly by authorize(). Until then, this strategy can't be used.
    """

    def __init__(
        self, server_root: str, client_id: str, secret: str, authorize_url: str, token_url: str
    ):
        super().__init__()
        self._server_root = server_root
        self._client_id = client_id
        self._secret = secret
        self.authorize_url = authorize_url
        self.token_url = token_url
        self._oauth_session: OAuth2Session | None = None

    def authorize(self, session: httpx.Client) -> None:
        """
        Exchanges our client credentials for an access token.

        :raises errors.FhirAuthError: if the token endpoint can't be reached or refuses us
        """
        token_url = common.urljoin(self._server_root, self.token_url)
        logging.info("Requesting an OAuth2 access token from %s", token_url)

        try:
            response = session.post(
                token_url,
                data={"grant_type": "client_credentials"},
                auth=(self._client_id, self._secret),
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            message = common.server_error_message(exc.response.text) or str(exc)
            raise errors.FhirAuthError(
                f"Could not authenticate with the FHIR server: {message}", exc.response
            ) from exc
        except httpx.HTTPError as exc:
            raise errors.FhirAuthError(
                f'Could not connect to the OAuth2 token endpoint "{token_url}": {exc}'
            ) from exc

        try:
            token_response = response.json()
        except ValueError:
            token_response = {}
        if not isinstance(token_response, dict):
            token_response = {}
        access_token = token_response.get("access_token")
        if not access_token:
            raise errors.FhirAuthError(
                f'The OAuth2 token endpoint "{token_url}" did not provide an access token',
                response,
            )

        self._oauth_session = OAuth2Session(session, access_token)

    @property
    def oauth_session(self) -> OAuth2Session | None:
        return self._oauth_session

    def transport(self, session: httpx.Client) -> transport.Transport:
        if not self._oauth_session:
            raise RuntimeError("OAuth2 authentication has not been authorized yet")
        return transport.OAuth2Transport(self._oauth_session)

    def close(self) -> None:
        self._oauth_session = None


def create_auth(
    server_root: str | None,
    basic_user: str | None = None,
    basic_password: str | None = None,
    bearer_token: str | None = None,
    oauth2_client_id: str | None = None,
    oauth2_secret: str | None = None,
    oauth2_authorize_url: str | None = None,
    oauth2_token_url: str | None = None,
) -> Auth:
    """Determine which auth method to use based on user provided arguments"""
    # Check if the user tried to specify multiple types of auth, and help them out
    has_basic_args = bool(basic_user or basic_password)
    has_bearer_args = bool(bearer_token)
    has_oauth2_args = bool(
        oauth2_client_id or oauth2_secret or oauth2_authorize_url or oauth2_token_url
    )
    total_auth_types = has_basic_args + has_bearer_args + has_oauth2_args
    if total_auth_types > 1:
        errors.fatal(
            "Multiple authentication methods have been specified. Double check your arguments.",
            errors.ARGS_CONFLICT,
        )

    if basic_user and basic_password:
        return BasicAuth(basic_user, basic_password)
    elif basic_user or basic_password:
        errors.fatal(
            "You must provide both --basic-user and --basic-passwd "
            "to connect to a Basic auth server.",
            errors.BASIC_CREDENTIALS_MISSING,
        )

    if bearer_token:
        return BearerAuth(bearer_token)

    if oauth2_client_id and oauth2_secret and oauth2_token_url:
        return OAuth2Auth(
            server_root,
            oauth2_client_id,
            oauth2_secret,
            oauth2_authorize_url,
            oauth2_token_url,
        )
    elif has_oauth2_args:
        errors.fatal(
            "You must provide --oauth2-client-id, --oauth2-secret, and --oauth2-token-url "
            "to connect to an OAuth2 server.",
            errors.OAUTH2_CREDENTIALS_MISSING,
        )

    return Auth()
