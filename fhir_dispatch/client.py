"""HTTP client that talks to a FHIR server"""

import logging

import httpx

import fhir_dispatch
from fhir_dispatch import auth, common, conformance, dispatch, errors
from fhir_dispatch.codec import Resource, ResourceCodec
from fhir_dispatch.formats import ResourceFormat
from fhir_dispatch.reply import ClientReply, RequestDescriptor, Verb


class FhirClient:
    """
    Manages authentication, format negotiation, and requests for a FHIR server.

    Supports no auth, Basic, Bearer, and OAuth2 client-credentials authentication.
    Exactly one of those is active at a time, replaced by the set_*_auth() methods.

    Requests never raise for HTTP errors or unreachable servers. Instead, look at the
    ClientReply that comes back (which is also kept around as the reply attribute).

    This is not thread-safe: one client is meant for one caller at a time.

    Use this as a context manager (like you would an httpx.Client instance), or call close().
    """

    def __init__(
        self,
        base_service_url: str,
        default_format: str = ResourceFormat.XML,
        codec: ResourceCodec | None = None,
        session: httpx.Client | None = None,
    ):
        """
        Initialize a client. No requests are made until asked for.

        :param base_service_url: base URL of the FHIR server, all relative paths hang off this
        :param default_format: the resource format to ask for until negotiation says otherwise
        :param codec: how to turn resources into wire content and back
        :param session: an httpx client to send requests with (one is created if not given)
        """
        if not base_service_url:
            raise errors.FhirUrlMissing()
        self._base_service_url = base_service_url
        logging.info("Initializing client with %s", base_service_url)

        self.default_format = default_format
        self.codec = codec or ResourceCodec()
        self.reply: ClientReply | None = None
        self.cached_capability_statement: Resource | None = None
        self.cached_capability_format: str | None = None

        self._owns_session = session is None
        self._session = session or httpx.Client(timeout=300)  # five minutes to be generous
        self.auth: auth.Auth = auth.Auth()

        self.dispatcher = dispatch.Dispatcher(self)
        self.negotiator = conformance.ConformanceNegotiator(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def close(self) -> None:
        self.auth.close()
        if self._owns_session:
            self._session.close()

    @property
    def base_service_url(self) -> str:
        return self._base_service_url

    @property
    def session(self) -> httpx.Client:
        return self._session

    ###################################################################################################################
    #
    # Authentication
    #
    ###################################################################################################################

    @property
    def security_headers(self) -> dict[str, str]:
        """Headers that every direct request carries, according to the active auth strategy"""
        return self.auth.sign_headers()

    @property
    def use_basic_auth(self) -> bool:
        """True for Basic and Bearer auth, which both just add a static header"""
        return isinstance(self.auth, auth.StaticHeaderAuth)

    @property
    def use_oauth2_auth(self) -> bool:
        return isinstance(self.auth, auth.OAuth2Auth)

    def set_auth(self, strategy: auth.Auth) -> None:
        """
        Authorizes with and then installs an auth strategy, replacing the previous one.

        If authorization fails, the previous strategy stays in place.
        """
        strategy.authorize(self._session)
        previous, self.auth = self.auth, strategy
        if previous is not strategy:
            previous.close()

    def set_no_auth(self) -> None:
        logging.info("Configuring the client to use no authentication.")
        self.set_auth(auth.Auth())

    def set_basic_auth(self, client: str, secret: str) -> None:
        logging.info("Configuring the client to use HTTP Basic authentication.")
        self.set_auth(auth.BasicAuth(client, secret))

    def set_bearer_token(self, token: str) -> None:
        logging.info("Configuring the client to use Bearer Token authentication.")
        self.set_auth(auth.BearerAuth(token))

    def set_oauth2_auth(
        self, client: str, secret: str, authorize_path: str, token_path: str
    ) -> None:
        """
        Exchanges client credentials for an access token right away.

        :raises errors.FhirAuthError: if no token could be had
        """
        logging.info("Configuring the client to use OpenID Connect OAuth2 authentication.")
        self.set_auth(
            auth.OAuth2Auth(self._base_service_url, client, secret, authorize_path, token_path)
        )

    def get_oauth2_metadata_from_conformance(self) -> dict[str, str]:
        """
        Get the OAuth2 authorize & token endpoints from the capability statement.

        The server should not require OAuth2 or other special security to access the capability statement.
        """
        return conformance.get_oauth2_metadata(self.capability_statement())

    ###################################################################################################################
    #
    # Formats & capabilities
    #
    ###################################################################################################################

    def default_json(self) -> None:
        self.default_format = ResourceFormat.JSON

    def default_xml(self) -> None:
        self.default_format = ResourceFormat.XML

    def fhir_headers(self, format: str | None = None, **extra_headers) -> dict[str, str]:
        """
        Standard headers for a request, with "format" naming the wire format to use.

        The format header is not sent as-is; it decides body encoding and the Accept /
        Content-Type headers.
        """
        headers = {
            "User-Agent": f"fhir-dispatch/{fhir_dispatch.__version__}",
            "Accept-Charset": "utf-8",
            "format": str(format or self.default_format),
        }
        headers.update(extra_headers)
        return headers

    def capability_statement(self, format: str | None = None) -> Resource | None:
        return self.conformance_statement(format)

    def conformance_statement(self, format: str | None = None) -> Resource | None:
        """
        The server's capability statement, negotiating a format for it if we have to.

        Only talks to the server if nothing is cached yet or a different format is asked for.
        """
        format = format or self.default_format
        if self.cached_capability_statement is None or format != self.cached_capability_format:
            self.try_conformance_formats(format)
        return self.cached_capability_statement

    def try_conformance_formats(self, default_format: str) -> str:
        return self.negotiator.try_conformance_formats(default_format)

    def clear_capability_cache(self) -> None:
        self.cached_capability_statement = None
        self.cached_capability_format = None

    ###################################################################################################################
    #
    # Requests
    #
    ###################################################################################################################

    def dispatch(
        self, verb: Verb | str, path: str, body=None, headers: dict | None = None
    ) -> ClientReply:
        return self.dispatcher.dispatch(verb, path, body, headers)

    def get(self, path: str, headers: dict | None = None) -> ClientReply:
        return self.dispatcher.get(path, headers)

    def post(self, path: str, resource, headers: dict | None = None) -> ClientReply:
        return self.dispatcher.post(path, resource, headers)

    def put(self, path: str, resource, headers: dict | None = None) -> ClientReply:
        return self.dispatcher.put(path, resource, headers)

    def patch(
        self, path: str, patchset, headers: dict | None = None, skip_unsupported: bool = False
    ) -> ClientReply:
        return self.dispatcher.patch(path, patchset, headers, skip_unsupported=skip_unsupported)

    def delete(self, path: str, headers: dict | None = None) -> ClientReply:
        return self.dispatcher.delete(path, headers)

    def head(self, path: str, headers: dict | None = None) -> ClientReply:
        return self.dispatcher.head(path, headers)

    def reissue_request(self, request: RequestDescriptor) -> ClientReply:
        return self.dispatcher.reissue_request(request)

    def strip_base(self, path: str) -> str:
        return self.dispatcher.strip_base(path)

    def parse_reply(
        self, resource_type: str | None, format: str | None, reply: ClientReply
    ) -> Resource | None:
        """
        Decodes a reply's body into a resource, if the reply was a success (200 or 201).

        Decoding problems are logged, not raised. A resource of an unexpected type is
        still returned, with a warning.

        :param resource_type: the resource type we expect, like "Patient"
        :param format: the format we asked for
        :param reply: the reply to decode
        :returns: the resource, owned by this client, or None
        """
        logging.info(
            "Parsing response with {klass: %s, format: %s, code: %s}.",
            resource_type,
            format,
            reply.code,
        )
        if reply.code not in {200, 201}:
            if reply.code is not None:
                message = common.server_error_message(reply.body) or "(no details)"
                logging.info("Not parsing a %s response: %s", reply.code, message)
            return None

        try:
            resource = self.codec.decode(reply.body, format)
        except errors.DecodeError as exc:
            logging.error(
                "Failed to parse %s as resource %s: %s\n%s", format, resource_type, exc, reply.body
            )
            return None

        resource.client = self
        if resource_type and resource.resource_type != resource_type:
            logging.warning("Expected %s but got %s", resource_type, resource.resource_type)
        return resource
