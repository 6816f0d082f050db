"""Helper methods for configuring a FhirClient from command line arguments."""

import argparse

from fhir_dispatch import auth, common, errors
from fhir_dispatch.client import FhirClient
from fhir_dispatch.formats import ResourceFormat


def add_auth(parser: argparse.ArgumentParser, *, use_fhir_url: bool = True) -> None:
    group = parser.add_argument_group("authentication")
    group.add_argument("--basic-user", metavar="USER", help="username for Basic authentication")
    group.add_argument(
        "--basic-passwd", metavar="PATH", help="password file for Basic authentication"
    )
    group.add_argument(
        "--bearer-token", metavar="PATH", help="token file for Bearer authentication"
    )
    group.add_argument(
        "--oauth2-client-id", metavar="ID", help="client ID for OAuth2 authentication"
    )
    group.add_argument(
        "--oauth2-secret", metavar="PATH", help="client secret file for OAuth2 authentication"
    )
    group.add_argument(
        "--oauth2-authorize-url", metavar="URL", help="OAuth2 authorization endpoint"
    )
    group.add_argument(
        "--oauth2-token-url",
        metavar="URL",
        help="OAuth2 token endpoint (relative URLs are resolved against the FHIR server)",
    )
    if use_fhir_url:
        group.add_argument("--fhir-url", metavar="URL", help="FHIR server base URL")
        group.add_argument(
            "--fhir-format",
            choices=["xml", "json"],
            default="xml",
            help="resource format to ask for first (default is xml)",
        )


def _read_secret(path: str | None) -> str | None:
    return common.read_text(path).strip() if path else None


def create_fhir_client_for_cli(args: argparse.Namespace) -> FhirClient:
    """
    Create a FhirClient instance, based on user input from the CLI.

    The usual FHIR server authentication options should be represented in args.
    Secrets (passwords, tokens, client secrets) are given as paths to files holding them.
    """
    if not args.fhir_url:
        errors.fatal(
            "You must provide a base FHIR server URL with --fhir-url", errors.FHIR_URL_MISSING
        )

    try:
        basic_password = _read_secret(args.basic_passwd)
        bearer_token = _read_secret(args.bearer_token)
        oauth2_secret = _read_secret(args.oauth2_secret)
    except OSError as exc:
        errors.fatal(str(exc), errors.ARGS_INVALID)

    strategy = auth.create_auth(
        args.fhir_url,
        basic_user=args.basic_user,
        basic_password=basic_password,
        bearer_token=bearer_token,
        oauth2_client_id=args.oauth2_client_id,
        oauth2_secret=oauth2_secret,
        oauth2_authorize_url=args.oauth2_authorize_url,
        oauth2_token_url=args.oauth2_token_url,
    )

    default_format = ResourceFormat.JSON if args.fhir_format == "json" else ResourceFormat.XML
    client = FhirClient(args.fhir_url, default_format=default_format)
    try:
        client.set_auth(strategy)
    except errors.FhirAuthError as exc:
        client.close()
        errors.fatal(str(exc), errors.FHIR_AUTH_FAILED)

    return client
