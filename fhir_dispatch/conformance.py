"""Discovering what a server can do (and what format it likes to talk in)"""

import logging
from typing import TYPE_CHECKING

from fhir_dispatch import formats
from fhir_dispatch.codec import Resource

if TYPE_CHECKING:
    from fhir_dispatch.client import FhirClient  # pragma: no cover

OAUTH_URIS_EXTENSION = "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris"


class ConformanceNegotiator:
    """Queries a server's metadata endpoint until it finds a format the server will answer in"""

    def __init__(self, client: "FhirClient"):
        self._client = client

    def try_conformance_formats(self, requested_format: str) -> str:
        """
        Asks for the server's capability statement in each format we know, requested format first.

        The first format that gets a 200 becomes the client's default format, and the statement
        is cached on the client. If nothing works, the requested format becomes the default
        and nothing is cached.

        :returns: the client's new default format
        """
        client = self._client
        client.clear_capability_cache()

        for candidate in [requested_format, *formats.NEGOTIATION_FORMATS]:
            reply = client.get("metadata", client.fhir_headers(format=candidate))
            if reply.code != 200:
                continue
            client.cached_capability_statement = client.parse_reply(
                "CapabilityStatement", candidate, reply
            )
            client.cached_capability_format = candidate
            client.default_format = candidate
            break
        else:
            logging.warning(
                "Could not retrieve a capability statement from %s in any format",
                client.base_service_url,
            )
            client.default_format = requested_format

        return client.default_format


def get_oauth2_metadata(capability_statement: Resource | dict | None) -> dict[str, str]:
    """
    Get the OAuth2 endpoints from a capability statement.

    SMART-on-FHIR servers advertise them as a security extension, like:
        "security": {
          "extension": [{
            "url": "http://fhir-registry.smarthealthit.org/StructureDefinition/oauth-uris",
            "extension": [
              {"url": "authorize", "valueUri": "https://example.com/authorize"},
              {"url": "token", "valueUri": "https://example.com/token"}
            ]
          }],
          "service": [{"coding": [{"code": "SMART-on-FHIR"}]}]
        }

    :returns: {"authorize_url": ..., "token_url": ...} or an empty dict if either is missing
    """
    if isinstance(capability_statement, Resource):
        capability_statement = capability_statement.data

    options = {}
    try:
        for rest in (capability_statement or {}).get("rest", []):
            for security in _as_list(rest.get("security")):
                options.update(_smart_oauth_uris(security))
    except (AttributeError, StopIteration, TypeError) as exc:
        logging.error("Failed to locate SMART-on-FHIR OAuth2 Security Extensions: %s", exc)

    options = {key: value for key, value in options.items() if value}
    if len(options) != 2:
        return {}
    return options


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _smart_oauth_uris(security: dict) -> dict[str, str]:
    options = {}
    for service in _as_list(security.get("service")):
        for coding in _as_list(service.get("coding")):
            if coding.get("code") != "SMART-on-FHIR":
                continue
            oauth_uris = next(
                ext
                for ext in _as_list(security.get("extension"))
                if ext.get("url") == OAUTH_URIS_EXTENSION
            )
            for ext in _as_list(oauth_uris.get("extension")):
                value = ext.get("valueUri") or ext.get("valueUrl")
                if ext.get("url") in {"authorize", f"{OAUTH_URIS_EXTENSION}#authorize"}:
                    options["authorize_url"] = value
                elif ext.get("url") in {"token", f"{OAUTH_URIS_EXTENSION}#token"}:
                    options["token_url"] = value
    return options
