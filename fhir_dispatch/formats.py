"""Mime types for FHIR resources and patch documents"""

import enum


class ResourceFormat(str, enum.Enum):
    XML = "application/fhir+xml"
    JSON = "application/fhir+json"
    # DSTU2 servers predate the registered mime types
    XML_DSTU2 = "application/xml+fhir"
    JSON_DSTU2 = "application/json+fhir"

    def __str__(self) -> str:
        return self.value


class PatchFormat(str, enum.Enum):
    JSON = "application/json-patch+json"
    XML = "application/xml-patch+xml"

    def __str__(self) -> str:
        return self.value


# The order we try a server's metadata endpoint in, after whatever format the caller asked for
NEGOTIATION_FORMATS = [
    ResourceFormat.XML,
    ResourceFormat.JSON,
    ResourceFormat.XML_DSTU2,
    ResourceFormat.JSON_DSTU2,
    "application/xml",
    "application/json",
]


def format_of(mimetype: str | None) -> str | None:
    """
    Returns "xml" or "json" for a mime type (or format parameter), or None if it is neither.

    Matching is a loose substring check, so "application/fhir+xml", "xml", and
    "text/xml; charset=utf-8" all count as xml.
    """
    if not mimetype:
        return None
    lowered = str(mimetype).lower()
    if "xml" in lowered:
        return "xml"
    if "json" in lowered:
        return "json"
    return None
