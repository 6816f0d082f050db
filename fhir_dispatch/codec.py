"""
A small, generic resource codec for FHIR XML and JSON.

Resources are kept as plain JSON-shaped dictionaries. XML is converted using the
FHIR XML conventions (primitive values live in a "value" attribute, element ids
and extension urls are attributes, contained resources are wrapped in their
own element, narrative divs are XHTML).

This knows nothing about any particular resource's schema, so XML -> JSON is
necessarily a bit lossy: primitives come back as strings (booleans excepted)
and a handful of well-known element names are assumed to repeat.
"""

import json
from collections import defaultdict

from lxml import etree

from fhir_dispatch import errors, formats

FHIR_NS = "http://hl7.org/fhir"
XHTML_NS = "http://www.w3.org/1999/xhtml"

# XML cannot tell a list of one apart from a single value, so we lean on element names for that
REPEATING_ELEMENTS = frozenset(
    {
        "address",
        "category",
        "coding",
        "component",
        "contact",
        "entry",
        "extension",
        "format",
        "given",
        "identifier",
        "interaction",
        "issue",
        "line",
        "link",
        "modifierExtension",
        "note",
        "operation",
        "parameter",
        "part",
        "prefix",
        "rest",
        "searchParam",
        "security",
        "service",
        "suffix",
        "tag",
        "telecom",
    }
)

# Never fetch DTDs or expand entities from server-provided content
_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


class Resource:
    """
    A FHIR resource, held as its JSON dictionary form.

    The client attribute is filled in with the FhirClient that fetched this resource, if any.
    """

    def __init__(self, data: dict):
        if not isinstance(data, dict) or not data.get("resourceType"):
            raise errors.DecodeError("Resource content has no resourceType")
        self.data = data
        self.client = None

    @property
    def resource_type(self) -> str:
        return self.data["resourceType"]

    @property
    def id(self) -> str | None:
        return self.data.get("id")

    def get(self, key: str, default=None):
        return self.data.get(key, default)

    def __getitem__(self, key: str):
        return self.data[key]

    def __eq__(self, other) -> bool:
        return isinstance(other, Resource) and self.data == other.data

    def __repr__(self) -> str:
        return f"<Resource {self.resource_type}/{self.id}>"


class ResourceCodec:
    """Turns resources into wire content and back"""

    def encode(self, resource: Resource | dict, fmt: str | None) -> str:
        """Encodes as JSON if the format says so, otherwise XML"""
        data = resource.data if isinstance(resource, Resource) else resource
        if formats.format_of(fmt) == "json":
            return json.dumps(data)
        return etree.tostring(
            _resource_to_element(data), xml_declaration=True, encoding="UTF-8"
        ).decode("utf8")

    def decode(self, contents: str | bytes, fmt: str | None = None) -> Resource:
        """
        Decodes XML or JSON content into a Resource.

        The content itself is sniffed first (servers don't always send what we asked for),
        then the format hint is consulted.

        :raises errors.DecodeError: if the content is not a resource
        """
        if isinstance(contents, bytes):
            try:
                contents = contents.decode("utf8")
            except UnicodeDecodeError as exc:
                raise errors.DecodeError(str(exc)) from exc

        kind = sniff_format(contents) or formats.format_of(fmt)
        if kind == "json":
            try:
                data = json.loads(contents)
            except json.JSONDecodeError as exc:
                raise errors.DecodeError(f"Invalid JSON: {exc}") from exc
            return Resource(data)
        elif kind == "xml":
            try:
                root = etree.fromstring(contents.encode("utf8"), parser=_PARSER)
            except etree.XMLSyntaxError as exc:
                raise errors.DecodeError(f"Invalid XML: {exc}") from exc
            return Resource(_element_to_resource_dict(root))

        raise errors.DecodeError("Content is neither XML nor JSON")


def sniff_format(contents: str | None) -> str | None:
    stripped = (contents or "").lstrip()
    if stripped.startswith("<"):
        return "xml"
    if stripped.startswith("{"):
        return "json"
    return None


###############################################################################
#
# JSON -> XML
#
###############################################################################


def _tag(name: str) -> str:
    return f"{{{FHIR_NS}}}{name}"


def _primitive(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _resource_to_element(data: dict) -> etree._Element:
    resource_type = data.get("resourceType")
    if not resource_type:
        raise ValueError("Cannot encode a resource without a resourceType")

    root = etree.Element(_tag(resource_type), nsmap={None: FHIR_NS})
    for key, value in data.items():
        # Primitive extensions (_birthDate and friends) are not carried over
        if key == "resourceType" or key.startswith("_"):
            continue
        _append_element(root, key, value)
    return root


def _append_element(parent: etree._Element, name: str, value) -> None:
    if value is None:
        return

    if isinstance(value, list):
        for item in value:
            _append_element(parent, name, item)
        return

    if name == "div" and isinstance(value, str):
        parent.append(etree.fromstring(value.encode("utf8"), parser=_PARSER))
        return

    element = etree.SubElement(parent, _tag(name))
    if not isinstance(value, dict):
        element.set("value", _primitive(value))
    elif "resourceType" in value:
        element.append(_resource_to_element(value))
    else:
        attributes = {"id"}
        if name in {"extension", "modifierExtension"}:
            attributes.add("url")
        for key, child in value.items():
            if key in attributes and isinstance(child, str):
                element.set(key, child)
            elif not key.startswith("_"):
                _append_element(element, key, child)


###############################################################################
#
# XML -> JSON
#
###############################################################################


def _localname(element: etree._Element) -> str:
    return etree.QName(element).localname


def _child_elements(element: etree._Element) -> list[etree._Element]:
    # Skips comments and processing instructions
    return [child for child in element if isinstance(child.tag, str)]


def _element_to_resource_dict(element: etree._Element) -> dict:
    data = {"resourceType": _localname(element)}
    data.update(_children_to_dict(element))
    return data


def _parse_primitive(value: str):
    if value == "true":
        return True
    if value == "false":
        return False
    return value


def _element_to_value(element: etree._Element):
    if etree.QName(element).namespace == XHTML_NS:
        return etree.tostring(element, encoding="unicode", with_tail=False)

    children = _child_elements(element)
    value = element.get("value")
    if value is not None:
        # Extensions on primitives are dropped here, just like on the way out
        return _parse_primitive(value)

    if len(children) == 1 and _localname(children[0])[:1].isupper():
        return _element_to_resource_dict(children[0])  # a contained resource

    result = {key: element.get(key) for key in ("id", "url") if element.get(key) is not None}
    result.update(_children_to_dict(element))
    return result


def _is_repeating(parent: str, name: str, value) -> bool:
    if name == "contained":
        return True
    if name == "security":
        # A CapabilityStatement's rest.security is a single object, unlike meta.security codings
        return parent != "rest"
    if name in {"name", "resource"}:
        # HumanName lists vs a plain name string, CapabilityStatement resource lists vs a
        # Bundle entry's single resource
        return isinstance(value, dict) and "resourceType" not in value
    return name in REPEATING_ELEMENTS


def _children_to_dict(element: etree._Element) -> dict:
    parent = _localname(element)
    grouped = defaultdict(list)
    for child in _child_elements(element):
        grouped[_localname(child)].append(_element_to_value(child))

    result = {}
    for name, values in grouped.items():
        if len(values) > 1 or _is_repeating(parent, name, values[0]):
            result[name] = values
        else:
            result[name] = values[0]
    return result
