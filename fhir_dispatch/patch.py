"""Encoding of PATCH request bodies"""

import copy
import json
import logging

from lxml import etree

from fhir_dispatch import errors
from fhir_dispatch.formats import PatchFormat


def request_patch_payload(
    patchset: list[dict], patch_format: str | None, skip_unsupported: bool = False
) -> str | None:
    """
    Serializes a list of patch operations ({"op": ..., "path": ..., "value": ...}).

    Paths are given the way a caller thinks of them, starting with the resource name
    (like "Patient/0/active").

    :param patchset: the patch operations
    :param patch_format: a PatchFormat mime type, anything else gets no body at all
    :param skip_unsupported: drop operations the format can't express, instead of raising
    :returns: the request body, or None for an unknown patch format
    """
    if patch_format == PatchFormat.JSON:
        return json_patch_payload(patchset)
    elif patch_format == PatchFormat.XML:
        return xml_patch_payload(patchset, skip_unsupported=skip_unsupported)

    logging.warning("Unknown patch format '%s', sending no patch body", patch_format)
    return None


def json_patch_payload(patchset: list[dict]) -> str:
    patches = copy.deepcopy(patchset)
    for patch in patches:
        # Remove the resource name from the patch path, since the JSON representation doesn't have that
        path = patch.get("path") or ""
        if "/" in path:
            patch["path"] = path[path.index("/") :]
    return json.dumps(patches)


def xml_patch_payload(patchset: list[dict], skip_unsupported: bool = False) -> str:
    """
    Renders an XML diff document (RFC 5261 style).

    Only "replace" is supported for now, since the other operations need element
    content that a simple path + value pair can't describe.
    """
    diff = etree.Element("diff")
    for patch in patchset:
        op = patch.get("op")
        if op != "replace":
            if not skip_unsupported:
                raise errors.UnsupportedPatchOperation(op, PatchFormat.XML.value)
            logging.warning("Dropping unsupported XML patch operation '%s'", op)
            continue

        replace = etree.SubElement(diff, "replace", sel=f"{patch['path']}/@value")
        value = patch.get("value")
        if isinstance(value, bool):
            replace.text = "true" if value else "false"
        elif value is not None:
            replace.text = str(value)

    return etree.tostring(diff, xml_declaration=True, encoding="UTF-8").decode("utf8")
