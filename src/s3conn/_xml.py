"""
Best-effort extraction of the two fields the dispatcher needs from S3 error bodies.

S3 error responses look like::

    <Error>
      <Code>PermanentRedirect</Code>
      <Message>The bucket you are attempting to access must be addressed ...</Message>
      <Endpoint>bucket.s3-eu-west-1.amazonaws.com</Endpoint>
    </Error>

The parser is an injectable collaborator: the dispatcher only depends on the
ErrorBodyParser protocol. Malformed or empty bodies never raise out of
``extract_*``; they degrade to None.
"""

from __future__ import annotations

import logging
from typing import Protocol
from xml.etree import ElementTree as ET

from s3conn._errors import MalformedResponse

logger = logging.getLogger(__name__)


class ErrorBodyParser(Protocol):
    """Extracts redirect endpoint and error message from a response body."""

    def extract_redirect_endpoint(self, body: bytes | None) -> str | None: ...

    def extract_error_message(self, body: bytes | None) -> str | None: ...


def _strip_namespace(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_error_document(body: bytes) -> ET.Element:
    """
    Parse an error body and return its root element.

    Raises:
        MalformedResponse: If the body is empty or not well-formed XML.
    """
    if not body:
        raise MalformedResponse("Empty error body")
    try:
        return ET.fromstring(body)
    except ET.ParseError as e:
        raise MalformedResponse(f"Unparsable error body: {e}", cause=e) from e


def find_error_field(body: bytes | None, name: str) -> str | None:
    """
    Return the text of ``/Error/<name>`` or None.

    Namespaced documents are accepted; the root element must be ``Error``.
    """
    try:
        root = parse_error_document(body or b"")
    except MalformedResponse as e:
        logger.debug(f"No '{name}' in response body: {e}")
        return None

    if _strip_namespace(root.tag) != "Error":
        return None

    for child in root:
        if _strip_namespace(child.tag) == name:
            text = (child.text or "").strip()
            return text or None
    return None


def extract_redirect_endpoint(body: bytes | None) -> str | None:
    """
    Return the ``/Error/Endpoint`` value of a redirect body.

    Example:
        >>> extract_redirect_endpoint(b"<Error><Endpoint>b.s3.amazonaws.com</Endpoint></Error>")
        'b.s3.amazonaws.com'
        >>> extract_redirect_endpoint(b"not xml") is None
        True
    """
    return find_error_field(body, "Endpoint")


def extract_error_message(body: bytes | None) -> str | None:
    """Return the ``/Error/Message`` value of an error body."""
    return find_error_field(body, "Message")


class ElementTreeErrorBodyParser:
    """Default ErrorBodyParser backed by ``xml.etree.ElementTree``."""

    def extract_redirect_endpoint(self, body: bytes | None) -> str | None:
        return extract_redirect_endpoint(body)

    def extract_error_message(self, body: bytes | None) -> str | None:
        return extract_error_message(body)
