"""
Response Encoding

Builds the HTTP/1.0-style response sent back on the socket:

    HTTP/1.0 200 OK\\n
    Content-Type: application/json; charset=utf-8\\n
    \\n
    {"rows":[{"id":1,"name":"a"}]}

Two body formats are supported:
- XML:  <rows><row><name1>value</name1>...</row>...</rows>
        each child element is named after the column
- JSON: {"rows":[{"name1":value, ...}, ...]}

Only the literal format value "xml" selects XML; everything else is JSON.
All response bytes are UTF-8.
"""

import base64
import datetime
import decimal
import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from .parameters import FORMAT_XML

CONTENT_TYPE_XML = "text/xml; charset=utf-8"
CONTENT_TYPE_JSON = "application/json; charset=utf-8"
CONTENT_TYPE_TEXT = "text/plain; charset=utf-8"

STATUS_OK = "HTTP/1.0 200 OK"
STATUS_BAD_REQUEST = "HTTP/1.0 400 Bad Request"

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

# Element names usable without escaping: letter or underscore first, then
# letters, digits, underscore, hyphen or dot. Colons are excluded (namespaces).
_XML_NAME = re.compile(r'[^\W\d][\w.\-]*')

# Anything outside the XML 1.0 Char production
_XML_INVALID_CHAR = re.compile("[^\t\n\r\x20-\ud7ff\ue000-\ufffd\U00010000-\U0010ffff]")


class EncodingError(ValueError):
    """Raised when a result set cannot be represented in the requested format"""


@dataclass(frozen=True)
class EncodedBody:
    """Serialized response body plus its content type"""
    content_type: str
    body: bytes


def is_xml_format(output_format: str) -> bool:
    return output_format == FORMAT_XML


def build_preamble(status_line: str, content_type: Optional[str] = None) -> bytes:
    """Status line, optional Content-Type header and the blank separator line"""
    preamble = status_line + "\n"
    if content_type:
        preamble += f"Content-Type: {content_type}\n"
    return (preamble + "\n").encode('utf-8')


def build_success_response(encoded: EncodedBody) -> bytes:
    return build_preamble(STATUS_OK, encoded.content_type) + encoded.body


def build_rejection_response() -> bytes:
    """400 without headers or body, used when mandatory parameters are missing"""
    return build_preamble(STATUS_BAD_REQUEST)


def build_error_response(message: str) -> bytes:
    """400 with the error message as plain-text body"""
    return build_preamble(STATUS_BAD_REQUEST, CONTENT_TYPE_TEXT) + message.encode('utf-8')


def _json_default(value: Any) -> Any:
    if isinstance(value, decimal.Decimal):
        # exact digits as a string; "Infinity" and "NaN" included
        return str(value)
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode('ascii')
    return str(value)


def _xml_text(value: Any):
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time,
                          bytes, bytearray, memoryview)):
        return _json_default(value)
    return str(value)


def encode_json(rows: Iterable[Mapping[str, Any]]) -> bytes:
    """
    Render rows as a {"rows": [...]} document.

    Raises:
        EncodingError: a float value is NaN or infinite
    """
    document = {'rows': [dict(row) for row in rows]}
    try:
        text = json.dumps(document, ensure_ascii=False, separators=(',', ':'),
                          allow_nan=False, default=_json_default)
    except ValueError as e:
        raise EncodingError(f"Value cannot be represented in JSON: {e}") from e
    return text.encode('utf-8')


def encode_xml(rows: Iterable[Mapping[str, Any]]) -> bytes:
    """
    Render rows as a <rows> document.

    Raises:
        EncodingError: a column name is not a valid element name, or a value
            holds a character XML 1.0 cannot carry
    """
    root = ET.Element('rows')
    for row in rows:
        row_element = ET.SubElement(root, 'row')
        for name, value in row.items():
            if not isinstance(name, str) or not _XML_NAME.fullmatch(name):
                raise EncodingError(f"Column name {name!r} is not a valid XML element name")
            text = _xml_text(value)
            if text is not None:
                invalid = _XML_INVALID_CHAR.search(text)
                if invalid:
                    raise EncodingError(
                        f"Column {name!r} holds character {invalid.group()!r} "
                        f"that is not allowed in XML")
            field = ET.SubElement(row_element, name)
            field.text = text

    ET.indent(root, space="  ")
    return (XML_DECLARATION + ET.tostring(root, encoding='unicode') + "\n").encode('utf-8')


def encode_result(rows: Iterable[Mapping[str, Any]], output_format: str) -> EncodedBody:
    """Dispatch on the requested format"""
    if is_xml_format(output_format):
        return EncodedBody(CONTENT_TYPE_XML, encode_xml(rows))
    return EncodedBody(CONTENT_TYPE_JSON, encode_json(rows))
