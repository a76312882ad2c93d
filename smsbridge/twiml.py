"""TwiML acknowledgement bodies returned to the SMS provider."""

from typing import Optional
from xml.sax.saxutils import escape

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
TWIML_MEDIA_TYPE = "text/xml"

_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def escape_xml(text: str) -> str:
    """Escape &, <, >, double and single quotes."""
    return escape(text, _ENTITIES)


def twiml_response(message: Optional[str] = None) -> str:
    """Empty <Response/> acknowledgement, or one carrying an inline message."""
    if message:
        return f"{XML_DECLARATION}<Response><Message>{escape_xml(message)}</Message></Response>"
    return f"{XML_DECLARATION}<Response></Response>"
