# /driftly/workflows/templating.py

"""
Personalisation of email subjects and bodies.

Supported placeholders: {{firstName}}, {{lastName}}, {{email}},
{{metadata.<key>}} and bare {{<key>}} for any metadata key. Placeholders that
cannot be resolved are left in place so a broken template is visible in the
sent mail rather than silently blanked.
"""

import html
import re
from typing import Any, Optional

from driftly.models.contact import Contact

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
_TAG_PATTERN = re.compile(r"<[^>]+>")
_BREAK_PATTERN = re.compile(r"<\s*(br|/p|/div|/h[1-6]|/li)\s*/?\s*>", re.IGNORECASE)
_BLANK_LINES = re.compile(r"\n\s*\n+")

_CONTACT_FIELDS = {
    "firstName": lambda contact: contact.first_name,
    "lastName": lambda contact: contact.last_name,
    "email": lambda contact: contact.email,
}


def _lookup(contact: Contact, key: str) -> Optional[Any]:
    if key in _CONTACT_FIELDS:
        value = _CONTACT_FIELDS[key](contact)
        return "" if value is None else value
    if key.startswith("metadata."):
        key = key[len("metadata."):]
    return contact.metadata.get(key)


def render(template: Optional[str], contact: Contact, escape: bool = False) -> str:
    """Substitute placeholders. With escape=True inserted values are HTML-escaped."""
    if not template:
        return ""

    def replace(match: re.Match) -> str:
        value = _lookup(contact, match.group(1))
        if value is None:
            return match.group(0)
        text = str(value)
        return html.escape(text) if escape else text

    return PLACEHOLDER_PATTERN.sub(replace, template)


def render_subject(subject: Optional[str], contact: Contact) -> str:
    return render(subject, contact)


def render_html(body: Optional[str], contact: Contact) -> str:
    return render(body, contact, escape=True)


def html_to_text(markup: str) -> str:
    """Plaintext alternative for an HTML body."""
    text = _BREAK_PATTERN.sub("\n", markup or "")
    text = html.unescape(_TAG_PATTERN.sub("", text))
    return _BLANK_LINES.sub("\n\n", text).strip()
