"""``mailto:`` URI resolution.

Handles the query grammar of RFC 6068: the path holds the primary
recipients, and ``to``, ``cc``, ``bcc``, ``subject`` and ``body`` are the
recognized query keys. Values are percent-decoded; ``+`` is a literal plus,
not a space.
"""

from email.utils import getaddresses
from urllib.parse import unquote

from postal_clerk.compose.templates import Template, new_template
from postal_clerk.config import Account
from postal_clerk.exceptions import ParseError
from postal_clerk.models import format_address

MAILTO_SCHEME = "mailto:"
RECOGNIZED_KEYS = ("to", "cc", "bcc", "subject", "body")


def is_mailto(arg: str) -> bool:
    return arg[: len(MAILTO_SCHEME)].lower() == MAILTO_SCHEME


def _recipients(value: str) -> list[str]:
    return [format_address(name, addr) for name, addr in getaddresses([value]) if addr]


def parse_mailto(uri: str) -> dict[str, list[str]]:
    """Split a mailto URI into its recognized fields.

    Returns:
        Mapping of each recognized key to its decoded values, in order of
        appearance. Unrecognized keys are dropped.

    Raises:
        ParseError: If the URI is not a mailto URI or a parameter has no name.
    """
    if not uri or not is_mailto(uri):
        raise ParseError(f"Not a mailto URI: '{uri}'", uri)

    rest = uri[len(MAILTO_SCHEME):]
    path, _, query = rest.partition("?")
    # Fragments carry no meaning for mailto
    query = query.split("#", 1)[0]
    path = path.split("#", 1)[0]

    fields: dict[str, list[str]] = {key: [] for key in RECOGNIZED_KEYS}
    if path:
        fields["to"].append(unquote(path))

    for param in filter(None, query.split("&")):
        name, sep, value = param.partition("=")
        if not name:
            raise ParseError(f"Malformed mailto parameter '{param}'", param)
        key = unquote(name).lower()
        if key in fields:
            fields[key].append(unquote(value) if sep else "")
    return fields


def resolve_mailto(uri: str, account: Account) -> Template:
    """Build a prefilled new-message template from a mailto URI.

    Raises:
        ParseError: If the URI is malformed, names an unparsable recipient,
            or puts a line break into a header value.
    """
    fields = parse_mailto(uri)

    for key in ("to", "cc", "bcc", "subject"):
        for value in fields[key]:
            if "\r" in value or "\n" in value:
                raise ParseError(f"Line break in mailto {key} value", value)

    addresses = {}
    for key in ("to", "cc", "bcc"):
        addresses[key] = []
        for value in fields[key]:
            parsed = _recipients(value)
            if value.strip() and not parsed:
                raise ParseError(f"Invalid recipient '{value}' in mailto URI", value)
            addresses[key].extend(parsed)

    body = "\n".join(fields["body"]).replace("\r\n", "\n")
    return new_template(
        account,
        to=addresses["to"],
        cc=addresses["cc"],
        bcc=addresses["bcc"],
        subject=fields["subject"][0] if fields["subject"] else "",
        body=body,
    )
