"""Message flag parsing and set algebra."""

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from enum import Enum

from postal_clerk.exceptions import ParseError

# Characters IMAP forbids inside a flag atom
_ATOM_SPECIALS = re.compile(r'[(){%*"\]\x00-\x1f\x7f]')


class Flag(str, Enum):
    SEEN = "\\Seen"
    ANSWERED = "\\Answered"
    FLAGGED = "\\Flagged"
    DELETED = "\\Deleted"
    DRAFT = "\\Draft"


_KNOWN = {flag.value[1:].lower(): flag.value for flag in Flag}


def _canonical(token: str) -> str:
    """Map a known flag name, with or without its backslash, to canonical form."""
    return _KNOWN.get(token.lstrip("\\").lower(), token)


@dataclass(frozen=True)
class FlagSet:
    """Immutable set of system flags and custom keywords.

    Adding a flag that is already present and removing one that is absent
    are both no-ops.
    """

    flags: frozenset[str] = frozenset()

    @classmethod
    def of(cls, flags: Iterable[str]) -> "FlagSet":
        return cls(frozenset(_canonical(f) for f in flags if f))

    @classmethod
    def from_imap(cls, text: str) -> "FlagSet":
        """Build from the inside of an IMAP ``FLAGS (...)`` response item."""
        return cls.of(text.split())

    def add(self, other: "FlagSet") -> "FlagSet":
        return FlagSet(self.flags | other.flags)

    def remove(self, other: "FlagSet") -> "FlagSet":
        return FlagSet(self.flags - other.flags)

    def __contains__(self, flag: object) -> bool:
        if isinstance(flag, Flag):
            flag = flag.value
        return isinstance(flag, str) and _canonical(flag) in self.flags

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.flags))

    def __len__(self) -> int:
        return len(self.flags)

    def __str__(self) -> str:
        return " ".join(self)

    def to_imap(self) -> str:
        """Render as a parenthesized IMAP flag list."""
        return f"({' '.join(self)})"


def parse_flags(text: str) -> FlagSet:
    """Parse whitespace- or comma-separated flag names.

    Known flags (seen, answered, flagged, deleted, draft) match
    case-insensitively with or without a leading backslash. Anything else
    is kept verbatim as a custom keyword.

    Raises:
        ParseError: On empty input or a token containing characters IMAP
            does not allow in a flag.
    """
    tokens = [t for t in re.split(r"[\s,]+", text or "") if t]
    if not tokens:
        raise ParseError("No flags given", text or "")

    for token in tokens:
        if _ATOM_SPECIALS.search(token) or "\\" in token[1:] or token == "\\":
            raise ParseError(f"Invalid flag '{token}'", token)

    return FlagSet.of(tokens)
