"""Sequence range parsing.

A range is written as comma-separated tokens, each either a bare number or
an inclusive ``start:end`` span, e.g. ``"1,3:5,9"``. Parsing normalizes it
into an ascending, de-duplicated :class:`SeqRange`.
"""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from postal_clerk.exceptions import ParseError

# Upper bound on the members one range text may address
MAX_RANGE_SIZE = 100_000


@dataclass(frozen=True)
class SeqRange:
    """Ordered set of positive message numbers (sequence numbers or UIDs)."""

    members: tuple[int, ...] = ()

    @classmethod
    def of(cls, numbers: Iterable[int]) -> "SeqRange":
        """Build a normalized range from any iterable of numbers."""
        normalized = sorted(set(numbers))
        if normalized and normalized[0] < 1:
            raise ParseError(f"Sequence numbers must be positive: {normalized[0]}", str(normalized[0]))
        return cls(tuple(normalized))

    def __iter__(self) -> Iterator[int]:
        return iter(self.members)

    def __len__(self) -> int:
        return len(self.members)

    def __contains__(self, number: object) -> bool:
        return number in self.members

    def __str__(self) -> str:
        return format_range(self)

    @property
    def last(self) -> int | None:
        return self.members[-1] if self.members else None

    def to_imap(self) -> str:
        """Render as an IMAP sequence set."""
        return format_range(self)


def _parse_number(token: str, original: str) -> int:
    token = token.strip()
    if not (token.isascii() and token.isdigit()):
        raise ParseError(f"Invalid sequence number '{token}' in range token '{original}'", original)
    number = int(token)
    if number < 1:
        raise ParseError(f"Sequence numbers start at 1, got '{token}'", original)
    return number


def parse_range(text: str) -> SeqRange:
    """Parse range text into a normalized :class:`SeqRange`.

    Args:
        text: Comma-separated numbers and ``start:end`` spans.

    Returns:
        The ascending, de-duplicated set of addressed numbers.

    Raises:
        ParseError: On empty input, non-numeric tokens, zero, or a span
            whose start exceeds its end, or text addressing more than
            :data:`MAX_RANGE_SIZE` numbers. The offending token is attached.
    """
    if text is None or not text.strip():
        raise ParseError("Empty sequence range", text or "")

    numbers: set[int] = set()
    for raw_token in text.split(","):
        token = raw_token.strip()
        if not token:
            raise ParseError(f"Empty token in sequence range '{text}'", raw_token)

        if ":" in token:
            parts = token.split(":")
            if len(parts) != 2:
                raise ParseError(f"Invalid span '{token}'", token)
            start = _parse_number(parts[0], token)
            end = _parse_number(parts[1], token)
            if start > end:
                raise ParseError(f"Span start exceeds end in '{token}'", token)
            if len(numbers) + end - start + 1 > MAX_RANGE_SIZE:
                raise ParseError(f"Span '{token}' addresses more than {MAX_RANGE_SIZE} messages", token)
            numbers.update(range(start, end + 1))
        else:
            numbers.add(_parse_number(token, token))

    return SeqRange.of(numbers)


def format_range(seq_range: SeqRange) -> str:
    """Render a range in its normalized textual form.

    Consecutive runs collapse into ``start:end`` spans, so
    ``parse_range(format_range(r)) == r`` for every range ``r``.
    """
    spans: list[str] = []
    members = seq_range.members
    i = 0
    while i < len(members):
        start = members[i]
        end = start
        while i + 1 < len(members) and members[i + 1] == end + 1:
            i += 1
            end = members[i]
        spans.append(str(start) if start == end else f"{start}:{end}")
        i += 1
    return ",".join(spans)
