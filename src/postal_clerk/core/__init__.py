from postal_clerk.core.flags import Flag, FlagSet, parse_flags
from postal_clerk.core.logging import configure_logging, sanitize_for_log
from postal_clerk.core.ranges import SeqRange, format_range, parse_range

__all__ = [
    "Flag",
    "FlagSet",
    "SeqRange",
    "configure_logging",
    "format_range",
    "parse_flags",
    "parse_range",
    "sanitize_for_log",
]
