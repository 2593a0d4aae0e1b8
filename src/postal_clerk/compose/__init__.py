from postal_clerk.compose.mailto import is_mailto, parse_mailto, resolve_mailto
from postal_clerk.compose.templates import (
    Template,
    TemplateKind,
    forward_template,
    new_template,
    prefix_subject,
    reply_template,
)

__all__ = [
    "Template",
    "TemplateKind",
    "forward_template",
    "is_mailto",
    "new_template",
    "parse_mailto",
    "prefix_subject",
    "reply_template",
    "resolve_mailto",
]
