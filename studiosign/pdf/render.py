"""
Template rendering.

Templates are HTML with {{ name }} placeholders. Substitution is a single
map-driven pass: every placeholder is looked up in the variables map and
its value is HTML-escaped. Unresolved placeholders are either marked in the
output or rejected, depending on the MissingVariablePolicy.
"""
import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from studiosign.exceptions import RenderFailure
from studiosign.models import DocumentRecord, MissingVariablePolicy

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

MISSING_MARKER = '<span class="missing-variable">[missing: {name}]</span>'


@dataclass
class RenderResult:
    html: str
    missing: List[str] = field(default_factory=list)


def find_placeholders(template: str) -> List[str]:
    """Distinct placeholder names in order of first appearance."""
    seen: Dict[str, None] = {}
    for match in PLACEHOLDER_PATTERN.finditer(template):
        seen.setdefault(match.group(1), None)
    return list(seen)


def render(
    template: str,
    variables: Mapping[str, Optional[str]],
    policy: MissingVariablePolicy = MissingVariablePolicy.MARK,
) -> RenderResult:
    """
    Substitute placeholders in template.

    A variable bound to None counts as missing; an empty string is a value.

    Raises:
        RenderFailure: Under STRICT when any placeholder is unresolved
    """
    missing: Dict[str, None] = {}

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            missing.setdefault(name, None)
            return MISSING_MARKER.format(name=html.escape(name))
        return html.escape(str(value))

    output = PLACEHOLDER_PATTERN.sub(substitute, template)
    missing_names = list(missing)

    if missing_names and policy == MissingVariablePolicy.STRICT:
        raise RenderFailure(
            f"Missing template variables: {', '.join(missing_names)}",
            missing=missing_names,
        )
    if missing_names:
        logger.info(f"Rendered template with {len(missing_names)} missing variable(s): {missing_names}")

    return RenderResult(html=output, missing=missing_names)


def builtin_variables(document: DocumentRecord, today: datetime) -> Dict[str, str]:
    """Variables every template can use unless the document overrides them."""
    values = {
        "document_number": document.number,
        "document_title": document.title,
        "today": today.strftime("%Y-%m-%d"),
    }
    recipient_name = getattr(document, "recipient_name", None)
    if recipient_name:
        values["recipient_name"] = recipient_name
    recipient_email = getattr(document, "recipient_email", None)
    if recipient_email:
        values["recipient_email"] = recipient_email
    return values


def render_document(
    document: DocumentRecord,
    today: datetime,
    default_policy: MissingVariablePolicy = MissingVariablePolicy.MARK,
) -> RenderResult:
    """Render a document's template with built-ins overlaid by its own variables."""
    variables = {**builtin_variables(document, today), **document.variables}
    policy = document.missing_variable_policy or default_policy
    return render(document.template, variables, policy)
