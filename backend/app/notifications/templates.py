"""
templates.py — Template store and renderer.

Placeholders are ``{{name}}`` markers (whitespace inside the braces is
tolerated: ``{{ name }}``). A name is any text without braces, so ``{{1st}}``
and ``{{first name}}`` are valid markers. Rendering replaces every
occurrence of each *declared* variable in both subject and content
with ``str(value)``.

    Variable state                       Lenient (default)   Strict
    ──────────────────────────────────   ─────────────────   ─────────────────────
    declared + supplied                  substituted         substituted
    supplied, not declared               ignored             ignored
    declared, not supplied               marker left as-is   TemplateRenderError

Strictness is selected per call (the service reads
``settings.NOTIFY_STRICT_TEMPLATES`` once at construction).
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from backend.app.core.errors import TemplateRenderError
from backend.app.notifications.models import Template

logger = logging.getLogger(__name__)

_ANY_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


def find_placeholders(text: str) -> List[str]:
    """Return placeholder names in ``text`` in order of first appearance."""
    seen: List[str] = []
    for match in _ANY_PLACEHOLDER.finditer(text):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def render_template(
    template: Template,
    variables: Optional[Mapping[str, Any]] = None,
    *,
    strict: bool = False,
) -> Tuple[str, str]:
    """
    Merge ``variables`` into the template's subject and content.

    Parameters
    ----------
    template : Template
    variables : mapping, optional
        Values are coerced with ``str()``.
    strict : bool
        Raise instead of leaving markers for declared variables that
        have no value.

    Returns
    -------
    (subject, content)

    Raises
    ------
    TemplateRenderError
        Only in strict mode.
    """
    values = variables or {}
    missing = [name for name in template.variables if name not in values]
    if missing and strict:
        raise TemplateRenderError(template.id, missing)
    if missing:
        logger.warning(
            "Template %s rendered with unfilled variables: %s",
            template.id, ", ".join(missing),
        )

    declared = set(template.variables)

    # Single pass: substituted values are never scanned for markers again
    def _substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in declared and name in values:
            return str(values[name])
        return match.group(0)

    return (
        _ANY_PLACEHOLDER.sub(_substitute, template.subject),
        _ANY_PLACEHOLDER.sub(_substitute, template.content),
    )


class TemplateStore:
    """
    Named templates, last-write-wins by id.

    Replacing an id keeps its original position in ``all()``.
    """

    def __init__(self, templates: Optional[Iterable[Template]] = None):
        self._templates: Dict[str, Template] = {}
        self._lock = threading.Lock()
        for template in templates or ():
            self.add(template)

    def add(self, template: Template) -> None:
        undeclared = [
            name
            for name in find_placeholders(template.subject + "\n" + template.content)
            if name not in template.variables
        ]
        if undeclared:
            logger.debug(
                "Template %s has undeclared placeholders: %s",
                template.id, ", ".join(undeclared),
            )
        with self._lock:
            self._templates[template.id] = template

    def get(self, template_id: str) -> Optional[Template]:
        return self._templates.get(template_id)

    def all(self) -> List[Template]:
        with self._lock:
            return list(self._templates.values())

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates


# ═══════════════════════════════════════════════════════════════════════════
# Built-in event templates
# ═══════════════════════════════════════════════════════════════════════════

def builtin_templates() -> List[Template]:
    """Templates for the platform's standard notification events."""
    return [
        Template(
            id="scan-completed",
            name="Scan Completed",
            subject="Scan {{scanName}} completed",
            content=(
                "Hello {{userName}},\n\n"
                "Your compatibility scan \"{{scanName}}\" has completed with "
                "{{issueCount}} issues and a risk score of {{riskScore}}/100.\n\n"
                "View the full report: {{reportUrl}}"
            ),
            variables=("scanName", "userName", "issueCount", "riskScore", "reportUrl"),
        ),
        Template(
            id="scan-failed",
            name="Scan Failed",
            subject="Scan {{scanName}} failed",
            content=(
                "Hello {{userName}},\n\n"
                "Your scan \"{{scanName}}\" could not be completed: {{reason}}"
            ),
            variables=("scanName", "userName", "reason"),
        ),
        Template(
            id="high-risk-alert",
            name="High Risk Detected",
            subject="High risk detected in {{scanName}}",
            content=(
                "Critical security issues were found in \"{{scanName}}\" "
                "(risk score {{riskScore}}/100). Immediate attention required."
            ),
            variables=("scanName", "riskScore"),
        ),
        Template(
            id="critical-vulnerability",
            name="Critical Vulnerability",
            subject="{{severity}} vulnerability detected",
            content=(
                "A {{severity}} severity {{vulnerabilityType}} vulnerability was "
                "found in {{fileName}} (CVSS {{cvssScore}}).\n\n"
                "Recommendation: {{recommendation}}"
            ),
            variables=(
                "severity", "vulnerabilityType", "fileName",
                "cvssScore", "recommendation",
            ),
        ),
        Template(
            id="system-alert",
            name="System Alert",
            subject="System alert: {{title}}",
            content="{{message}}",
            variables=("title", "message"),
        ),
        Template(
            id="welcome",
            name="Welcome",
            subject="Welcome to {{productName}}!",
            content=(
                "Hello {{name}}!\n\n"
                "Welcome to {{productName}}. Get started by uploading your first "
                "security log and running a compatibility analysis."
            ),
            variables=("name", "productName"),
        ),
        Template(
            id="password-reset",
            name="Password Reset",
            subject="Reset your password",
            content=(
                "You requested a password reset.\n\n"
                "Reset link: {{resetUrl}}\n"
                "This link expires in {{expirationTime}}."
            ),
            variables=("resetUrl", "expirationTime"),
        ),
        Template(
            id="organization-invitation",
            name="Organization Invitation",
            subject="Invitation to join {{organizationName}}",
            content=(
                "You've been invited to join {{organizationName}} as a {{role}}.\n\n"
                "Accept the invitation: {{inviteUrl}}\n"
                "This invitation expires on {{expiresAt}}."
            ),
            variables=("organizationName", "role", "inviteUrl", "expiresAt"),
        ),
        Template(
            id="report-ready",
            name="Report Ready",
            subject="Your report {{reportName}} is ready",
            content="Your report \"{{reportName}}\" is ready: {{reportUrl}}",
            variables=("reportName", "reportUrl"),
        ),
    ]
