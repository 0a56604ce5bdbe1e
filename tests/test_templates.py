"""
test_templates.py — Tests for the template store and renderer.

Run with:
    pytest tests/test_templates.py -v
"""

from __future__ import annotations

import pytest

from backend.app.core.errors import TemplateRenderError
from backend.app.notifications.models import Template
from backend.app.notifications.templates import (
    TemplateStore,
    builtin_templates,
    find_placeholders,
    render_template,
)


def _template(**overrides) -> Template:
    fields = {
        "id": "scan",
        "name": "Scan",
        "subject": "Scan {{scanName}} done",
        "content": "{{scanName}}: {{ issueCount }} issues ({{scanName}})",
        "variables": ("scanName", "issueCount"),
    }
    fields.update(overrides)
    return Template(**fields)


class TestFindPlaceholders:

    def test_order_of_first_appearance(self):
        assert find_placeholders("{{b}} {{a}} {{ b }}") == ["b", "a"]

    def test_no_placeholders(self):
        assert find_placeholders("plain text { not } {{}}") == []

    def test_any_name_without_braces(self):
        assert find_placeholders("{{1st}} {{ first name }} {{user.email}}") == [
            "1st", "first name", "user.email",
        ]


class TestRenderTemplate:

    def test_all_variables_substituted(self):
        subject, content = render_template(_template(), {"scanName": "nightly", "issueCount": 3})
        assert subject == "Scan nightly done"
        assert content == "nightly: 3 issues (nightly)"

    def test_values_coerced_to_str(self):
        _, content = render_template(
            _template(content="{{issueCount}}"), {"scanName": "x", "issueCount": 4.5},
        )
        assert content == "4.5"

    def test_undeclared_variables_ignored(self):
        t = _template(content="{{scanName}} {{extra}}")
        _, content = render_template(t, {"scanName": "a", "issueCount": 1, "extra": "zzz"})
        assert content == "a {{extra}}"

    def test_missing_variables_left_literal(self):
        subject, content = render_template(_template(), {"scanName": "a"})
        assert subject == "Scan a done"
        assert "{{ issueCount }}" in content

    def test_no_variables_mapping(self):
        subject, _ = render_template(_template())
        assert subject == "Scan {{scanName}} done"

    def test_strict_mode_raises_with_missing_names(self):
        with pytest.raises(TemplateRenderError) as exc:
            render_template(_template(), {}, strict=True)
        assert exc.value.message == "Missing template variables: scanName, issueCount"
        assert exc.value.details["missing"] == ["scanName", "issueCount"]

    def test_strict_mode_passes_when_complete(self):
        subject, _ = render_template(
            _template(), {"scanName": "a", "issueCount": 0}, strict=True,
        )
        assert subject == "Scan a done"

    def test_replacement_is_literal(self):
        _, content = render_template(
            _template(content="{{scanName}}"), {"scanName": r"C:\new\1", "issueCount": 0},
        )
        assert content == r"C:\new\1"

    def test_value_containing_marker_not_reexpanded(self):
        _, content = render_template(
            _template(content="{{scanName}}|{{issueCount}}"),
            {"scanName": "{{issueCount}}", "issueCount": "7"},
        )
        assert content == "{{issueCount}}|7"

    def test_names_that_are_not_identifiers(self):
        t = _template(
            subject="Hi {{first name}}",
            content="You placed {{1st}} in {{ first name }}'s league",
            variables=("1st", "first name"),
        )
        subject, content = render_template(t, {"1st": "first", "first name": "Ada"})
        assert subject == "Hi Ada"
        assert content == "You placed first in Ada's league"
        assert find_placeholders(subject + content) == []


class TestTemplateStore:

    def test_add_and_get(self):
        store = TemplateStore()
        store.add(_template())
        assert store.get("scan").name == "Scan"
        assert "scan" in store
        assert len(store) == 1

    def test_replace_keeps_first_position(self):
        store = TemplateStore([_template(id="a"), _template(id="b")])
        store.add(_template(id="a", name="Replaced"))
        assert [t.id for t in store.all()] == ["a", "b"]
        assert store.get("a").name == "Replaced"

    def test_unknown_template(self):
        assert TemplateStore().get("missing") is None

    def test_variables_coerced_to_tuple(self):
        t = Template(id="x", name="X", variables=["a", "b"])
        assert t.variables == ("a", "b")


class TestBuiltinTemplates:

    def test_expected_ids(self):
        ids = [t.id for t in builtin_templates()]
        assert ids == [
            "scan-completed",
            "scan-failed",
            "high-risk-alert",
            "critical-vulnerability",
            "system-alert",
            "welcome",
            "password-reset",
            "organization-invitation",
            "report-ready",
        ]

    @pytest.mark.parametrize("template", builtin_templates(), ids=lambda t: t.id)
    def test_every_placeholder_is_declared(self, template):
        used = find_placeholders(template.subject + template.content)
        assert set(used) == set(template.variables)

    @pytest.mark.parametrize("template", builtin_templates(), ids=lambda t: t.id)
    def test_full_render_leaves_no_markers(self, template):
        values = {name: f"<{name}>" for name in template.variables}
        subject, content = render_template(template, values, strict=True)
        assert "{{" not in subject and "}}" not in subject
        assert "{{" not in content and "}}" not in content
