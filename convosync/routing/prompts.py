"""Text rendered for the department selection flow."""

from __future__ import annotations

from collections.abc import Sequence

from ..conversations.models import Department


def render_selection_prompt(departments: Sequence[Department], header: str) -> str:
    """Numbered department menu, e.g. ``1 - Sales``."""

    lines = [f"{index} - {department.name}" for index, department in enumerate(departments, 1)]
    return "\n".join([header, "", *lines])


def render_confirmation(template: str, department_name: str) -> str:
    # str.replace keeps user-authored templates with stray braces intact
    return template.replace("{department}", department_name)
