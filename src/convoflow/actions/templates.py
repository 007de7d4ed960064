"""Variable interpolation and the template catalog."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..core.config import TemplateConfig
from ..core.exceptions import TerminalSendError
from ..core.logger import get_logger

logger = get_logger("templates")

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

APPROVED = "approved"


def placeholders(text: str) -> list[str]:
    """Names referenced as ``{{name}}`` in ``text``, in order of first use."""
    seen: list[str] = []
    for name in PLACEHOLDER.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def interpolate(text: str, variables: Mapping[str, Any], policy: str = "empty") -> str:
    """Replace ``{{name}}`` placeholders with captured variables.

    Args:
        text: Text containing placeholders
        variables: Captured run variables
        policy: ``empty`` renders unknown names as "", ``fail`` rejects them

    Raises:
        TerminalSendError: ``missing_variable`` under the ``fail`` policy
    """

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        value = variables.get(name)
        if value is None:
            if policy == "fail":
                raise TerminalSendError(
                    f"Variable '{name}' has not been captured", error_class="missing_variable"
                )
            return ""
        return str(value)

    return PLACEHOLDER.sub(replace, text or "")


@dataclass(frozen=True)
class MessageTemplate:
    """Template as known to the messaging channel."""

    id: str
    body: str
    slots: tuple[str, ...] = ()
    name: str | None = None
    language: str = "en"
    status: str = APPROVED

    @property
    def is_approved(self) -> bool:
        return self.status.lower() == APPROVED


@dataclass(frozen=True)
class RenderedTemplate:
    """Template resolved and filled for one send."""

    template: MessageTemplate
    values: dict[str, str] = field(default_factory=dict)
    text: str = ""


class TemplateCatalog(Protocol):
    """Lookup of channel templates by id."""

    def get(self, template_id: str) -> MessageTemplate | None: ...


class StaticTemplateCatalog:
    """Catalog backed by the ``templates`` configuration section."""

    def __init__(self, templates: Iterable[TemplateConfig | MessageTemplate] = ()):
        self._templates: dict[str, MessageTemplate] = {}
        for template in templates:
            self.add(template)

    def add(self, template: TemplateConfig | MessageTemplate) -> None:
        if isinstance(template, TemplateConfig):
            template = MessageTemplate(
                id=template.id,
                body=template.body,
                slots=tuple(template.slots or placeholders(template.body)),
                name=template.name,
                language=template.language,
                status=template.status,
            )
        self._templates[template.id] = template

    def get(self, template_id: str) -> MessageTemplate | None:
        return self._templates.get(template_id)


def render_template(
    catalog: TemplateCatalog,
    template_id: str,
    expressions: Mapping[str, str],
    variables: Mapping[str, Any],
    policy: str = "empty",
) -> RenderedTemplate:
    """Resolve a template and fill its slots.

    Slots listed in ``expressions`` are interpolated from their expression;
    any other slot takes the run variable of the same name.

    Raises:
        TerminalSendError: ``template_not_found``, ``template_not_approved``
            or ``missing_variable``
    """
    template = catalog.get(template_id)
    if template is None:
        raise TerminalSendError(
            f"Template '{template_id}' does not exist", error_class="template_not_found"
        )
    if not template.is_approved:
        raise TerminalSendError(
            f"Template '{template_id}' is {template.status}, not approved",
            error_class="template_not_approved",
        )

    values: dict[str, str] = {}
    for slot in template.slots:
        if slot in expressions:
            values[slot] = interpolate(expressions[slot], variables, policy)
        else:
            values[slot] = interpolate("{{" + slot + "}}", variables, policy)
    for slot, expression in expressions.items():
        values.setdefault(slot, interpolate(expression, variables, policy))

    text = interpolate(template.body, values, "empty")
    logger.debug("Rendered template %s with slots %s", template_id, sorted(values))
    return RenderedTemplate(template=template, values=values, text=text)
