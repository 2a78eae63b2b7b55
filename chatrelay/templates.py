"""
Template rendering.

Template text uses positional placeholders ({{1}}, {{2}}, ...) grouped by
component. The provider receives the variables as ordered parameters; the
stored message receives the substituted text, so no raw placeholder ever
reaches the message store.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field

from chatrelay.errors import InvalidRequest
from chatrelay.payloads import RenderedComponent, TemplateButton, TemplateRender, TemplateVariables

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\d+)\s*\}\}")

COMPONENT_ORDER = ("header", "body", "footer")


class TemplateComponent(BaseModel):
    type: str
    format: Optional[str] = None
    text: Optional[str] = None
    buttons: list[TemplateButton] = Field(default_factory=list)


class TemplateDefinition(BaseModel):
    """Template as registered with the provider."""
    id: Optional[str] = None
    name: Optional[str] = None
    language: str = "en"
    components: list[TemplateComponent] = Field(default_factory=list)

    def component(self, kind: str) -> Optional[TemplateComponent]:
        for component in self.components:
            if component.type.upper() == kind.upper():
                return component
        return None


@dataclass
class RenderedTemplate:
    payload: TemplateRender
    content: str
    components: list[dict]


def _sorted_keys(values: dict[str, str]) -> list[str]:
    try:
        return sorted(values, key=int)
    except ValueError:
        raise InvalidRequest("template variable keys must be positional numbers")


def render_placeholders(text: Optional[str], values: dict[str, str]) -> Optional[str]:
    """Substitute {{n}} placeholders in `text`; unknown placeholders are left as they are."""
    if text is None:
        return None

    def substitute(match: re.Match) -> str:
        return values.get(match.group(1), match.group(0))

    return PLACEHOLDER_PATTERN.sub(substitute, text)


def has_placeholders(text: Optional[str]) -> bool:
    return bool(text) and PLACEHOLDER_PATTERN.search(text) is not None


def build_template_components(variables: TemplateVariables) -> list[dict]:
    """Provider-side parameters: one component per non-empty variable group, in numeric order."""
    components = []
    for kind in COMPONENT_ORDER:
        values = getattr(variables, kind)
        if not values:
            continue
        components.append({
            "type": kind,
            "parameters": [{"type": "text", "text": values[key]} for key in _sorted_keys(values)],
        })
    return components


def render_template(
    template_name: str,
    variables: TemplateVariables,
    definition: Optional[TemplateDefinition] = None,
) -> RenderedTemplate:
    """
    Render a template for sending and for storage.

    Args:
        template_name: Provider template name
        variables: Positional variables per component
        definition: The template's components; without it the stored
            content is the template name

    Returns:
        RenderedTemplate with the storable payload, the display content and
        the provider components.

    Raises:
        InvalidRequest: a placeholder has no value
    """
    template_name = (template_name or "").strip()
    if not template_name:
        raise InvalidRequest("template name is required")
    components = build_template_components(variables)
    definition = definition or TemplateDefinition(name=template_name)

    rendered = {}
    for kind in COMPONENT_ORDER:
        source = definition.component(kind)
        if source is None:
            rendered[kind] = None
            continue
        text = render_placeholders(source.text, getattr(variables, kind))
        if has_placeholders(text):
            raise InvalidRequest(f"missing {kind} variables for template {template_name}")
        rendered[kind] = RenderedComponent(
            format=(source.format or "TEXT") if kind == "header" else None,
            text=text,
        )

    buttons_component = definition.component("buttons")
    body_source = definition.component("body")
    content = rendered["body"].text if rendered["body"] and rendered["body"].text else template_name

    payload = TemplateRender(
        template_name=template_name,
        template_id=definition.id,
        language=definition.language or "en",
        variables=variables,
        original_content=body_source.text if body_source and body_source.text else template_name,
        header=rendered["header"],
        body=rendered["body"],
        footer=rendered["footer"],
        buttons=buttons_component.buttons if buttons_component else [],
    )
    logger.debug(f"Rendered template {template_name} with {len(components)} parameter groups")
    return RenderedTemplate(payload=payload, content=content, components=components)
