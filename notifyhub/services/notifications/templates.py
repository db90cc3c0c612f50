from __future__ import annotations

from dataclasses import dataclass, replace
import json
import logging
from typing import Any, Iterable, Mapping

from jinja2 import StrictUndefined, TemplateError as JinjaTemplateError, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

from notifyhub.core.config import Settings
from notifyhub.core.errors import TemplateError
from notifyhub.domain.delivery import NotificationEvent


logger = logging.getLogger(__name__)

# Payload keys the producer uses to pick a template and pass its variables.
TEMPLATE_KEY = "template"
TEMPLATE_DATA_KEY = "template_data"
LANGUAGE_KEY = "language"


@dataclass(frozen=True)
class NotificationTemplate:
    name: str
    language: str
    title: str
    body: str
    subject: str | None = None
    html: str | None = None
    required_variables: tuple[str, ...] = ()


def template_from_dict(name: str, language: str, raw: Mapping[str, Any]) -> NotificationTemplate:
    if not isinstance(raw, Mapping):
        raise TemplateError(f"template {name} must be an object", template=name)
    title = raw.get("title")
    body = raw.get("body")
    if not isinstance(title, str) or not isinstance(body, str):
        raise TemplateError(f"template {name} needs a title and a body", template=name)
    required = raw.get("required_variables") or ()
    if isinstance(required, str):
        required = required.split(",")
    return NotificationTemplate(
        name=name,
        language=language,
        title=title,
        body=body,
        subject=raw.get("subject"),
        html=raw.get("html"),
        required_variables=tuple(str(item).strip() for item in required if str(item).strip()),
    )


class TemplateRegistry:
    """Named notification templates per language, rendered in a jinja2 sandbox.

    Lookup falls back to the default language when the requested translation
    is missing. Rendering fails instead of producing a blank body: required
    variables are checked first and undefined placeholders raise.
    """

    def __init__(self, templates: Iterable[NotificationTemplate] = (), *, default_language: str = "id") -> None:
        self._default_language = default_language.strip().lower()
        self._templates = {(template.name, template.language): template for template in templates}
        self._env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False, keep_trailing_newline=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TemplateRegistry":
        # Keys are "name" (default language) or "name:language".
        default_language = settings.default_template_language.strip().lower()
        try:
            raw = json.loads(settings.notification_templates_json or "{}")
        except json.JSONDecodeError as exc:
            raise TemplateError("notification_templates_json is not valid JSON") from exc
        if not isinstance(raw, dict):
            raise TemplateError("notification_templates_json must be an object")
        templates = []
        for key, value in raw.items():
            name, _, language = str(key).strip().lower().partition(":")
            templates.append(template_from_dict(name, language or default_language, value))
        return cls(templates, default_language=default_language)

    def get(self, name: str, language: str | None = None) -> NotificationTemplate:
        template_name = name.strip().lower()
        for lang in (str(language or "").strip().lower(), self._default_language):
            template = self._templates.get((template_name, lang))
            if template is not None:
                return template
        raise TemplateError(f"template {template_name} not found", template=template_name)

    def _render_string(self, template: NotificationTemplate, source: str, context: Mapping[str, Any]) -> str:
        try:
            return self._env.from_string(source).render(**context)
        except UndefinedError as exc:
            raise TemplateError(f"missing variable in template {template.name}: {exc}", template=template.name) from exc
        except JinjaTemplateError as exc:
            raise TemplateError(f"template {template.name} failed to render: {exc}", template=template.name) from exc

    def render(
        self, name: str, variables: Mapping[str, Any], *, language: str | None = None
    ) -> dict[str, str]:
        template = self.get(name, language)
        missing = [var for var in template.required_variables if variables.get(var) in (None, "")]
        if missing:
            raise TemplateError(
                f"template {template.name} is missing required variables: {', '.join(missing)}",
                template=template.name,
                missing=missing,
            )
        rendered = {
            "title": self._render_string(template, template.title, variables),
            "message": self._render_string(template, template.body, variables),
        }
        if template.subject:
            rendered["subject"] = self._render_string(template, template.subject, variables)
        if template.html:
            rendered["html"] = self._render_string(template, template.html, variables)
        return rendered

    def apply(self, event: NotificationEvent, *, default_template: str | None = None) -> NotificationEvent:
        # The event's own template wins over the policy default; events without either pass through.
        payload = event.payload
        name = payload.get(TEMPLATE_KEY) or default_template
        if not name:
            return event
        if not isinstance(name, str):
            raise TemplateError("template must be a name")
        data = payload.get(TEMPLATE_DATA_KEY) or {}
        if not isinstance(data, Mapping):
            raise TemplateError(f"{TEMPLATE_DATA_KEY} must be an object", template=name)
        variables = {**payload, **data}
        rendered = self.render(name, variables, language=payload.get(LANGUAGE_KEY))
        logger.debug("template_rendered template=%s message_id=%s", name, event.message_id)
        return replace(event, payload={**payload, **rendered, TEMPLATE_KEY: name.strip().lower()})
