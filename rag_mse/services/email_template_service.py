"""Transactional email templates.

The template set is closed: every template id the application can enqueue is
defined in ``TEMPLATES``. Rendering is strict. An unknown id raises
UnknownTemplate and a placeholder without a value raises
MissingTemplateVariable, so a literal ``{{placeholder}}`` never reaches a
recipient.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Mapping

from rag_mse.db.enums import EmailTemplateId

VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class TemplateError(ValueError):
    """Base class for rendering failures."""


class UnknownTemplate(TemplateError):
    def __init__(self, template_id: str):
        super().__init__(f"Unknown email template: {template_id}")
        self.template_id = template_id


class MissingTemplateVariable(TemplateError):
    def __init__(self, template_id: str, missing: list[str]):
        super().__init__(f"Missing variables for template {template_id}: {', '.join(missing)}")
        self.template_id = template_id
        self.missing = missing


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    body: str


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    text: str
    html: str


TEMPLATES: dict[str, EmailTemplate] = {
    EmailTemplateId.CONTACT.value: EmailTemplate(
        subject="Neue Kontaktanfrage von {{name}}",
        body=(
            "Über das Kontaktformular der Website ist eine neue Nachricht eingegangen.\n"
            "\n"
            "Name: {{name}}\n"
            "E-Mail: {{email}}\n"
            "\n"
            "Nachricht:\n"
            "{{message}}\n"
        ),
    ),
    EmailTemplateId.INVITATION.value: EmailTemplate(
        subject="Einladung zur {{appName}}",
        body=(
            "Hallo,\n"
            "\n"
            "Sie wurden eingeladen, ein Konto bei der {{appName}} anzulegen.\n"
            "Über den folgenden Link können Sie Ihre Registrierung abschließen:\n"
            "\n"
            "{{inviteUrl}}\n"
            "\n"
            "Der Link ist {{inviteValidityDays}} Tage gültig.\n"
            "\n"
            "Viele Grüße\n"
            "{{appName}}\n"
        ),
    ),
    EmailTemplateId.PASSWORD_RESET.value: EmailTemplate(
        subject="Passwort zurücksetzen bei der {{appName}}",
        body=(
            "Hallo,\n"
            "\n"
            "für Ihr Konto wurde das Zurücksetzen des Passworts angefordert.\n"
            "Über den folgenden Link können Sie ein neues Passwort vergeben:\n"
            "\n"
            "{{resetUrl}}\n"
            "\n"
            "Der Link ist {{resetValidityHours}} Stunden gültig und kann nur einmal verwendet werden.\n"
            "Falls Sie keine Anfrage gestellt haben, können Sie diese E-Mail ignorieren.\n"
            "\n"
            "Viele Grüße\n"
            "{{appName}}\n"
        ),
    ),
    EmailTemplateId.EVENT_REMINDER.value: EmailTemplate(
        subject="Terminerinnerung: {{eventDate}} in {{eventLocation}}",
        body=(
            "Hallo,\n"
            "\n"
            "in {{daysBefore}} Tag(en) findet ein Termin statt, für den Sie sich noch nicht "
            "an- oder abgemeldet haben.\n"
            "\n"
            "Datum: {{eventDate}}\n"
            "Uhrzeit: {{eventTimeFrom}} bis {{eventTimeTo}} Uhr\n"
            "Ort: {{eventLocation}}\n"
            "\n"
            "Teilnahme angeben:\n"
            "{{rsvpUrl}}\n"
            "\n"
            "Keine Erinnerungen mehr erhalten:\n"
            "{{unsubscribeUrl}}\n"
            "\n"
            "Viele Grüße\n"
            "{{appName}}\n"
        ),
    ),
}


def get_template(template_id: str) -> EmailTemplate:
    template = TEMPLATES.get(template_id)
    if template is None:
        raise UnknownTemplate(template_id)
    return template


def template_variables(template_id: str) -> set[str]:
    """Placeholder names used by a template (subject and body)."""
    template = get_template(template_id)
    return set(VARIABLE_PATTERN.findall(template.subject)) | set(VARIABLE_PATTERN.findall(template.body))


def _substitute(source: str, variables: Mapping[str, str]) -> str:
    return VARIABLE_PATTERN.sub(lambda match: variables[match.group(1)], source)


def text_to_html(text: str) -> str:
    """Escape plain text and keep its line breaks."""
    return html.escape(text).replace("\r\n", "\n").replace("\n", "<br />\n")


def render(template_id: str, variables: Mapping[str, object]) -> RenderedEmail:
    """
    Render a template with variable substitution.

    Values are converted with str(). The subject is collapsed to a single
    line so variables cannot inject headers.

    Raises:
        UnknownTemplate: template_id is not in TEMPLATES
        MissingTemplateVariable: a placeholder has no value
    """
    template = get_template(template_id)
    values = {key: str(value) for key, value in variables.items() if value is not None}

    missing = sorted(name for name in template_variables(template_id) if name not in values)
    if missing:
        raise MissingTemplateVariable(template_id, missing)

    subject = _substitute(template.subject, values)
    subject = " ".join(subject.split())
    text = _substitute(template.body, values)
    return RenderedEmail(subject=subject, text=text, html=text_to_html(text))
