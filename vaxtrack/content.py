"""Notification titles and messages.

Renders the short title/message pair stored on each notification from its
typed payload, in English or French. Dates are formatted with Babel in the
recipient's locale (e.g. "June 29, 2024" / "29 juin 2024"). Channel-specific
bodies (HTML email, SMS length limits) belong to the channel senders.
"""

from __future__ import annotations

from dataclasses import asdict
from datetime import date
from typing import Dict, Tuple

from babel.dates import format_date

from .data_models import GeneralPayload, NotificationPayload
from .enums import Channel, Language, NotificationType
from .utils import validate_and_format_template

TEMPLATES: Dict[Language, Dict[NotificationType, Tuple[str, str]]] = {
    Language.ENGLISH: {
        NotificationType.REMINDER: (
            "Vaccination Reminder for {child_name}",
            "Don't forget! {child_name} has dose {dose_number} of {vaccine_name} "
            "scheduled for {scheduled_date}.",
        ),
        NotificationType.OVERDUE: (
            "Overdue Vaccination for {child_name}",
            "{child_name}'s {vaccine_name} vaccination (dose {dose_number}) is "
            "{days_overdue} days overdue. Please schedule an appointment as soon as possible.",
        ),
        NotificationType.COMPLETED: (
            "Vaccination Completed for {child_name}",
            "Great news! {child_name} received dose {dose_number} of {vaccine_name} "
            "on {administered_date}.",
        ),
        NotificationType.CANCELLED: (
            "Vaccination Cancelled for {child_name}",
            "Dose {dose_number} of {vaccine_name} for {child_name}, scheduled for "
            "{scheduled_date}, was cancelled: {reason}.",
        ),
        NotificationType.GENERAL: ("{title}", "{message}"),
    },
    Language.FRENCH: {
        NotificationType.REMINDER: (
            "Rappel de vaccination pour {child_name}",
            "N'oubliez pas! La dose {dose_number} de {vaccine_name} de {child_name} "
            "est prévue le {scheduled_date}.",
        ),
        NotificationType.OVERDUE: (
            "Vaccination en retard pour {child_name}",
            "La vaccination {vaccine_name} (dose {dose_number}) de {child_name} a "
            "{days_overdue} jours de retard. Veuillez prendre rendez-vous dès que possible.",
        ),
        NotificationType.COMPLETED: (
            "Vaccination effectuée pour {child_name}",
            "Bonne nouvelle! {child_name} a reçu la dose {dose_number} de "
            "{vaccine_name} le {administered_date}.",
        ),
        NotificationType.CANCELLED: (
            "Vaccination annulée pour {child_name}",
            "La dose {dose_number} de {vaccine_name} de {child_name}, prévue le "
            "{scheduled_date}, a été annulée : {reason}.",
        ),
        NotificationType.GENERAL: ("{title}", "{message}"),
    },
}

SMS_SIGNATURE = {
    Language.ENGLISH: "Vaccination Tracking System",
    Language.FRENCH: "Suivi de la vaccination",
}


def resolve_language(code: str | None, default: Language = Language.ENGLISH) -> Language:
    """Supported language for a recipient code, falling back to ``default``."""
    if not code:
        return default
    try:
        return Language.from_string(code)
    except ValueError:
        return default


def format_display_date(value: date, language: Language | str) -> str:
    """Format a date in the long, locale-specific style."""
    return format_date(value, format="long", locale=Language.from_string(language).locale)


def build_context(payload: NotificationPayload, language: Language) -> Dict[str, str]:
    """Flatten a payload into template placeholders, localizing dates."""
    if isinstance(payload, GeneralPayload):
        details = {str(k): str(v) for k, v in payload.details.items()}
        details.setdefault("title", "")
        details.setdefault("message", "")
        return details

    context: Dict[str, str] = {}
    for key, value in asdict(payload).items():
        if isinstance(value, date):
            context[key] = format_display_date(value, language)
        elif value is None:
            context[key] = ""
        else:
            context[key] = str(value)
    return context


def render(
    type_: NotificationType, payload: NotificationPayload, language: Language | str = Language.ENGLISH
) -> Tuple[str, str]:
    """Render the (title, message) pair for a notification.

    Raises
    ------
    KeyError
        If a template references a field the payload does not provide.
    """
    language = Language.from_string(language)
    title_template, message_template = TEMPLATES[language][type_]
    context = build_context(payload, language)
    allowed = set(context)
    return (
        validate_and_format_template(title_template, context, allowed),
        validate_and_format_template(message_template, context, allowed),
    )


def channel_body(channel: Channel, title: str, message: str, recipient_name: str, language: Language | str) -> Tuple[str, str]:
    """Subject and body handed to a channel sender."""
    language = Language.from_string(language)
    if channel is Channel.SMS:
        greeting = "Hello" if language is Language.ENGLISH else "Bonjour"
        name = f" {recipient_name}" if recipient_name else ""
        return title, f"{greeting}{name}, {message} - {SMS_SIGNATURE[language]}"
    return title, message
