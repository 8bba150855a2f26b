"""Message text and alert e-mail bodies."""
from __future__ import annotations

from html import escape

from config import settings
from core.durations import format_duration
from core.states import describe_state_value
from notifications.conditions import normalize_value

ALERT_SUBJECT = "🔔 Line Alert: {event_name}"
ESCALATION_SUBJECT = "⚠️ ESCALATED (Level {level}): {event_name}"


def format_message(rule, value, old_value) -> str:
    template = rule.description or f"{rule.event_name}: {{{{value}}}}"
    new_text = normalize_value(value)
    old_text = "N/A" if old_value is None or old_value == "" else str(old_value)
    return (
        template.replace("{{value}}", new_text)
        .replace("{{newValue}}", new_text)
        .replace("{{oldValue}}", old_text)
    )


def display_value(value, tag=None) -> str:
    if tag is not None and tag.is_machine_state:
        return describe_state_value(value)
    return normalize_value(value) or "N/A"


def acknowledge_url(token: str) -> str:
    return f"{settings.API_URL.rstrip('/')}/api/notifications/acknowledge/{token}"


def _rows(rows: list[tuple[str, str]]) -> str:
    return "".join(
        f"<tr><td><b>{escape(label)}</b></td><td>{escape(value)}</td></tr>"
        for label, value in rows
    )


def alert_email_html(notification, rule, tag=None, escalation_users=()) -> str:
    rows = [
        ("Event", rule.event_name),
        ("Tag", tag.name if tag is not None else str(rule.tag_id)),
        ("Value", display_value(notification.tag_value, tag)),
        ("Previous value", display_value(notification.old_tag_value, tag)),
    ]
    body = [
        f"<h2>{escape(rule.event_name)}</h2>",
        f"<p>{escape(notification.message)}</p>",
        f"<table>{_rows(rows)}</table>",
    ]
    if escalation_users:
        delay = format_duration(rule.escalation_delay, rule.escalation_delay_unit or "minutes")
        names = ", ".join(u.email or u.name for u in escalation_users)
        body.append(
            f"<p>If this alert is not acknowledged within {escape(delay)}, "
            f"it will be escalated to: {escape(names)}</p>"
        )
    if notification.email_token:
        body.append(
            f'<p><a href="{escape(acknowledge_url(notification.email_token))}">'
            "Acknowledge this alert</a></p>"
        )
    return "\n".join(body)


def escalation_email_html(notification, rule, original, original_user=None) -> str:
    rows = [
        ("Event", rule.event_name),
        ("Escalation level", str(notification.escalation_level)),
        ("Originally sent to", original_user.name if original_user else str(original.user_id)),
        ("Originally sent at", str(original.created_at or "")),
        ("Value", normalize_value(notification.tag_value) or "N/A"),
    ]
    body = [
        f"<h2>Escalated alert: {escape(rule.event_name)}</h2>",
        "<p>The original alert has not been acknowledged.</p>",
        f"<p>{escape(notification.message)}</p>",
        f"<table>{_rows(rows)}</table>",
    ]
    if notification.email_token:
        body.append(
            f'<p><a href="{escape(acknowledge_url(notification.email_token))}">'
            "Acknowledge this alert</a></p>"
        )
    return "\n".join(body)
