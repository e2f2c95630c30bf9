"""E-mail payloads for the chat summary and scanner report notifications."""

from __future__ import annotations

import re
from typing import Any

from advisor.config import DispatchConfig
from advisor.dispatch import DispatchJob, idempotency_key
from advisor.schemas import ChatMessage, ScanResult

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def format_final_summary(text: str) -> str:
    """Collapse a doubled "Thank you" opener and guarantee a single top heading."""
    formatted = re.sub(
        r"^#\s*Thank you[^#\n]*\n*Thank you", "# Thank you", text, count=1, flags=re.IGNORECASE
    )
    if not formatted.startswith("# Thank"):
        formatted = "# Thank you for your information\n\n" + formatted
    return re.sub(r"^# (.+)$", r"# \1\n", formatted, count=1, flags=re.MULTILINE)


def format_chat_history(messages: list[ChatMessage]) -> str:
    lines = []
    for msg in messages:
        if msg.role == "system":
            continue
        if msg.role == "user":
            lines.append(f"**Client**: {msg.content}")
        elif msg.role == "assistant":
            lines.append(f"**Foremost**: {msg.content}")
        else:
            lines.append("")
    return "\n\n---\n\n".join(lines)


def build_summary_job(
    messages: list[dict[str, Any]],
    summary: str,
    config: DispatchConfig,
    *,
    orchestrator_mode: str | None = None,
    selected_service: str | None = None,
    now: int | None = None,
) -> DispatchJob:
    """The internal notification for a finished intake chat."""
    chat = [ChatMessage.model_validate(m) for m in messages]
    mode = orchestrator_mode or "quote"
    service_line = f"**Service**: {selected_service}" if selected_service else ""

    content = f"""
# Questionnaire Summary

**Mode**: {mode}
{service_line}

{format_final_summary(summary)}

# Complete Conversation History

{format_chat_history(chat)}
"""
    subject_topic = selected_service if orchestrator_mode == "services" else "General Quote"
    key = idempotency_key(
        "chat-summary",
        {
            "messages": messages,
            "orchestratorMode": orchestrator_mode,
            "selectedService": selected_service,
        },
        now,
    )
    payload = {
        "from": f"Foremost Chat <{config.from_email}>",
        "reply_to": config.reply_to or config.from_email,
        "to": [config.contact_email],
        "subject": f"New Chat Inquiry - {subject_topic}",
        "text": content,
    }
    return DispatchJob(idempotency_key=key, payload=payload, label="chat summary")


def _render_report(result: ScanResult, recipient_name: str | None) -> str:
    greeting = f"Hi {recipient_name}," if recipient_name else "Hello,"
    lines = [
        greeting,
        "",
        f"Here is your AI opportunity report for {result.business_name} ({result.industry}).",
        "",
        result.summary,
        "",
    ]
    for i, opp in enumerate(result.opportunities, 1):
        lines.append(f"{i}. {opp.title} (impact {opp.impact}/5, complexity {opp.complexity}/5)")
        lines.append(f"   {opp.description}")
        if opp.implementation_sketch:
            lines.append(f"   How: {opp.implementation_sketch}")
        lines.append("")
    if result.top_recommendation:
        lines.append(f"Our top recommendation: {result.top_recommendation.title}")
    return "\n".join(lines)


def _render_lead(result: ScanResult, email: str, name: str | None) -> str:
    opportunities = "\n".join(
        f"{i}. {o.title} (Impact: {o.impact}/5)" for i, o in enumerate(result.opportunities, 1)
    )
    contact_name = f"Contact Name: {name}\n" if name else ""
    return (
        "New lead from AI Scanner:\n\n"
        f"Business: {result.business_name}\n"
        f"Industry: {result.industry}\n"
        f"Website: {result.url}\n"
        f"Contact Email: {email}\n"
        f"{contact_name}\n"
        f"Opportunities Identified: {len(result.opportunities)}\n"
        f"{opportunities}\n\n"
        f"Summary:\n{result.summary}\n"
    )


def build_report_jobs(
    result: ScanResult,
    email: str,
    config: DispatchConfig,
    *,
    name: str | None = None,
    now: int | None = None,
) -> tuple[DispatchJob, DispatchJob]:
    """(report to the visitor, lead notification to the team), sharing one content hash."""
    key = idempotency_key("scan-report", {"url": result.url, "email": email}, now)
    suffix = key.removeprefix("scan-report-")

    user_job = DispatchJob(
        idempotency_key=f"scan-report-user-{suffix}",
        payload={
            "from": f"Foremost AI <{config.from_email}>",
            "reply_to": config.reply_to or config.from_email,
            "to": [email],
            "subject": f"Your AI Opportunity Report for {result.business_name}",
            "text": _render_report(result, name),
        },
        label="scan report",
    )
    lead_job = DispatchJob(
        idempotency_key=f"scan-report-lead-{suffix}",
        payload={
            "from": f"Foremost Scanner <{config.from_email}>",
            "reply_to": email,
            "to": [config.contact_email],
            "subject": f"New Scanner Lead: {result.business_name} ({result.industry})",
            "text": _render_lead(result, email, name),
        },
        label="scanner lead",
    )
    return user_job, lead_job
