"""Per-kind display labels for workflow nodes.

generate_label(kind, config) is pure, total and deterministic. It returns a
non-empty string of at most MAX_LABEL_LEN characters for any input: known
kinds interpolate their most salient config field, unknown kinds fall back to
a readable form of the kind identifier.

The Patch Applier calls it whenever a node's config changes and the same
mutation carries no explicit label.
"""

from __future__ import annotations

import re
from typing import Any, Callable
from urllib.parse import urlparse

MAX_LABEL_LEN: int = 24
_ELLIPSIS = "…"
_SEP = " - "

# Well-known cron presets get a word instead of the raw expression.
_CRON_PRESETS: dict[str, str] = {
    "0 0 * * *": "Daily",
    "0 * * * *": "Hourly",
    "0 0 * * 0": "Weekly",
    "*/15 * * * *": "Every 15 min",
    "0 0 1 * *": "Monthly",
}

# Hostname fragment → platform name for generic HTTP requests.
_HTTP_PLATFORMS: list[tuple[str, str]] = [
    ("facebook", "FB"),
    ("instagram", "Instagram"),
    ("twitter", "Twitter"),
    ("x.com", "Twitter"),
    ("linkedin", "LinkedIn"),
    ("sheets", "Sheets"),
    ("slack", "Slack"),
]


def truncate_label(text: str, max_len: int = MAX_LABEL_LEN) -> str:
    """Cut `text` to max_len characters, marking the cut with an ellipsis."""
    text = " ".join(str(text).split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 1].rstrip() + _ELLIPSIS


def _with(base: str, detail: Any, width: int = 12) -> str:
    if detail is None or detail == "":
        return base
    return f"{base}{_SEP}{truncate_label(str(detail), width)}"


def _sheet_name(range_expr: Any) -> str:
    # "Leads!A:E" -> "Leads"
    return str(range_expr).split("!", 1)[0]


# ---------------------------------------------------------------------------
# Per-kind rules
# ---------------------------------------------------------------------------


def _schedule(config: dict[str, Any]) -> str:
    expr = config.get("cron") or config.get("schedule")
    if not expr:
        return "Schedule"
    expr = " ".join(str(expr).split())
    return _with("Schedule", _CRON_PRESETS.get(expr, expr), 14)


def _facebook_comment(config: dict[str, Any]) -> str:
    match = config.get("match")
    if isinstance(match, dict):
        match = match.get("contains")
    if match:
        return _with("FB Comment", f'"{truncate_label(str(match), 10)}"', 13)
    return "FB Comment - Monitor"


def _webhook(config: dict[str, Any]) -> str:
    return _with("Webhook", config.get("path"), 14)


def _filter(config: dict[str, Any]) -> str:
    return _with("Filter", config.get("expression") or "Condition", 15)


def _delay(config: dict[str, Any]) -> str:
    amount = config.get("seconds") or config.get("minutes")
    if not amount:
        return "Delay"
    unit = "s" if config.get("seconds") else "min"
    return _with("Delay", f"{amount}{unit}")


def _ai_guard(config: dict[str, Any]) -> str:
    prompt = str(config.get("prompt") or "")
    if "classify" in prompt.lower():
        return "AI Guard - Classify"
    return "AI Guard - Check" if prompt else "AI Guard"


def _ai_generate(config: dict[str, Any]) -> str:
    return _with("AI Generate", config.get("prompt") or "Content", 10)


def _notify(config: dict[str, Any]) -> str:
    dest = (
        config.get("destination")
        or config.get("to")
        or config.get("channel")
        or config.get("recipient")
    )
    return _with("Notify", dest, 15)


def _email(config: dict[str, Any]) -> str:
    if config.get("subjectTpl") or config.get("subject"):
        return _with("Send Email", config.get("subjectTpl") or config.get("subject"), 11)
    if config.get("to") or config.get("toExpr"):
        return _with("Send Email", config.get("to") or config.get("toExpr"), 11)
    return "Send Email"


def _http(config: dict[str, Any]) -> str:
    method = str(config.get("method") or "POST").upper()
    url = str(config.get("url") or "")
    try:
        host = urlparse(url).hostname if url else None
    except ValueError:
        # malformed authority, e.g. an unclosed IPv6 bracket
        host = None
    if host:
        host = host.lower().removeprefix("www.")
        for fragment, platform in _HTTP_PLATFORMS:
            if fragment in host:
                return f"{platform} {method}"
        return _with(method, host, 18)
    platform = config.get("platform") or config.get("service")
    if platform:
        return f"{platform} {method}"
    return f"{method} Request"


def _sheets(base: str) -> Callable[[dict[str, Any]], str]:
    def rule(config: dict[str, Any]) -> str:
        if config.get("sheetName"):
            return _with(base, config["sheetName"])
        if config.get("range"):
            return _with(base, _sheet_name(config["range"]))
        return base

    return rule


def _telegram(base: str, field_name: str | None = None) -> Callable[[dict[str, Any]], str]:
    def rule(config: dict[str, Any]) -> str:
        if field_name and config.get(field_name):
            return _with(base, config[field_name], 10)
        return base

    return rule


def _fixed(text: str) -> Callable[[dict[str, Any]], str]:
    return lambda _config: text


_RULES: dict[str, Callable[[dict[str, Any]], str]] = {
    "trigger.schedule": _schedule,
    "trigger.scheduler.cron": _schedule,
    "trigger.webhook.inbound": _webhook,
    "trigger.manual": _fixed("Manual Start"),
    "trigger.facebook.comment": _facebook_comment,
    "trigger.sheets.newRow": _sheets("Sheets: New Row"),
    "trigger.sheets.update": _sheets("Sheets: Update"),
    "logic.filter": _filter,
    "logic.delay": _delay,
    "ai.guard": _ai_guard,
    "ai.generate": _ai_generate,
    "action.notify": _notify,
    "action.email.send": _email,
    "action.http.request": _http,
    "action.facebook.reply": lambda c: _with("Reply to Comment", c.get("replyTemplate") or "Auto", 6),
    "action.facebook.dm": lambda c: _with("Facebook DM", c.get("message"), 11),
    "action.sheets.appendRow": _sheets("Save to Sheets"),
    "action.sheets.readRows": _sheets("Read Sheets"),
    "action.sheets.updateCell": lambda c: _with("Update Cell", c.get("range"), 11),
    "action.sheets.clearRange": _sheets("Clear Sheets"),
    "action.telegram.sendMessage": _telegram("Send Telegram", "message"),
    "action.telegram.sendPhoto": _telegram("Telegram Photo", "caption"),
    "action.telegram.sendVideo": _telegram("Telegram Video", "caption"),
    "action.telegram.sendAudio": _telegram("Telegram Audio", "title"),
    "action.telegram.sendDocument": _telegram("Telegram Document"),
    "action.telegram.sendLocation": _telegram("Telegram Location"),
    "action.telegram.sendVenue": _telegram("Telegram Venue", "title"),
    "action.telegram.sendContact": _telegram("Telegram Contact", "firstName"),
    "action.telegram.sendPoll": _telegram("Telegram Poll", "question"),
    "action.telegram.sendSticker": _telegram("Telegram Sticker"),
    "action.telegram.editMessage": _telegram("Edit Telegram"),
    "action.telegram.deleteMessage": _telegram("Delete Telegram"),
    "action.telegram.getUpdates": _telegram("Telegram Updates"),
}


def _fallback(kind: str) -> str:
    """'action.crm.createLead' -> 'Create Lead'; empty kind -> 'Step'."""
    last = kind.rsplit(".", 1)[-1] if kind else ""
    words = [w for w in re.split(r"(?<=[a-z0-9])(?=[A-Z])|[_\-\s]+", last) if w]
    if not words:
        return kind or "Step"
    return " ".join(w[0].upper() + w[1:] for w in words)


def generate_label(kind: str, config: dict[str, Any] | None = None) -> str:
    """Return the display label for a node of `kind` with `config`.

    Always non-empty and at most MAX_LABEL_LEN characters.
    """
    config = config if isinstance(config, dict) else {}
    rule = _RULES.get(kind)
    label = rule(config) if rule is not None else _fallback(kind)
    return truncate_label(label) or truncate_label(_fallback(kind)) or "Step"
