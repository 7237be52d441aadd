from __future__ import annotations

import re

_QUOTE_PATTERN = re.compile(r'^"([^"]+)"\s*(?:wrote:|:)\s*(.+)$', re.IGNORECASE | re.MULTILINE)
_FORWARD_PATTERN = re.compile(r"Forwarded\s+from\s+[^:\n]+:\s*(.+)$", re.IGNORECASE | re.MULTILINE)

QUOTE_CONTEXT_HEADER = """[IMPORTANT: WhatsApp Quote Context]
In WhatsApp conversations, when someone quotes a message, it appears as:
"PersonName" wrote: [quoted message]

This means the quoted person is NOT the one who wrote the message containing the quote.
The person who wrote the message containing "PersonName" wrote: is the actual sender.

Quoted messages are marked with [QUOTED FROM PersonName] ... [END QUOTE] tags below.

=== Conversation ===

"""


def normalize_whatsapp_quotes(text: str) -> str:
    """Mark quoted and forwarded WhatsApp lines so quoted names are not read as senders."""
    if not text:
        return text
    normalized = _QUOTE_PATTERN.sub(
        lambda match: f"[QUOTED FROM {match.group(1)}] {match.group(2)}\n[END QUOTE]",
        text,
    )
    return _FORWARD_PATTERN.sub(r"[FORWARDED MESSAGE] \1 [END FORWARD]", normalized)


def add_whatsapp_quote_context(text: str) -> str:
    return QUOTE_CONTEXT_HEADER + text
