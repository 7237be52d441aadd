from __future__ import annotations

from whatsapp import QUOTE_CONTEXT_HEADER, add_whatsapp_quote_context, normalize_whatsapp_quotes


def test_quoted_lines_are_tagged():
    text = 'Sam: ok\n"Alex" wrote: are we still on?\nSam: yes'
    normalized = normalize_whatsapp_quotes(text)
    assert "[QUOTED FROM Alex] are we still on?\n[END QUOTE]" in normalized
    assert normalized.startswith("Sam: ok")


def test_forwarded_lines_are_tagged():
    normalized = normalize_whatsapp_quotes("Forwarded from Jamie: see you at 8")
    assert normalized == "[FORWARDED MESSAGE] see you at 8 [END FORWARD]"


def test_plain_text_is_untouched():
    assert normalize_whatsapp_quotes("hey: what's up") == "hey: what's up"
    assert normalize_whatsapp_quotes("") == ""


def test_quote_context_header_is_prefixed():
    assert add_whatsapp_quote_context("body") == QUOTE_CONTEXT_HEADER + "body"
