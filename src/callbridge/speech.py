"""
Spoken-output helpers.

Everything the bridge says goes through `sanitize_reply()` before it is put on
the relay socket. The formatting helpers render numbers the way a TTS voice
reads them well: ZIP codes digit by digit, currency without a dangling ".00".
"""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Iterable

_ALLOWED_SSML_TAGS = frozenset({"speak", "say-as", "break"})

_TAG_RE = re.compile(r"<([^/\s>]+)([^>]*)>|</([^>]+)>")
_URL_SCHEME_RE = re.compile(r"\b[a-z][a-z0-9+.\-]*://", re.IGNORECASE)
_MARKDOWN_RE = re.compile(r"[*#`]+")
_REPEATED_PUNCT_RE = re.compile(r"([!?.,;:])(?:\s*\1)+")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"[ \t]+([,.!?;:])")
_WHITESPACE_RE = re.compile(r"\s+")


def digits_only(value: object) -> str:
    return re.sub(r"\D", "", str(value if value is not None else ""))


def zip_for_voice(code: object, *, use_ssml: bool = False) -> str:
    """Render a ZIP code so it is read digit by digit ("9-5-8-1-6")."""
    digits = digits_only(code) or "00000"
    if use_ssml:
        return f'<say-as interpret-as="digits">{digits}</say-as>'
    return "-".join(digits)


def format_minimum(amount: Decimal) -> str:
    """$40 for whole amounts, $42.50 otherwise."""
    value = Decimal(amount).quantize(Decimal("0.01"))
    if value == value.to_integral_value():
        return f"${int(value):,}"
    return f"${value:,.2f}"


def format_fee(amount: Decimal) -> str:
    """Fees always keep two decimals ($1.99, $5.00)."""
    value = Decimal(amount).quantize(Decimal("0.01"))
    return f"${value:,.2f}"


def speak_phone_number(number: str) -> str:
    """
    Spell a phone number out in spoken groups.

    "+19165071099" -> "9 1 6, 5 0 7, 1 0 9 9"
    """
    digits = digits_only(number)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return " ".join(digits)
    groups = (digits[:3], digits[3:6], digits[6:])
    return ", ".join(" ".join(group) for group in groups)


def spoken_domain(domain: str) -> str:
    return " dot ".join(part for part in domain.strip().lower().split(".") if part)


def spoken_email(address: str) -> str:
    user, _, host = address.strip().partition("@")
    spoken_host = spoken_domain(host)
    if not user:
        return f"at {spoken_host}"
    return f"{user} at {spoken_host}"


def _strip_markup(text: str, *, use_ssml: bool) -> str:
    if not use_ssml:
        return re.sub(r"<[^>]+>", "", text)

    def _keep_allowed(match: re.Match) -> str:
        tag = (match.group(1) or match.group(3) or "").strip().lower()
        return match.group(0) if tag in _ALLOWED_SSML_TAGS else ""

    return _TAG_RE.sub(_keep_allowed, text)


def sanitize_reply(
    text: str,
    *,
    domain: str = "",
    emails: Iterable[str] = (),
    use_ssml: bool = False,
    partial: bool = False,
) -> str:
    """
    Make a reply safe to speak.

    - the store's own web address and email addresses become spoken words
      ("info at example dot com", "example dot com")
    - any other URL loses its scheme prefix
    - markup is stripped (allow-listed SSML tags survive when SSML is on)
    - repeated whitespace and punctuation artifacts are collapsed

    With partial=True the edges are left alone so streamed chunks can be
    concatenated by the relay.
    """
    if not text:
        return ""

    out = _strip_markup(str(text), use_ssml=use_ssml)
    out = _MARKDOWN_RE.sub("", out)

    for email in emails:
        if email:
            out = re.sub(re.escape(email), spoken_email(email), out, flags=re.IGNORECASE)

    if domain:
        escaped = re.escape(domain)
        out = re.sub(
            rf"[\w.+\-]*@(?:[\w\-]+\.)*{escaped}\b",
            lambda m: spoken_email(m.group(0).lower()),
            out,
            flags=re.IGNORECASE,
        )
        out = re.sub(
            rf"(?<![\w@.\-])(?:https?://)?(?:www\.)?((?:[\w\-]+\.)*{escaped})\b(?:/[^\s]*)?",
            lambda m: spoken_domain(m.group(1)),
            out,
            flags=re.IGNORECASE,
        )

    out = _URL_SCHEME_RE.sub("", out)
    out = _REPEATED_PUNCT_RE.sub(r"\1", out)
    out = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", out)

    if partial:
        return _WHITESPACE_RE.sub(" ", out)
    return _WHITESPACE_RE.sub(" ", out).strip()
