"""
Local intent resolution.

A small deterministic layer that answers the common questions (delivery
pricing by ZIP, hours, address, ...) without calling the model.

`classify()` is an ordered cascade; the first matching rule wins:

1. transfer        - caller asks for a person
2. venue-delivery  - "do you deliver to a hotel / bar / truck stop ..."
3. zip-delivery    - delivery/fee/minimum/ETA question with a 5-digit ZIP
4. need-zip        - delivery question without a ZIP
5. topic           - fixed informational topics (hours, address, ...)
6. unhandled       - left for the model (or an apology)

`render_reply()` turns a match into the sentence the caller hears.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import re
import unicodedata
from typing import List, Optional, Sequence, Tuple

from src.callbridge.config import BusinessProfile
from src.callbridge.pricing import PricingEntry, PricingTable
from src.callbridge.speech import format_fee, format_minimum, zip_for_voice

MAX_ZIPS_SPOKEN = 3
DEFAULT_LAST_CALL_MINUTES = 90


class IntentTag(str, Enum):
    TRANSFER = "transfer"
    VENUE_DELIVERY = "venue-delivery"
    ZIP_DELIVERY = "zip-delivery"
    NEED_ZIP = "need-zip"
    TOPIC = "topic"
    UNHANDLED = "unhandled"


@dataclass(frozen=True)
class IntentMatch:
    tag: IntentTag
    postal_codes: Tuple[str, ...] = ()
    entries: Tuple[PricingEntry, ...] = ()
    topic: Optional[str] = None
    venue: Optional[str] = None

    @property
    def missing_codes(self) -> Tuple[str, ...]:
        found = {entry.postal_code for entry in self.entries}
        return tuple(code for code in self.postal_codes if code not in found)


UNHANDLED = IntentMatch(tag=IntentTag.UNHANDLED)


def _normalize_for_matching(text: str) -> str:
    text = (text or "").strip().lower()
    text = text.replace("’", "'")
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"\s+", " ", text)
    return text


_TRANSFER_RE = re.compile(
    r"\b(transfer|human|(?:an|live|real) agent|(?:speak|talk|chat) (?:to|with) (?:an? |the |your )?agent|^agent|"
    r"representative|operator|real person|a person|"
    r"live person|(?:speak|talk) (?:to|with) (?:someone|somebody)|manager|staff member|customer service)\b"
)

_VENUE_PATTERNS: Tuple[Tuple[str, re.Pattern[str]], ...] = tuple(
    (label, re.compile(p))
    for label, p in (
        ("hotel", r"\b(hotels?|motels?|inn|airbnb|resort)\b"),
        ("restaurant", r"\brestaurants?\b"),
        ("bar", r"\b(bars?|pubs?|clubs?|nightclubs?)\b"),
        ("truck stop", r"\b(truck ?stops?|rest stops?|gas stations?)\b"),
        ("office", r"\b(offices?|workplace)\b"),
        ("hospital", r"\b(hospitals?|clinics?)\b"),
        ("campus", r"\b(campus|dorms?|college|university)\b"),
        ("airport", r"\bairports?\b"),
        ("park", r"\b(parks?|beach)\b"),
    )
)

_DELIVER_TO_RE = re.compile(r"\b(deliver|delivery|bring|drop off|send)\b.*\b(to|at)\b")

_DELIVERY_RE = re.compile(
    r"\b(deliver|delivers|delivering|delivery|deliveries|eta|arrive|arrival|shipping|zip|zip code)\b"
)

# Only about delivery when a delivery word or a ZIP code is also present
_PRICING_WORD_RE = re.compile(r"\b(minimum|minimums|min|fee|fees|how long|how soon|zone)\b")

_ZIP_TOKEN_RE = re.compile(r"(?<!\d)\d{5}(?!\d)")
_SPOKEN_ZIP_RE = re.compile(r"(?<![\d])\d(?:[ \-.,]\d){4}(?![ \-.,]?\d)")
_ONLY_ZIPS_RE = re.compile(r"^[\d\s\-.,!?]*(?:and[\d\s\-.,!?]*)*$")

_TOPIC_PATTERNS: Tuple[Tuple[str, re.Pattern[str]], ...] = tuple(
    (topic, re.compile(p))
    for topic, p in (
        ("hours", r"\b(hours?|open|opening|close|closes|closed|closing|last call)\b"),
        ("address", r"\b(address|located|location|where are you|directions|how do i get)\b"),
        ("website", r"\b(website|web site|online|url|site)\b"),
        ("id", r"\b(id|i\.d|identification|how old|age|21|medical card|recommendation)\b"),
        ("delivery_area", r"\b(service area|coverage|what areas?|which areas?|what cities|which cities)\b"),
        ("parking", r"\b(parking|park)\b"),
        ("payment", r"\b(pay|payment|cash|credit|debit|card|cards|atm|apple pay)\b"),
        ("specials", r"\b(specials?|deals?|discounts?|promos?|promotions?|coupons?|sale)\b"),
        ("returns", r"\b(returns?|refunds?|exchange|defective)\b"),
        ("vendor", r"\b(vendors?|wholesale|supplier|distributor|brand rep|sell (?:my|our) products?)\b"),
        ("events", r"\b(demo|demos|events?|pop ?ups?|book (?:a|an))\b"),
    )
)


def extract_postal_codes(text: str) -> Tuple[str, ...]:
    """
    Find 5-digit ZIP codes, in order of appearance, without duplicates.

    Accepts both "95816" and digits spoken separately ("9 5 8 1 6").
    """
    if not text:
        return ()

    found: List[Tuple[int, str]] = []
    for match in _ZIP_TOKEN_RE.finditer(text):
        found.append((match.start(), match.group(0)))
    for match in _SPOKEN_ZIP_RE.finditer(text):
        found.append((match.start(), re.sub(r"\D", "", match.group(0))))

    codes: List[str] = []
    for _, code in sorted(found):
        if code not in codes:
            codes.append(code)
    return tuple(codes)


def _detect_venue(text: str) -> Optional[str]:
    if not _DELIVER_TO_RE.search(text):
        return None
    for label, pattern in _VENUE_PATTERNS:
        if pattern.search(text):
            return label
    return None


def _detect_topic(text: str) -> Optional[str]:
    for topic, pattern in _TOPIC_PATTERNS:
        if pattern.search(text):
            return topic
    return None


def classify(utterance: Optional[str], table: Optional[PricingTable]) -> IntentMatch:
    """
    Classify one caller utterance.

    Pure and total: the same input always gives the same match, and malformed
    input is simply unhandled.
    """
    if not isinstance(utterance, str):
        return UNHANDLED
    text = _normalize_for_matching(utterance)
    if not text:
        return UNHANDLED

    table = table if table is not None else PricingTable()
    codes = extract_postal_codes(text)
    entries = tuple(table.lookup_many(codes))

    if _TRANSFER_RE.search(text):
        return IntentMatch(tag=IntentTag.TRANSFER)

    venue = _detect_venue(text)
    if venue:
        return IntentMatch(tag=IntentTag.VENUE_DELIVERY, postal_codes=codes, entries=entries, venue=venue)

    about_delivery = bool(_DELIVERY_RE.search(text))
    if codes and (about_delivery or _PRICING_WORD_RE.search(text) or _ONLY_ZIPS_RE.match(text)):
        return IntentMatch(tag=IntentTag.ZIP_DELIVERY, postal_codes=codes, entries=entries)

    if about_delivery:
        return IntentMatch(tag=IntentTag.NEED_ZIP)

    topic = _detect_topic(text)
    if topic:
        return IntentMatch(tag=IntentTag.TOPIC, topic=topic)

    return UNHANDLED


def _last_call_notice(entry: Optional[PricingEntry], default_minutes: int) -> str:
    minutes = entry.last_call_minutes if entry and entry.last_call_minutes else default_minutes
    return f"Last call for delivery is {minutes} minutes before closing."


def _short_facts(entry: PricingEntry, *, use_ssml: bool) -> str:
    return (
        f"{zip_for_voice(entry.postal_code, use_ssml=use_ssml)}: "
        f"{format_minimum(entry.minimum)} minimum, {format_fee(entry.fee)} fee"
    )


def _spoken_code_list(codes: Sequence[str], *, use_ssml: bool) -> str:
    spoken = [zip_for_voice(code, use_ssml=use_ssml) for code in codes]
    if len(spoken) <= 1:
        return "".join(spoken)
    return ", ".join(spoken[:-1]) + " or " + spoken[-1]


def render_zip_reply(
    codes: Sequence[str],
    entries: Sequence[PricingEntry],
    table: PricingTable,
    *,
    use_ssml: bool = False,
    last_call_minutes: int = DEFAULT_LAST_CALL_MINUTES,
) -> str:
    """Quote delivery minimum, fee and ETA for the ZIP code(s) a caller asked about."""
    found = {entry.postal_code for entry in entries}
    missing = [code for code in codes if code not in found]

    if not entries:
        plural = "those ZIP codes" if len(missing) > 1 else "ZIP code"
        return (
            f"Sorry, I don't have delivery pricing for {plural} "
            f"{_spoken_code_list(missing, use_ssml=use_ssml)}. "
            "If you have a nearby ZIP code I can check that, "
            "or say transfer and I'll connect you with someone."
        )

    if len(entries) == 1 and not missing:
        entry = entries[0]
        return (
            f"For ZIP code {zip_for_voice(entry.postal_code, use_ssml=use_ssml)}, "
            f"the delivery minimum is {format_minimum(entry.minimum)} "
            f"and the delivery fee is {format_fee(entry.fee)}. "
            f"Estimated delivery time is about {table.eta_for(entry)}. "
            f"{_last_call_notice(entry, last_call_minutes)}"
        )

    facts = "; ".join(_short_facts(entry, use_ssml=use_ssml) for entry in entries[:MAX_ZIPS_SPOKEN])
    count = len(entries)
    reply = f"I found delivery pricing for {count} ZIP code{'s' if count != 1 else ''}. {facts}."
    if count > MAX_ZIPS_SPOKEN:
        reply += f" Ask me about any of the other {count - MAX_ZIPS_SPOKEN} one at a time."
    if missing:
        reply += f" I don't have pricing for {_spoken_code_list(missing, use_ssml=use_ssml)}."
    return f"{reply} {_last_call_notice(None, last_call_minutes)}"


def transfer_acknowledgment() -> str:
    return "No problem. Transferring you to a team member now."


def apology_reply(profile: BusinessProfile) -> str:
    return (
        f"Sorry, I can only help with {profile.name} hours, our address, "
        "and delivery minimums by ZIP code right now. "
        "You can also say transfer to reach a person."
    )


def _topic_reply(topic: str, profile: BusinessProfile) -> Optional[str]:
    answers = {
        "hours": profile.hours,
        "address": f"We're located at {profile.address}.",
        "website": f"You can find our menu and daily deals at {profile.domain}.",
        "id": profile.id_policy,
        "delivery_area": profile.delivery_area + " Tell me your ZIP code and I'll check the minimum and fee.",
        "parking": profile.parking,
        "payment": profile.payment,
        "specials": profile.specials,
        "returns": profile.returns,
        "vendor": f"{profile.vendors} You can reach us at {profile.primary_email}.",
        "events": f"{profile.events} You can reach us at {profile.primary_email}.",
    }
    return answers.get(topic)


def _venue_reply(
    match: IntentMatch,
    table: PricingTable,
    profile: BusinessProfile,
    *,
    use_ssml: bool,
    last_call_minutes: int,
) -> str:
    article = "an" if match.venue and match.venue[0] in "aeiou" else "a"
    reply = (
        f"Yes, we can deliver to {article} {match.venue} as long as someone 21 or older "
        "can meet the driver with a valid ID. We can't leave orders unattended or with staff."
    )
    if match.postal_codes:
        reply += " " + render_zip_reply(
            match.postal_codes,
            match.entries,
            table,
            use_ssml=use_ssml,
            last_call_minutes=last_call_minutes,
        )
    else:
        reply += " Tell me the ZIP code and I'll check the minimum and fee."
    return reply


def render_reply(
    match: IntentMatch,
    table: PricingTable,
    profile: BusinessProfile,
    *,
    use_ssml: bool = False,
    last_call_minutes: int = DEFAULT_LAST_CALL_MINUTES,
) -> Optional[str]:
    """
    Render the spoken reply for a match.

    Returns None for unhandled utterances (the caller decides between the
    model and an apology).
    """
    if match.tag == IntentTag.TRANSFER:
        return transfer_acknowledgment()

    if match.tag == IntentTag.VENUE_DELIVERY:
        return _venue_reply(match, table, profile, use_ssml=use_ssml, last_call_minutes=last_call_minutes)

    if match.tag == IntentTag.ZIP_DELIVERY:
        return render_zip_reply(
            match.postal_codes,
            match.entries,
            table,
            use_ssml=use_ssml,
            last_call_minutes=last_call_minutes,
        )

    if match.tag == IntentTag.NEED_ZIP:
        return (
            "Delivery minimums and fees depend on your ZIP code. "
            "What's the 5-digit ZIP code for the delivery address?"
        )

    if match.tag == IntentTag.TOPIC and match.topic:
        return _topic_reply(match.topic, profile)

    return None
