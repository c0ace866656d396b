"""
Tests for local intent classification and reply rendering.
"""

import pytest

from src.callbridge.config import BusinessProfile
from src.callbridge.intents import (
    IntentTag,
    UNHANDLED,
    classify,
    extract_postal_codes,
    render_reply,
)
from src.callbridge.pricing import PricingEntry, PricingTable

PROFILE = BusinessProfile()


class TestExtractPostalCodes:
    def test_tokens_in_order_without_duplicates(self):
        assert extract_postal_codes("95841 or 95816, maybe 95841") == ("95841", "95816")

    def test_spoken_digits(self):
        assert extract_postal_codes("it's 9 5 8 1 6") == ("95816",)
        assert extract_postal_codes("9-5-8-1-6 please") == ("95816",)

    def test_ignores_longer_numbers(self):
        assert extract_postal_codes("call 9165071099") == ()
        assert extract_postal_codes("") == ()


class TestClassifyCascade:
    @pytest.mark.parametrize("utterance", [
        "let me talk to a person",
        "Can I speak to someone please",
        "transfer me",
        "I need a manager",
        "can I talk to an agent",
        "I need a live agent",
        "agent",
    ])
    def test_transfer(self, utterance, sample_table):
        assert classify(utterance, sample_table).tag == IntentTag.TRANSFER

    def test_strain_name_is_not_a_transfer(self, sample_table):
        match = classify("Do you have any specials on the agent orange strain", sample_table)
        assert match.tag == IntentTag.TOPIC
        assert match.topic == "specials"

    def test_transfer_wins_over_delivery(self, sample_table):
        match = classify("I want a human, not the delivery fee for 95816", sample_table)
        assert match.tag == IntentTag.TRANSFER

    def test_venue_delivery(self, sample_table):
        match = classify("do you deliver to a hotel in 95816", sample_table)
        assert match.tag == IntentTag.VENUE_DELIVERY
        assert match.venue == "hotel"
        assert match.postal_codes == ("95816",)
        assert [e.postal_code for e in match.entries] == ["95816"]

    def test_zip_delivery(self, sample_table):
        match = classify("What's the DELIVERY MINIMUM for 95816?", sample_table)
        assert match.tag == IntentTag.ZIP_DELIVERY
        assert match.postal_codes == ("95816",)
        assert match.missing_codes == ()

    def test_bare_zip_is_a_delivery_question(self, sample_table):
        assert classify("95816", sample_table).tag == IntentTag.ZIP_DELIVERY
        assert classify("9 5 8 1 6", sample_table).tag == IntentTag.ZIP_DELIVERY

    def test_multiple_codes(self, sample_table):
        match = classify("delivery fee for 95816 and 95841 and 95816 and 12345", sample_table)
        assert match.tag == IntentTag.ZIP_DELIVERY
        assert match.postal_codes == ("95816", "95841", "12345")
        assert [e.postal_code for e in match.entries] == ["95816", "95841"]
        assert match.missing_codes == ("12345",)

    def test_need_zip(self, sample_table):
        assert classify("how much is delivery", sample_table).tag == IntentTag.NEED_ZIP

    @pytest.mark.parametrize("utterance,topic", [
        ("what's the minimum age to buy", "id"),
        ("is there a minimum age", "id"),
        ("do you have a min age for medical", "id"),
        ("how long are you open today", "hours"),
    ])
    def test_generic_pricing_words_alone_are_not_delivery(self, utterance, topic, sample_table):
        match = classify(utterance, sample_table)
        assert match.tag == IntentTag.TOPIC
        assert match.topic == topic

    def test_generic_pricing_words_with_zip_are_delivery(self, sample_table):
        assert classify("what's the minimum for 95816", sample_table).tag == IntentTag.ZIP_DELIVERY
        assert classify("what zone of town are you in", sample_table) == UNHANDLED

    @pytest.mark.parametrize("utterance,topic", [
        ("what are your hours", "hours"),
        ("where are you located", "address"),
        ("what's your website", "website"),
        ("how old do I have to be", "id"),
        ("what areas do you cover", "delivery_area"),
        ("is there parking", "parking"),
        ("do you take credit cards", "payment"),
        ("any deals today", "specials"),
        ("can I get a refund", "returns"),
        ("I'm a vendor", "vendor"),
        ("can we book a demo", "events"),
    ])
    def test_topics(self, utterance, topic, sample_table):
        match = classify(utterance, sample_table)
        assert match.tag == IntentTag.TOPIC
        assert match.topic == topic

    def test_unhandled(self, sample_table):
        assert classify("what's your favorite color", sample_table) == UNHANDLED

    @pytest.mark.parametrize("utterance", [None, "", "   ", 42])
    def test_malformed_input_is_unhandled(self, utterance, sample_table):
        assert classify(utterance, sample_table) == UNHANDLED

    def test_missing_table(self):
        match = classify("delivery minimum for 95816", None)
        assert match.tag == IntentTag.ZIP_DELIVERY
        assert match.entries == ()

    def test_idempotent(self, sample_table):
        utterance = "delivery fee for 95816 and 95841"
        assert classify(utterance, sample_table) == classify(utterance, sample_table)


class TestRenderReply:
    def test_single_zip_reply(self, sample_table):
        match = classify("what's the delivery minimum for 95816", sample_table)
        reply = render_reply(match, sample_table, PROFILE)

        assert reply == (
            "For ZIP code 9-5-8-1-6, the delivery minimum is $40 and the delivery fee is $1.99. "
            "Estimated delivery time is about 30 to 60 minutes. "
            "Last call for delivery is 90 minutes before closing."
        )

    def test_entry_window_and_cutoff(self, sample_table):
        match = classify("delivery to 95630?", sample_table)
        reply = render_reply(match, sample_table, PROFILE)
        assert "$150" in reply
        assert "$9.99" in reply
        assert "2 to 4 hours" in reply
        assert "120 minutes before closing" in reply

    def test_multi_zip_summary(self, sample_table):
        match = classify("fees for 95816, 95841 and 12345", sample_table)
        reply = render_reply(match, sample_table, PROFILE)

        assert reply.startswith("I found delivery pricing for 2 ZIP codes.")
        assert "9-5-8-1-6: $40 minimum, $1.99 fee" in reply
        assert "9-5-8-4-1: $90 minimum, $5.99 fee" in reply
        assert "I don't have pricing for 1-2-3-4-5." in reply

    def test_multi_zip_caps_spoken_codes(self, sample_table):
        base = sample_table.entries["95816"]
        extra = {
            code: PricingEntry(postal_code=code, minimum=base.minimum, fee=base.fee)
            for code in ("95811", "95814")
        }
        table = PricingTable(entries={**sample_table.entries, **extra})
        match = classify("delivery for 95816 95841 95630 95811 95814", table)
        reply = render_reply(match, table, PROFILE)

        assert "5 ZIP codes" in reply
        assert "9-5-8-1-1" not in reply
        assert "other 2" in reply

    def test_unknown_zip_apology(self):
        table = PricingTable()
        assert table.lookup("99999") is None

        match = classify("delivery minimum for 99999", table)
        reply = render_reply(match, table, PROFILE)

        assert match.tag == IntentTag.ZIP_DELIVERY
        assert "9-9-9-9-9" in reply
        assert "nearby ZIP code" in reply
        assert "transfer" in reply

    def test_ssml_zip(self, sample_table):
        match = classify("delivery minimum for 95816", sample_table)
        reply = render_reply(match, sample_table, PROFILE, use_ssml=True)
        assert '<say-as interpret-as="digits">95816</say-as>' in reply

    def test_venue_without_zip_asks_for_one(self, sample_table):
        match = classify("can you bring it to my office", sample_table)
        reply = render_reply(match, sample_table, PROFILE)
        assert match.tag == IntentTag.VENUE_DELIVERY
        assert "office" in reply
        assert "ZIP code" in reply

    def test_need_zip_prompt(self, sample_table):
        reply = render_reply(classify("what's the delivery fee", sample_table), sample_table, PROFILE)
        assert "5-digit ZIP code" in reply

    def test_topic_uses_profile(self, sample_table):
        profile = BusinessProfile(hours="Open 24/7.")
        reply = render_reply(classify("when are you open", sample_table), sample_table, profile)
        assert reply == "Open 24/7."

    def test_unhandled_has_no_local_reply(self, sample_table):
        assert render_reply(UNHANDLED, sample_table, PROFILE) is None
