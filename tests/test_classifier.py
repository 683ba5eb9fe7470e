"""
test_classifier.py — Tests for the document classifier

Covers: carrier pattern priority, pattern requirements (PDF, attachment
name, attachment content), generic rules, oracle fallback, alias mapping,
reply trust threshold, pure-correspondence guard, classification upsert,
sender category and direction.

Called by: pytest
Depends on: freightintel/services/classifier.py, conftest.make_message
"""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from freightintel.models import Classification, Document
from freightintel.services.classifier import (
    ClassificationResult,
    classify_message,
    direction_for,
    match_patterns,
    normalize_document_type,
    save_classification,
    sender_category,
    sender_domain,
    strip_reply_prefixes,
)

MAERSK_BC = {
    "subject": "Booking Confirmation : 262175704",
    "sender": "Maersk <noreply@maersk.com>",
    "attachment_names": ["262175704.pdf"],
    "attachment_text": "BOOKING CONFIRMATION\nBooking No.: 262175704",
}


class TestSender:
    def test_domain_from_display_name(self):
        assert sender_domain("Ops Team <ops@Maersk.COM>") == "maersk.com"

    def test_domain_missing(self):
        assert sender_domain("") == ""
        assert sender_domain("not an address") == ""

    def test_categories(self):
        assert sender_category("ops@intoglo.com") == "internal"
        assert sender_category("noreply@maersk.com") == "carrier"
        assert sender_category("no-reply@service.hlag.com") == "carrier"
        assert sender_category("buyer@acme.com") == "customer"
        assert sender_category(None) == "unknown"

    def test_direction(self):
        assert direction_for("internal") == "outbound"
        assert direction_for("carrier") == "inbound"
        assert direction_for("customer") == "inbound"


class TestPatterns:
    def test_maersk_booking_confirmation(self, make_message):
        result = match_patterns(make_message(**MAERSK_BC))
        assert result.document_type == "booking_confirmation"
        assert result.carrier_id == "maersk"
        assert result.method == "pattern"

    def test_requires_pdf(self, make_message):
        msg = make_message(**{**MAERSK_BC, "attachment_names": ["262175704.xlsx"]})
        result = match_patterns(msg)
        assert result is None or result.document_type != "booking_confirmation"

    def test_requires_attachment_content(self, make_message):
        msg = make_message(**{**MAERSK_BC, "attachment_text": "Invoice"})
        result = match_patterns(msg)
        assert result is None or result.document_type != "booking_confirmation"

    def test_attachment_name_pattern(self, make_message):
        msg = make_message(
            subject="CMA CGM - Booking confirmation available",
            sender="noreply@cma-cgm.com",
            attachment_names=["BKGCONF_AMC1234567.pdf"],
        )
        assert match_patterns(msg).document_type == "booking_confirmation"

        msg = make_message(
            subject="CMA CGM - Booking confirmation available",
            sender="noreply@cma-cgm.com",
            attachment_names=["other.pdf"],
        )
        assert match_patterns(msg) is None

    def test_carrier_patterns_only_for_their_domain(self, make_message):
        msg = make_message(**{**MAERSK_BC, "sender": "someone@acme.com"})
        assert match_patterns(msg) is None

    def test_specific_si_rule_before_generic(self, make_message):
        msg = make_message(subject="SI draft for approval - 262175704 shipping instruction")
        result = match_patterns(msg)
        assert result.document_type == "shipping_instructions"
        assert "approval" in result.matched_pattern

    def test_si_confirmation_not_shadowed(self, make_message):
        msg = make_message(subject="Shipping instructions confirmed for 262175704")
        assert match_patterns(msg).document_type == "si_confirmation"

    def test_generic_rule_any_sender(self, make_message):
        msg = make_message(subject="Arrival Notice - BL MAEU262175704", sender="docs@agent.com")
        result = match_patterns(msg)
        assert result.document_type == "arrival_notice"
        assert result.carrier_id is None

    def test_reply_prefixes_stripped_before_matching(self, make_message):
        assert strip_reply_prefixes("RE: FW: Fwd: Booking Confirmation : 1") == "Booking Confirmation : 1"
        msg = make_message(**{**MAERSK_BC, "subject": "FW: " + MAERSK_BC["subject"]})
        assert match_patterns(msg).document_type == "booking_confirmation"


class TestNormalizeType:
    def test_known(self):
        assert normalize_document_type("final_bl") == "final_bl"

    def test_aliases(self):
        assert normalize_document_type("bl_draft") == "draft_bl"
        assert normalize_document_type("MBL") == "final_bl"
        assert normalize_document_type("Proof of Delivery") == "pod_proof_of_delivery"

    def test_unknown(self):
        assert normalize_document_type("packing_list_v9") == "unknown"
        assert normalize_document_type(None) == "unknown"


class TestClassifyMessage:
    @pytest.mark.asyncio
    async def test_pattern_skips_oracle(self, make_message):
        mock = AsyncMock()
        with patch("freightintel.services.classifier.claude_structured", mock):
            result = await classify_message(make_message(**MAERSK_BC))
        assert result.document_type == "booking_confirmation"
        mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_oracle_when_nothing_matches(self, make_message):
        mock = AsyncMock(return_value={"document_type": "quotation", "confidence": 88, "reasoning": "rates"})
        with patch("freightintel.services.classifier.claude_structured", mock):
            result = await classify_message(make_message(subject="Rates for March"))
        assert result.document_type == "quotation"
        assert result.method == "llm"
        assert result.confidence == 88

    @pytest.mark.asyncio
    async def test_oracle_alias_normalized(self, make_message):
        mock = AsyncMock(return_value={"document_type": "bl_draft", "confidence": 80})
        with patch("freightintel.services.classifier.claude_structured", mock):
            result = await classify_message(
                make_message(subject="Please check", attachment_names=["draft.pdf"])
            )
        assert result.document_type == "draft_bl"

    @pytest.mark.asyncio
    async def test_oracle_failure_falls_back_to_unknown(self, make_message):
        with patch("freightintel.services.classifier.claude_structured", AsyncMock(return_value=None)):
            result = await classify_message(make_message(subject="Hello"))
        assert result.document_type == "unknown"
        assert result.confidence == 0
        assert result.method == "fallback"

    @pytest.mark.asyncio
    async def test_malformed_oracle_output_falls_back(self, make_message):
        bad = {"document_type": "invoice", "confidence": 250}
        with patch("freightintel.services.classifier.claude_structured", AsyncMock(return_value=bad)):
            result = await classify_message(make_message(subject="Hello"))
        assert result.method == "fallback"

    @pytest.mark.asyncio
    async def test_reply_without_attachment_coerced(self, make_message):
        mock = AsyncMock(return_value={"document_type": "final_bl", "confidence": 95})
        with patch("freightintel.services.classifier.claude_structured", mock):
            result = await classify_message(make_message(subject="RE: BL for 262175704"))
        assert result.document_type == "general_correspondence"
        assert "coerced from final_bl" in result.reasoning

    @pytest.mark.asyncio
    async def test_reply_with_attachment_keeps_type(self, make_message):
        mock = AsyncMock(return_value={"document_type": "final_bl", "confidence": 95})
        with patch("freightintel.services.classifier.claude_structured", mock):
            result = await classify_message(
                make_message(subject="RE: BL for 262175704", attachment_names=["BL.pdf"])
            )
        assert result.document_type == "final_bl"

    @pytest.mark.asyncio
    async def test_pattern_on_reply_needs_higher_confidence(self, make_message):
        # Maersk arrival notice pattern is 92: trusted on a reply (>= 90)
        mock = AsyncMock(return_value=None)
        with patch("freightintel.services.classifier.claude_structured", mock):
            result = await classify_message(make_message(
                subject="RE: Arrival notice 262175704",
                sender="noreply@maersk.com",
                attachment_names=["AN.pdf"],
            ))
        assert result.document_type == "arrival_notice"
        mock.assert_not_awaited()

        # Generic arrival notice rule is 85: fine on an original, not on a reply
        mock = AsyncMock(return_value={"document_type": "general_correspondence", "confidence": 91})
        with patch("freightintel.services.classifier.claude_structured", mock):
            result = await classify_message(make_message(
                subject="RE: arrival notice query", attachment_names=["AN.pdf"],
            ))
        mock.assert_awaited_once()
        assert result.document_type == "general_correspondence"

    @pytest.mark.asyncio
    async def test_low_pattern_kept_when_oracle_fails(self, make_message):
        # generic "shipping instruction" rule is 80, below the 85 trust bar
        with patch("freightintel.services.classifier.claude_structured", AsyncMock(return_value=None)):
            result = await classify_message(make_message(subject="Shipping instruction attached"))
        assert result.document_type == "shipping_instructions"
        assert result.method == "pattern"


class TestSaveClassification:
    def _doc(self, db):
        from datetime import datetime, timezone

        doc = Document(
            message_id="<a@b>",
            content_fingerprint="x" * 64,
            received_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
        )
        db.add(doc)
        db.flush()
        return doc

    def test_upsert_one_row_per_document(self, db_session):
        doc = self._doc(db_session)
        save_classification(db_session, doc, ClassificationResult("invoice", 70, "llm"))
        save_classification(db_session, doc, ClassificationResult("debit_note", 92, "pattern", "maersk", "x"))
        db_session.commit()

        count = db_session.scalar(select(func.count()).select_from(Classification))
        assert count == 1
        row = db_session.scalar(select(Classification))
        assert row.document_type == "debit_note"
        assert row.carrier_id == "maersk"
        assert doc.document_type == "debit_note"
        assert doc.confidence == 92
