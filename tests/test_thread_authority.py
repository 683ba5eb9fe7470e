"""
test_thread_authority.py — Tests for thread authority and cross-link repair

Covers: originals before replies, oldest first, identifier priority over
confidence, no identifier → no authority, upsert and removal of the
persisted authority, repairing mislinked replies with a LinkCorrection,
linking unlinked replies, resolve_all counters.

Called by: pytest
Depends on: freightintel/services/thread_authority.py, services/shipment_linker.py
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from freightintel.models import (
    Document,
    ExtractedField,
    LinkCorrection,
    Shipment,
    ShipmentDocument,
    ThreadAuthority,
)
from freightintel.services.shipment_linker import current_link, link_document
from freightintel.services.thread_authority import (
    choose_authority,
    compute_thread_authority,
    refresh_thread,
    resolve_all,
)

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def _row(doc_id, field, value, confidence=90, resolution="accepted"):
    return ExtractedField(
        document_id=doc_id, field_name=field, value=value,
        confidence=confidence, resolution=resolution,
    )


class TestChooseAuthority:
    def _doc(self, doc_id, hours, is_reply=False):
        return Document(id=doc_id, is_reply=is_reply, received_at=T0 + timedelta(hours=hours))

    def test_original_before_earlier_reply(self):
        original = self._doc(1, 5)
        reply = self._doc(2, 1, is_reply=True)
        rows = {
            1: [_row(1, "container_number", "MSKU1234565")],
            2: [_row(2, "booking_number", "262175704")],
        }
        doc, row = choose_authority([reply, original], rows)
        assert doc is original
        assert row.value == "MSKU1234565"

    def test_oldest_document_with_identifier(self):
        first = self._doc(1, 0)
        second = self._doc(2, 3)
        rows = {2: [_row(2, "bl_number", "MAEU262175704")]}
        doc, row = choose_authority([second, first], rows)
        assert doc is second
        assert row.field_name == "bl_number"

    def test_priority_beats_confidence(self):
        doc = self._doc(1, 0)
        rows = {1: [
            _row(1, "container_number", "MSKU1234565", confidence=99),
            _row(1, "booking_number", "262175704", confidence=60),
            _row(1, "vessel_name", "MAERSK ESSEX", confidence=99),
        ]}
        _, row = choose_authority([doc], rows)
        assert row.field_name == "booking_number"

    def test_rejected_and_non_identifier_rows_ignored(self):
        doc = self._doc(1, 0)
        rows = {1: [
            _row(1, "vessel_name", "MAERSK ESSEX"),
            _row(1, "booking_number", "262175704", resolution="rejected"),
        ]}
        assert choose_authority([doc], rows) is None

    def test_no_documents(self):
        assert choose_authority([], {}) is None


class _Thread:
    """Persisted thread with shipments, linked documents and observations."""

    def __init__(self, db, thread_id="thread-1"):
        self.db = db
        self.thread_id = thread_id
        self.n = 0

    def shipment(self, booking):
        s = Shipment(booking_number=booking, container_numbers=[])
        self.db.add(s)
        self.db.flush()
        return s

    def doc(self, *, is_reply=False, hours=0, doc_type="general_correspondence", identifiers=None, link_to=None):
        self.n += 1
        doc = Document(
            message_id=f"<{self.thread_id}-{self.n}@test>",
            thread_id=self.thread_id,
            is_reply=is_reply,
            subject=("RE: " if is_reply else "") + "Booking",
            content_fingerprint=f"{self.n:064d}",
            received_at=T0 + timedelta(hours=hours),
            document_type=doc_type,
        )
        self.db.add(doc)
        self.db.flush()
        for field, value in (identifiers or {}).items():
            self.db.add(ExtractedField(
                document_id=doc.id, field_name=field, value=value, confidence=95,
                source_document_type=doc_type, authority_level=10, observed_at=doc.received_at,
            ))
        self.db.flush()
        if link_to is not None:
            link_document(self.db, doc, link_to, "booking_number")
        return doc


class TestComputeThreadAuthority:
    def test_upsert(self, db_session):
        t = _Thread(db_session)
        t.doc(identifiers={"booking_number": "262175704"})
        first = compute_thread_authority(db_session, t.thread_id)
        assert first.identifier_type == "booking_number"
        assert first.identifier_value == "262175704"

        again = compute_thread_authority(db_session, t.thread_id)
        assert again.id == first.id
        assert len(db_session.scalars(select(ThreadAuthority)).all()) == 1

    def test_unresolved_thread(self, db_session):
        t = _Thread(db_session)
        t.doc()
        t.doc(is_reply=True, hours=1)
        assert compute_thread_authority(db_session, t.thread_id) is None
        assert db_session.scalar(select(ThreadAuthority)) is None


class TestRepairCrossLinks:
    def test_mislinked_reply_repaired(self, db_session):
        t = _Thread(db_session)
        right = t.shipment("262175704")
        wrong = t.shipment("262175799")
        original = t.doc(doc_type="booking_confirmation", identifiers={"booking_number": "262175704"}, link_to=right)
        reply = t.doc(is_reply=True, hours=2, link_to=wrong)

        corrections = refresh_thread(db_session, t.thread_id)

        assert len(corrections) == 1
        c = corrections[0]
        assert c.document_id == reply.id
        assert c.old_shipment_id == wrong.id
        assert c.new_shipment_id == right.id
        assert c.identifier_value == "262175704"
        link = current_link(db_session, reply.id)
        assert link.shipment_id == right.id
        assert link.link_method == "repair"
        assert current_link(db_session, original.id).shipment_id == right.id
        # exactly one link per document
        assert len(db_session.scalars(
            select(ShipmentDocument).where(ShipmentDocument.document_id == reply.id)
        ).all()) == 1

    def test_unlinked_reply_linked_without_correction(self, db_session):
        t = _Thread(db_session)
        s = t.shipment("262175704")
        t.doc(doc_type="booking_confirmation", identifiers={"booking_number": "262175704"}, link_to=s)
        reply = t.doc(is_reply=True, hours=2)

        assert refresh_thread(db_session, t.thread_id) == []
        link = current_link(db_session, reply.id)
        assert link.shipment_id == s.id
        assert link.link_method == "thread_authority"
        assert db_session.scalar(select(LinkCorrection)) is None

    def test_correct_links_untouched(self, db_session):
        t = _Thread(db_session)
        s = t.shipment("262175704")
        t.doc(doc_type="booking_confirmation", identifiers={"booking_number": "262175704"}, link_to=s)
        reply = t.doc(is_reply=True, hours=2, link_to=s)
        assert refresh_thread(db_session, t.thread_id) == []
        assert current_link(db_session, reply.id).link_method == "booking_number"

    def test_authority_without_shipment_does_nothing(self, db_session):
        t = _Thread(db_session)
        t.doc(identifiers={"booking_number": "262175704"})
        reply = t.doc(is_reply=True, hours=1)
        assert refresh_thread(db_session, t.thread_id) == []
        assert current_link(db_session, reply.id) is None


class TestResolveAll:
    def test_counts(self, db_session):
        a = _Thread(db_session, "thread-a")
        right = a.shipment("262175704")
        wrong = a.shipment("262175799")
        a.doc(doc_type="booking_confirmation", identifiers={"booking_number": "262175704"}, link_to=right)
        a.doc(is_reply=True, hours=1, link_to=wrong)

        b = _Thread(db_session, "thread-b")
        b.doc()

        assert resolve_all(db_session) == {"threads": 2, "resolved": 1, "corrected": 1}

    def test_without_repair(self, db_session):
        a = _Thread(db_session, "thread-a")
        right = a.shipment("262175704")
        wrong = a.shipment("262175799")
        a.doc(doc_type="booking_confirmation", identifiers={"booking_number": "262175704"}, link_to=right)
        reply = a.doc(is_reply=True, hours=1, link_to=wrong)

        assert resolve_all(db_session, repair=False)["corrected"] == 0
        assert current_link(db_session, reply.id).shipment_id == wrong.id
