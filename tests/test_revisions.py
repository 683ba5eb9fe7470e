"""
test_revisions.py — Tests for the revision tracker

Covers: subject label parsing, fingerprints ignoring rejected rows and
order, sequential numbering per (shipment, document type), exactly one
latest revision, idempotent registration of a repeated fingerprint.

Called by: pytest
Depends on: freightintel/services/revisions.py
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from freightintel.models import Document, DocumentRevision, ExtractedField, Shipment
from freightintel.services.revisions import (
    detect_revision_label,
    document_fingerprint,
    find_duplicate,
    register_revision,
)

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class TestDetectRevisionLabel:
    @pytest.mark.parametrize("subject,label", [
        ("RE: BC 2nd UPDATE - 262175704", "2ND UPDATE"),
        ("Booking Amendment No. 3 - 262175704", "AMENDMENT 3"),
        ("Second revision of SI", "2ND REVISION"),
        ("Draft BL v2 for approval", "V2"),
        ("Rev 4 - arrival notice", "REVISION 4"),
        ("Revised arrival notice", "REVISED"),
    ])
    def test_labels(self, subject, label):
        assert detect_revision_label(subject) == label

    def test_no_label(self):
        assert detect_revision_label("Booking Confirmation : 262175704") is None
        assert detect_revision_label(None) is None


class TestDocumentFingerprint:
    def _row(self, field, value, resolution="accepted"):
        return ExtractedField(field_name=field, value=value, resolution=resolution)

    def test_order_independent(self):
        a = [self._row("container_number", "CSQU3054383"), self._row("container_number", "MSKU1234565")]
        assert document_fingerprint(a) == document_fingerprint(list(reversed(a)))

    def test_rejected_rows_ignored(self):
        base = [self._row("vessel_name", "MAERSK ESSEX")]
        noisy = base + [self._row("etd", "2019-01-01", "rejected")]
        assert document_fingerprint(base) == document_fingerprint(noisy)

    def test_one_field_change_differs(self):
        a = [self._row("vessel_name", "MAERSK ESSEX")]
        b = [self._row("vessel_name", "MAERSK ELBA")]
        assert document_fingerprint(a) != document_fingerprint(b)


class TestRegisterRevision:
    def _setup(self, db):
        shipment = Shipment(booking_number="262175704", container_numbers=[])
        db.add(shipment)
        db.flush()
        return shipment

    def _doc(self, db, n, subject="Booking Confirmation : 262175704", doc_type="booking_confirmation"):
        doc = Document(
            message_id=f"<rev-{n}@test>",
            subject=subject,
            content_fingerprint=f"{n:064d}",
            received_at=T0 + timedelta(hours=n),
            document_type=doc_type,
        )
        db.add(doc)
        db.flush()
        return doc

    def test_sequential_numbering_and_latest(self, db_session):
        shipment = self._setup(db_session)
        r1 = register_revision(db_session, shipment, self._doc(db_session, 1), "a" * 64, [])
        r2 = register_revision(
            db_session, shipment, self._doc(db_session, 2, "BC 2nd UPDATE 262175704"), "b" * 64, ["vessel_name"],
        )
        r3 = register_revision(db_session, shipment, self._doc(db_session, 3), "c" * 64, ["etd"])
        db_session.commit()

        assert [r1.revision_number, r2.revision_number, r3.revision_number] == [1, 2, 3]
        assert r2.revision_label == "2ND UPDATE"
        assert r2.changed_fields == ["vessel_name"]
        latest = db_session.scalars(
            select(DocumentRevision).where(DocumentRevision.is_latest.is_(True))
        ).all()
        assert latest == [r3]

    def test_numbering_is_per_document_type(self, db_session):
        shipment = self._setup(db_session)
        register_revision(db_session, shipment, self._doc(db_session, 1), "a" * 64, [])
        an = register_revision(
            db_session, shipment, self._doc(db_session, 2, "Arrival notice", "arrival_notice"), "a" * 64, [],
        )
        assert an.revision_number == 1
        assert an.is_latest

    def test_same_fingerprint_returns_existing(self, db_session):
        shipment = self._setup(db_session)
        first = register_revision(db_session, shipment, self._doc(db_session, 1), "a" * 64, [])
        again = register_revision(db_session, shipment, self._doc(db_session, 2), "a" * 64, [])
        assert again is first
        assert db_session.scalars(select(DocumentRevision)).all() == [first]
        assert find_duplicate(db_session, shipment.id, "booking_confirmation", "a" * 64) is first
        assert find_duplicate(db_session, shipment.id, "booking_confirmation", "z" * 64) is None
