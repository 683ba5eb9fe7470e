"""Shipment models — aggregate record, field provenance, document links, revisions."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base, UTCDateTime, utcnow


class Shipment(Base):
    """Mutable aggregate. Every current value has a ShipmentFieldValue row."""

    __tablename__ = "shipments"
    id = Column(Integer, primary_key=True)
    booking_number = Column(String(64), nullable=False, unique=True)
    bl_number = Column(String(64), index=True)
    hbl_number = Column(String(64), index=True)
    container_numbers = Column(JSON, default=list)
    reference_number = Column(String(128))

    # Voyage
    carrier_name = Column(String(255))
    vessel_name = Column(String(255))
    voyage_number = Column(String(64))
    port_of_loading = Column(String(255))
    port_of_discharge = Column(String(255))
    place_of_receipt = Column(String(255))
    place_of_delivery = Column(String(255))
    etd = Column(UTCDateTime)
    eta = Column(UTCDateTime)

    # Cutoffs
    si_cutoff = Column(UTCDateTime)
    vgm_cutoff = Column(UTCDateTime)
    cargo_cutoff = Column(UTCDateTime)
    gate_cutoff = Column(UTCDateTime)
    doc_cutoff = Column(UTCDateTime)

    # Parties & cargo
    shipper_name = Column(String(255))
    consignee_name = Column(String(255))
    notify_party = Column(String(255))
    commodity = Column(String(500))

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    field_values = relationship(
        "ShipmentFieldValue", back_populates="shipment", cascade="all, delete-orphan"
    )
    documents = relationship(
        "ShipmentDocument", back_populates="shipment", cascade="all, delete-orphan"
    )


class ShipmentFieldValue(Base):
    """Provenance of a shipment's current value: who set it, at what authority."""

    __tablename__ = "shipment_field_values"
    id = Column(Integer, primary_key=True)
    shipment_id = Column(
        Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    field_name = Column(String(50), nullable=False)
    value = Column(String(1000), nullable=False)
    authority_level = Column(Integer, nullable=False)
    confidence = Column(Float, nullable=False, default=0)
    source_document_type = Column(String(50), nullable=False)
    source_document_id = Column(Integer, ForeignKey("documents.id", ondelete="SET NULL"))
    source_extraction_id = Column(Integer, ForeignKey("extracted_fields.id", ondelete="SET NULL"))
    observed_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    shipment = relationship("Shipment", back_populates="field_values")

    __table_args__ = (
        UniqueConstraint("shipment_id", "field_name", name="uq_shipment_field"),
    )


class ShipmentDocument(Base):
    """Link between a shipment and a document. A document has at most one link."""

    __tablename__ = "shipment_documents"
    id = Column(Integer, primary_key=True)
    shipment_id = Column(
        Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    document_type = Column(String(50), nullable=False)
    direction = Column(String(10), nullable=False)
    link_method = Column(String(30), nullable=False)  # booking_number | bl_number | container_number | thread_authority | created | repair
    linked_at = Column(UTCDateTime, default=utcnow)

    shipment = relationship("Shipment", back_populates="documents")
    document = relationship("Document")

    __table_args__ = (
        Index("ix_shipment_documents_shipment", "shipment_id"),
    )


class DocumentRevision(Base):
    """One row per distinct content version of a document type for a shipment."""

    __tablename__ = "document_revisions"
    id = Column(Integer, primary_key=True)
    shipment_id = Column(
        Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    document_type = Column(String(50), nullable=False)
    revision_number = Column(Integer, nullable=False)
    revision_label = Column(String(50))  # "2ND UPDATE", "AMENDMENT 3", "V2"; display only
    content_fingerprint = Column(String(64), nullable=False)
    changed_fields = Column(JSON, default=list)
    source_document_id = Column(Integer, ForeignKey("documents.id", ondelete="SET NULL"))
    is_latest = Column(Boolean, default=True, nullable=False)
    received_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "shipment_id", "document_type", "revision_number", name="uq_revision_number"
        ),
        UniqueConstraint(
            "shipment_id", "document_type", "content_fingerprint", name="uq_revision_fingerprint"
        ),
    )
