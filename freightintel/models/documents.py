"""Document models — inbound/outbound messages, classifications, extracted fields."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .base import Base, UTCDateTime, utcnow


class Document(Base):
    """One email (plus its attachment text). Immutable after classification."""

    __tablename__ = "documents"
    id = Column(Integer, primary_key=True)
    message_id = Column(String(512), nullable=False, unique=True)
    thread_id = Column(String(512), index=True)
    is_reply = Column(Boolean, default=False, nullable=False)
    subject = Column(String(1000), default="")
    sender = Column(String(320), default="")
    sender_category = Column(String(20), nullable=False, default="unknown")  # internal | carrier | customer | unknown
    direction = Column(String(10), nullable=False, default="inbound")  # inbound | outbound
    attachment_names = Column(JSON, default=list)
    body_text = Column(Text, default="")
    attachment_text = Column(Text, default="")
    content_fingerprint = Column(String(64), nullable=False, index=True)
    received_at = Column(UTCDateTime, nullable=False)

    # Classification outcome (denormalized from Classification)
    document_type = Column(String(50), index=True)
    confidence = Column(Float)
    needs_review = Column(Boolean, default=False, nullable=False)
    review_reason = Column(String(500))
    escalated_to = Column(String(20))  # sonnet | opus
    extraction_tier = Column(String(20))  # fast | smart | strong
    extraction_error = Column(String(500))

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    classification = relationship(
        "Classification", back_populates="document", uselist=False,
        cascade="all, delete-orphan",
    )
    extracted_fields = relationship(
        "ExtractedField", back_populates="document", cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_documents_thread_received", "thread_id", "received_at"),
    )


class Classification(Base):
    """Exactly one per document; re-classification updates in place."""

    __tablename__ = "classifications"
    id = Column(Integer, primary_key=True)
    document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    document_type = Column(String(50), nullable=False)
    confidence = Column(Float, nullable=False, default=0)
    method = Column(String(20), nullable=False)  # pattern | llm | fallback
    carrier_id = Column(String(50))
    matched_pattern = Column(String(500))
    reasoning = Column(Text)
    classified_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    document = relationship("Document", back_populates="classification")


class ExtractedField(Base):
    """Append-only observation of one field value from one document.

    resolution records what the authority resolver did with it at the time:
      accepted   — became (or refreshed) the shipment's current value
      discarded  — lost to a higher-authority value, kept for audit
      duplicate  — came from a duplicate revision; replayed only when the
                   original is no longer linked
      rejected   — failed boundary validation (e.g. hallucinated date)
      superseded — a later extraction of the same document dropped it
    """

    __tablename__ = "extracted_fields"
    id = Column(Integer, primary_key=True)
    document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
    )
    field_name = Column(String(50), nullable=False)
    value = Column(String(1000), nullable=False)
    confidence = Column(Float, nullable=False, default=0)
    source_document_type = Column(String(50), nullable=False)
    authority_level = Column(Integer, nullable=False, default=0)
    extraction_tier = Column(String(20), nullable=False, default="fast")
    resolution = Column(String(20), nullable=False, default="accepted")
    rejection_reason = Column(String(255))
    observed_at = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow)

    document = relationship("Document", back_populates="extracted_fields")

    __table_args__ = (
        UniqueConstraint(
            "document_id", "field_name", "value", "extraction_tier",
            name="uq_extracted_field_observation",
        ),
        Index("ix_extracted_fields_doc", "document_id"),
        Index("ix_extracted_fields_name_value", "field_name", "value"),
    )
