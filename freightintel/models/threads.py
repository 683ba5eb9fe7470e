"""Thread models — canonical identifier per conversation, and link repairs."""

from sqlalchemy import Column, Float, ForeignKey, Integer, String

from .base import Base, UTCDateTime, utcnow


class ThreadAuthority(Base):
    __tablename__ = "thread_authorities"
    id = Column(Integer, primary_key=True)
    thread_id = Column(String(512), nullable=False, unique=True)
    authority_document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
    )
    identifier_type = Column(String(30), nullable=False)
    identifier_value = Column(String(128), nullable=False)
    confidence = Column(Float, nullable=False, default=0)
    computed_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class LinkCorrection(Base):
    """Audit row for every reply re-linked by the thread repair pass."""

    __tablename__ = "link_corrections"
    id = Column(Integer, primary_key=True)
    document_id = Column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False
    )
    thread_id = Column(String(512), nullable=False)
    old_shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="SET NULL"))
    new_shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="SET NULL"))
    identifier_type = Column(String(30), nullable=False)
    identifier_value = Column(String(128), nullable=False)
    corrected_at = Column(UTCDateTime, default=utcnow)
