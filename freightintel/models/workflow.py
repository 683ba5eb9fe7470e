"""Workflow models — current lifecycle state and its transition history."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String

from .base import Base, UTCDateTime, utcnow


class WorkflowState(Base):
    __tablename__ = "workflow_states"
    id = Column(Integer, primary_key=True)
    shipment_id = Column(
        Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    state = Column(String(50), nullable=False)
    phase = Column(String(20), nullable=False)
    priority = Column(Integer, nullable=False)
    triggering_document_type = Column(String(50))
    triggering_document_id = Column(Integer, ForeignKey("documents.id", ondelete="SET NULL"))
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class WorkflowTransition(Base):
    __tablename__ = "workflow_transitions"
    id = Column(Integer, primary_key=True)
    shipment_id = Column(
        Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False
    )
    from_state = Column(String(50))
    to_state = Column(String(50), nullable=False)
    from_phase = Column(String(20))
    to_phase = Column(String(20), nullable=False)
    triggering_document_type = Column(String(50))
    triggering_document_id = Column(Integer, ForeignKey("documents.id", ondelete="SET NULL"))
    reason = Column(String(20), nullable=False, default="document")  # document | reconciliation | repair
    transitioned_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_workflow_transitions_shipment", "shipment_id", "transitioned_at"),
    )
