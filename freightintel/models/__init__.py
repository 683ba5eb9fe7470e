"""Database models — re-exports all models.

Import from here:  from freightintel.models import Document, Shipment, ...
Or from submodules: from freightintel.models.documents import Document
"""

from .base import Base  # noqa: F401

# Documents & extraction
from .documents import Classification, Document, ExtractedField  # noqa: F401

# Shipments, provenance, links, revisions
from .shipments import (  # noqa: F401
    DocumentRevision,
    Shipment,
    ShipmentDocument,
    ShipmentFieldValue,
)

# Workflow lifecycle
from .workflow import WorkflowState, WorkflowTransition  # noqa: F401

# Conversation threads
from .threads import LinkCorrection, ThreadAuthority  # noqa: F401
