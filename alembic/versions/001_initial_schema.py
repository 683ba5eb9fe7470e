"""initial schema - documents, shipments, provenance, revisions, workflow, threads

Revision ID: 001_initial
Revises: None
Create Date: 2025-02-10

For NEW databases: run `alembic upgrade head` (creates all tables from models).
"""
from typing import Sequence, Union

from alembic import op

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables from the SQLAlchemy models.

    Uses metadata.create_all with checkfirst=True so it is safe to run
    against a database where some tables already exist.
    """
    from freightintel.models import Base

    Base.metadata.create_all(bind=op.get_bind(), checkfirst=True)


def downgrade() -> None:
    """Drop all tables. DESTRUCTIVE, dev/test environments only."""
    from freightintel.models import Base

    Base.metadata.drop_all(bind=op.get_bind())
