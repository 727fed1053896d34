"""fulfillment core schema from SQLAlchemy metadata

Revision ID: 0001_fulfillment_core
Revises:
Create Date: 2026-10-19T09:00:00.000000Z
"""
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_fulfillment_core"
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    # Inventory lots, plans, jobs, QC inspections, purchasing, sales, audit and outbox.
    from app.db.base import Base  # imported here so Alembic env can load models
    from app.db import models  # noqa: F401
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)

def downgrade():
    from app.db.base import Base
    from app.db import models  # noqa: F401
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
