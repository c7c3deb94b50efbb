"""Calendar export links

Revision ID: 002_calendar_export_links
Revises: 001_availability_ledger
Create Date: 2026-10-19

One tokenized public .ics link per apartment.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_calendar_export_links'
down_revision: Union[str, None] = '001_availability_ledger'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'apartment_ical_exports',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column(
            'apartment_id', sa.String(36), sa.ForeignKey('apartments.id', ondelete='CASCADE'),
            nullable=False, unique=True
        ),
        sa.Column('export_token', sa.String(64), nullable=False),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('access_count', sa.Integer, default=0),
        sa.Column('last_accessed_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index(
        'ix_apartment_ical_exports_export_token', 'apartment_ical_exports', ['export_token'], unique=True
    )


def downgrade() -> None:
    op.drop_index('ix_apartment_ical_exports_export_token', table_name='apartment_ical_exports')
    op.drop_table('apartment_ical_exports')
