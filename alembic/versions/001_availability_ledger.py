"""Availability ledger schema

Revision ID: 001_availability_ledger
Revises:
Create Date: 2026-10-19

Tables:
- Catalog: apartments (read-only to the ledger)
- Ledger: apartment_availability, ledger_versions
- Bookings: bookings, booking_segments
- Sync: sync_feeds
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_availability_ledger'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all database tables."""

    # ===========================================
    # 1. APARTMENTS
    # ===========================================
    op.create_table(
        'apartments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), default=0),
        sa.Column('nightly_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('capacity', sa.Integer, default=1),
        sa.Column('status', sa.String(20), default='available'),
        sa.Column('sort_order', sa.Integer, default=0),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_apartment_status_sort', 'apartments', ['status', 'sort_order'])

    # ===========================================
    # 2. SYNC FEEDS
    # ===========================================
    op.create_table(
        'sync_feeds',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('apartment_id', sa.String(36), sa.ForeignKey('apartments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('feed_name', sa.String(100), nullable=False),
        sa.Column('remote_url', sa.String(1000), nullable=False),
        sa.Column('is_active', sa.Boolean, default=True),
        sa.Column('sync_status', sa.String(20), nullable=False, server_default='idle'),
        sa.Column('sync_started_at', sa.DateTime, nullable=True),
        sa.Column('last_sync_timestamp', sa.DateTime, nullable=True),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('error_count', sa.Integer, default=0),
        sa.Column('last_events_processed', sa.Integer, default=0),
        sa.Column('last_dates_updated', sa.Integer, default=0),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_sync_feed_apartment', 'sync_feeds', ['apartment_id'])
    op.create_index('ix_sync_feed_due', 'sync_feeds', ['is_active', 'last_sync_timestamp'])

    # ===========================================
    # 3. LEDGER
    # ===========================================
    op.create_table(
        'apartment_availability',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('apartment_id', sa.String(36), sa.ForeignKey('apartments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('date', sa.Date, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='booked'),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('note', sa.Text, nullable=True),
        sa.Column('source', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('feed_id', sa.String(36), sa.ForeignKey('sync_feeds.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
        sa.UniqueConstraint('apartment_id', 'date', name='uq_availability_apartment_date'),
    )
    op.create_index(
        'ix_availability_apartment_status_date', 'apartment_availability', ['apartment_id', 'status', 'date']
    )
    op.create_index('ix_availability_feed', 'apartment_availability', ['feed_id'])

    op.create_table(
        'ledger_versions',
        sa.Column('apartment_id', sa.String(36), sa.ForeignKey('apartments.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('version', sa.Integer, nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )

    # ===========================================
    # 4. BOOKINGS
    # ===========================================
    op.create_table(
        'bookings',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('apartment_id', sa.String(36), sa.ForeignKey('apartments.id', ondelete='SET NULL'), nullable=True),
        sa.Column('check_in_date', sa.Date, nullable=False),
        sa.Column('check_out_date', sa.Date, nullable=False),
        sa.Column('guest_name', sa.String(200), nullable=False),
        sa.Column('guest_email', sa.String(255), nullable=True),
        sa.Column('guest_phone', sa.String(30), nullable=True),
        sa.Column('guest_count', sa.Integer, default=1),
        sa.Column('special_instructions', sa.Text, nullable=True),
        sa.Column('total_amount', sa.Numeric(10, 2), default=0),
        sa.Column('status', sa.String(20), server_default='requested'),
        sa.Column('booking_source', sa.String(20), server_default='direct'),
        sa.Column('is_split_stay', sa.Boolean, default=False),
        sa.Column('confirmed_at', sa.DateTime, nullable=True),
        sa.Column('cancelled_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now(), onupdate=sa.func.now()),
    )
    op.create_index('ix_booking_status', 'bookings', ['status'])
    op.create_index('ix_booking_dates', 'bookings', ['check_in_date', 'check_out_date'])

    op.create_table(
        'booking_segments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('booking_id', sa.String(36), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('apartment_id', sa.String(36), sa.ForeignKey('apartments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('segment_order', sa.Integer, nullable=False, server_default='0'),
        sa.Column('check_in_date', sa.Date, nullable=False),
        sa.Column('check_out_date', sa.Date, nullable=False),
        sa.Column('segment_price', sa.Numeric(10, 2), default=0),
        sa.Column('notes', sa.Text, nullable=True),
    )
    op.create_index('ix_segment_booking', 'booking_segments', ['booking_id'])
    op.create_index('ix_segment_apartment_dates', 'booking_segments', ['apartment_id', 'check_in_date'])


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    tables = [
        'booking_segments',
        'bookings',
        'ledger_versions',
        'apartment_availability',
        'sync_feeds',
        'apartments',
    ]
    for table in tables:
        op.drop_table(table)
