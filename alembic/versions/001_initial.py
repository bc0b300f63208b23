"""Initial schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-02-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create flights table
    op.create_table('flights',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('flight_number', sa.String(length=10), nullable=False),
    sa.Column('flight_date', sa.String(length=10), nullable=False),
    sa.Column('origin', sa.String(length=4), nullable=False),
    sa.Column('destination', sa.String(length=4), nullable=False),
    sa.Column('scheduled_departure', sa.String(length=40), nullable=False),
    sa.Column('scheduled_arrival', sa.String(length=40), nullable=False),
    sa.Column('scheduled_departure_utc', sa.DateTime(timezone=True), nullable=True),
    sa.Column('current_status', sa.String(length=20), nullable=True),
    sa.Column('gate', sa.String(length=20), nullable=True),
    sa.Column('terminal', sa.String(length=20), nullable=True),
    sa.Column('delay_minutes', sa.Integer(), nullable=True),
    sa.Column('estimated_departure', sa.String(length=40), nullable=True),
    sa.Column('estimated_arrival', sa.String(length=40), nullable=True),
    sa.Column('last_polled_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('is_active', sa.Boolean(), server_default='1', nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('flights_flight_number_flight_date_idx', 'flights', ['flight_number', 'flight_date'], unique=True)
    op.create_index('flights_scheduled_departure_idx', 'flights', ['scheduled_departure_utc'])
    op.create_index('ix_flights_is_active', 'flights', ['is_active'])

    # Create tracked_flights table (subscriptions)
    op.create_table('tracked_flights',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('subscriber_key', sa.String(length=64), nullable=False),
    sa.Column('flight_id', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    sa.ForeignKeyConstraint(['flight_id'], ['flights.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('subscriber_key', 'flight_id', name='tracked_flights_chat_id_flight_id_unique')
    )
    op.create_index('tracked_flights_chat_id_idx', 'tracked_flights', ['subscriber_key'])
    op.create_index('tracked_flights_flight_id_idx', 'tracked_flights', ['flight_id'])

    # Create status_changes table
    op.create_table('status_changes',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('flight_id', sa.Integer(), nullable=False),
    sa.Column('old_status', sa.String(length=20), nullable=True),
    sa.Column('new_status', sa.String(length=20), nullable=False),
    sa.Column('details', sa.Text(), nullable=True),
    sa.Column('detected_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    sa.ForeignKeyConstraint(['flight_id'], ['flights.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_status_changes_flight_id', 'status_changes', ['flight_id'])
    op.create_index('ix_status_changes_detected_at', 'status_changes', ['detected_at'])

    # Create api_usage table
    op.create_table('api_usage',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('month', sa.String(length=7), nullable=False),
    sa.Column('request_count', sa.Integer(), server_default='0', nullable=False),
    sa.Column('last_request_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('month')
    )


def downgrade() -> None:
    op.drop_table('api_usage')
    op.drop_index('ix_status_changes_detected_at', table_name='status_changes')
    op.drop_index('ix_status_changes_flight_id', table_name='status_changes')
    op.drop_table('status_changes')
    op.drop_index('tracked_flights_flight_id_idx', table_name='tracked_flights')
    op.drop_index('tracked_flights_chat_id_idx', table_name='tracked_flights')
    op.drop_table('tracked_flights')
    op.drop_index('ix_flights_is_active', table_name='flights')
    op.drop_index('flights_scheduled_departure_idx', table_name='flights')
    op.drop_index('flights_flight_number_flight_date_idx', table_name='flights')
    op.drop_table('flights')
