"""Initial migration - create payment_intents and intent_transitions tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

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
    op.create_table(
        'payment_intents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('booking_id', sa.Integer(), nullable=True),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('method', sa.String(20), nullable=False),
        sa.Column('state', sa.String(50), nullable=False),
        sa.Column('external_reference', sa.String(255), nullable=True),
        sa.Column('manual_payment_id', sa.String(255), nullable=True),
        sa.Column('check_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_index('ix_payment_intents_external_reference', 'payment_intents', ['external_reference'])
    op.create_index('ix_payment_intents_invoice_id', 'payment_intents', ['invoice_id'])
    op.create_index('ix_payment_intents_state', 'payment_intents', ['state'])

    op.create_table(
        'intent_transitions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('intent_id', sa.String(36), sa.ForeignKey('payment_intents.id'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('previous_state', sa.String(50), nullable=False),
        sa.Column('new_state', sa.String(50), nullable=False),
        sa.Column('trigger', sa.String(50), nullable=False),
        sa.Column('detail_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_index('ix_intent_transitions_intent_id', 'intent_transitions', ['intent_id'])
    op.create_index('ix_intent_transitions_created_at', 'intent_transitions', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_intent_transitions_created_at', table_name='intent_transitions')
    op.drop_index('ix_intent_transitions_intent_id', table_name='intent_transitions')

    op.drop_index('ix_payment_intents_state', table_name='payment_intents')
    op.drop_index('ix_payment_intents_invoice_id', table_name='payment_intents')
    op.drop_index('ix_payment_intents_external_reference', table_name='payment_intents')

    op.drop_table('intent_transitions')
    op.drop_table('payment_intents')
