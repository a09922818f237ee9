"""Allow exchange help requests

Revision ID: helpdesk_exchange_type_002
Revises: helpdesk_initial_001
Create Date: 2026-04-15

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = 'helpdesk_exchange_type_002'
down_revision = 'helpdesk_initial_001'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('help_requests') as batch_op:
        batch_op.drop_constraint('help_requests_type_check', type_='check')
        batch_op.create_check_constraint(
            'help_requests_type_check',
            "type IN ('cancel', 'return', 'refund', 'exchange')",
        )


def downgrade():
    with op.batch_alter_table('help_requests') as batch_op:
        batch_op.drop_constraint('help_requests_type_check', type_='check')
        batch_op.create_check_constraint(
            'help_requests_type_check',
            "type IN ('cancel', 'return', 'refund')",
        )
