"""Initial help desk schema

Revision ID: helpdesk_initial_001
Revises:
Create Date: 2026-03-01

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = 'helpdesk_initial_001'
down_revision = None
branch_labels = None
depends_on = None

OPEN_PREDICATE = sa.text("status NOT IN ('completed', 'rejected')")


def upgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = inspector.get_table_names()

    if 'admin_users' not in tables:
        op.create_table(
            'admin_users',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('email', sa.String(length=255), nullable=False, unique=True),
            sa.Column('password_hash', sa.String(length=255), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('idx_admin_users_email', 'admin_users', ['email'])

    if 'help_requests' not in tables:
        op.create_table(
            'help_requests',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('type', sa.String(length=20), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('customer_email', sa.String(length=255), nullable=False),
            sa.Column('customer_phone', sa.String(length=50), nullable=True),
            sa.Column('customer_name', sa.String(length=255), nullable=False),
            sa.Column('order_number', sa.String(length=50), nullable=False),
            sa.Column('reason', sa.Text(), nullable=True),
            sa.Column('provider_order_id', sa.String(length=100), nullable=True),
            sa.Column('provider_shop', sa.String(length=255), nullable=True),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('processed_by', sa.String(length=36), sa.ForeignKey('admin_users.id'), nullable=True),
            sa.Column('admin_notes', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("type IN ('cancel', 'return', 'refund')", name='help_requests_type_check'),
            sa.CheckConstraint(
                "status IN ('pending', 'in_progress', 'approved', 'rejected', 'completed')",
                name='help_requests_status_check',
            ),
        )
        op.create_index('idx_help_requests_type', 'help_requests', ['type'])
        op.create_index('idx_help_requests_status', 'help_requests', ['status'])
        op.create_index('idx_help_requests_order_number', 'help_requests', ['order_number'])
        op.create_index('idx_help_requests_created_at', 'help_requests', ['created_at'])
        op.create_index('idx_help_requests_customer_email', 'help_requests', ['customer_email'])
        op.create_index(
            'idx_help_requests_one_open_per_order',
            'help_requests',
            ['order_number'],
            unique=True,
            postgresql_where=OPEN_PREDICATE,
            sqlite_where=OPEN_PREDICATE,
        )

    if 'help_request_attachments' not in tables:
        op.create_table(
            'help_request_attachments',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column(
                'request_id', sa.String(length=36),
                sa.ForeignKey('help_requests.id', ondelete='CASCADE'), nullable=False,
            ),
            sa.Column('object_url', sa.Text(), nullable=False),
            sa.Column('object_container', sa.String(length=255), nullable=False),
            sa.Column('object_path', sa.String(length=512), nullable=False),
            sa.Column('file_name', sa.String(length=255), nullable=True),
            sa.Column('content_type', sa.String(length=150), nullable=True),
            sa.Column('file_size_bytes', sa.BigInteger(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index(
            'ix_help_request_attachments_request_id', 'help_request_attachments', ['request_id']
        )

    if 'chat_messages' not in tables:
        op.create_table(
            'chat_messages',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column(
                'request_id', sa.String(length=36),
                sa.ForeignKey('help_requests.id', ondelete='CASCADE'), nullable=False,
            ),
            sa.Column('sender', sa.String(length=20), nullable=False),
            sa.Column('sender_id', sa.String(length=36), sa.ForeignKey('admin_users.id'), nullable=True),
            sa.Column('body', sa.Text(), nullable=True),
            sa.Column('attachment_url', sa.Text(), nullable=True),
            sa.Column('attachment_path', sa.String(length=512), nullable=True),
            sa.Column('attachment_file_name', sa.String(length=255), nullable=True),
            sa.Column('attachment_content_type', sa.String(length=150), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.CheckConstraint("sender IN ('customer', 'admin')", name='chat_messages_sender_check'),
        )
        op.create_index('ix_chat_messages_request_id', 'chat_messages', ['request_id'])
        op.create_index('ix_chat_messages_created_at', 'chat_messages', ['created_at'])

    if 'refresh_tokens' not in tables:
        op.create_table(
            'refresh_tokens',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column(
                'user_id', sa.String(length=36),
                sa.ForeignKey('admin_users.id', ondelete='CASCADE'), nullable=False,
            ),
            sa.Column('token_hash', sa.String(length=255), nullable=False),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('ix_refresh_tokens_user_id', 'refresh_tokens', ['user_id'])
        op.create_index('ix_refresh_tokens_expires_at', 'refresh_tokens', ['expires_at'])
        op.create_index(
            'idx_refresh_tokens_token_hash',
            'refresh_tokens',
            ['token_hash'],
            unique=True,
            postgresql_where=sa.text('revoked_at IS NULL'),
            sqlite_where=sa.text('revoked_at IS NULL'),
        )


def downgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = inspector.get_table_names()

    for table in ('refresh_tokens', 'chat_messages', 'help_request_attachments', 'help_requests', 'admin_users'):
        if table in tables:
            op.drop_table(table)
