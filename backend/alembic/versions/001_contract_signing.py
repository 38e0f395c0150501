"""Contract templates, contracts and signature log

Revision ID: 001_contract_signing
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_contract_signing'
down_revision = None
branch_labels = None
depends_on = None

CONTRACT_STATUS = ('DRAFT', 'SENT', 'VIEWED', 'SIGNED', 'EXPIRED', 'CANCELLED')
SIGNATURE_ACTIONS = (
    'REQUESTED', 'VIEWED', 'SIGNED', 'COUNTERSIGNED', 'DECLINED', 'EXPIRED', 'CANCELLED',
    'REMINDER_SENT', 'RENEWAL_REMINDER_SENT', 'AMENDED', 'MATERIALIZED',
)


def upgrade() -> None:
    op.create_table(
        'clients',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('contact_name', sa.String(255), nullable=False),
        sa.Column('company_name', sa.String(255)),
        sa.Column('email', sa.String(255), index=True),
        sa.Column('phone', sa.String(50)),
        sa.Column('address', sa.Text()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True, index=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('role', sa.Enum('ADMIN', 'MANAGER', 'CONSULTANT', 'CLIENT', name='role'), nullable=False),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('clients.id'), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'projects',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('clients.id'), nullable=False, index=True),
        sa.Column('project_name', sa.String(500), nullable=False),
        sa.Column('project_type', sa.String(100)),
        sa.Column('description', sa.Text()),
        sa.Column('start_date', sa.Date()),
        sa.Column('due_date', sa.Date()),
        sa.Column('timeline', sa.String(255)),
        sa.Column('price', sa.Float()),
        sa.Column('deposit_amount', sa.Float()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        # Legacy contract mirror
        sa.Column('contract_signature_requested_at', sa.DateTime()),
        sa.Column('contract_signature_expires_at', sa.DateTime()),
        sa.Column('contract_signed_at', sa.DateTime()),
        sa.Column('contract_signer_name', sa.String(255)),
        sa.Column('contract_signer_email', sa.String(255)),
        sa.Column('contract_countersigned_at', sa.DateTime()),
        sa.Column('contract_countersigner_name', sa.String(255)),
        sa.Column('contract_signed_pdf_path', sa.String(1000)),
    )

    op.create_table(
        'contract_templates',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('type', sa.Enum('STANDARD', 'CUSTOM', 'AMENDMENT', 'NDA', 'MAINTENANCE', name='templatetype'), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('variables', postgresql.JSONB),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_contract_templates_type_default', 'contract_templates', ['type', 'is_default', 'is_active'])
    op.create_index(
        'uq_contract_templates_active_default',
        'contract_templates',
        ['type'],
        unique=True,
        postgresql_where=sa.text('is_default AND is_active'),
    )

    op.create_table(
        'contracts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('template_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('contract_templates.id')),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False, index=True),
        sa.Column('client_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('clients.id'), nullable=False, index=True),
        sa.Column('parent_contract_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('contracts.id')),
        sa.Column('created_by_user_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('users.id')),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('variables', postgresql.JSONB),
        sa.Column('status', sa.Enum(*CONTRACT_STATUS, name='contractstatus'), nullable=False, index=True),
        sa.Column('renewal_at', sa.DateTime()),
        sa.Column('renewal_reminder_sent_at', sa.DateTime()),
        sa.Column('last_reminder_at', sa.DateTime()),
        sa.Column('reminder_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('signature_token', sa.String(64), unique=True, index=True),
        sa.Column('signature_requested_at', sa.DateTime()),
        sa.Column('signature_expires_at', sa.DateTime()),
        sa.Column('retired_token_digest', sa.String(64), index=True),
        sa.Column('sent_at', sa.DateTime()),
        sa.Column('viewed_at', sa.DateTime()),
        sa.Column('signer_name', sa.String(255)),
        sa.Column('signer_email', sa.String(255)),
        sa.Column('signer_ip', sa.String(100)),
        sa.Column('signer_user_agent', sa.Text()),
        sa.Column('signature_data', sa.Text()),
        sa.Column('signed_at', sa.DateTime()),
        sa.Column('countersigner_name', sa.String(255)),
        sa.Column('countersigner_email', sa.String(255)),
        sa.Column('countersigner_ip', sa.String(100)),
        sa.Column('countersigner_user_agent', sa.Text()),
        sa.Column('countersignature_data', sa.Text()),
        sa.Column('countersigned_at', sa.DateTime()),
        sa.Column('signed_pdf_path', sa.String(1000)),
        sa.Column('cancelled_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'contract_signature_log',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('projects.id'), nullable=False, index=True),
        sa.Column('contract_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('contracts.id'), index=True),
        sa.Column('action', sa.Enum(*SIGNATURE_ACTIONS, name='signatureaction'), nullable=False),
        sa.Column('actor_email', sa.String(255), nullable=False),
        sa.Column('actor_ip', sa.String(100)),
        sa.Column('actor_user_agent', sa.Text()),
        sa.Column('details', postgresql.JSONB),
        sa.Column('created_at', sa.DateTime(), nullable=False, index=True),
    )

    # The log is append-only at the database level too
    op.execute(
        """
        CREATE OR REPLACE FUNCTION contract_signature_log_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'contract_signature_log is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER contract_signature_log_no_modify
        BEFORE UPDATE OR DELETE ON contract_signature_log
        FOR EACH ROW EXECUTE FUNCTION contract_signature_log_immutable();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS contract_signature_log_no_modify ON contract_signature_log")
    op.execute("DROP FUNCTION IF EXISTS contract_signature_log_immutable()")
    op.drop_table('contract_signature_log')
    op.drop_table('contracts')
    op.drop_index('uq_contract_templates_active_default', table_name='contract_templates')
    op.drop_index('ix_contract_templates_type_default', table_name='contract_templates')
    op.drop_table('contract_templates')
    op.drop_table('projects')
    op.drop_table('users')
    op.drop_table('clients')
    for enum_name in ('signatureaction', 'contractstatus', 'templatetype', 'role'):
        op.execute(f"DROP TYPE IF EXISTS {enum_name}")
