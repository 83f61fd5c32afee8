"""create_certificate_tables

Revision ID: 20261018_0900_certificates
Revises: None
Create Date: 2026-10-18 09:00:00

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261018_0900_certificates'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_STATUS_CLAUSE = sa.text("status IN ('pending', 'processing', 'completed')")


def upgrade() -> None:
    """
    Create certificates, certificate_audit_logs and idempotency_keys.
    """
    # Create certificates table
    op.create_table(
        'certificates',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('reference_number', sa.String(length=50), nullable=False),
        sa.Column('issuer_request_number', sa.String(length=100), nullable=True),
        sa.Column('certificate_number', sa.String(length=100), nullable=True),
        sa.Column('download_url', sa.Text(), nullable=True),
        sa.Column('download_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('policy_number', sa.String(length=50), nullable=False),
        sa.Column('registration_number', sa.String(length=20), nullable=False),
        sa.Column('company_code', sa.String(length=20), nullable=False),
        sa.Column('agent_code', sa.String(length=20), nullable=True),
        sa.Column('registry_policy_id', sa.String(length=100), nullable=True),
        sa.Column('registry_insured_id', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('issuer_status_code', sa.Integer(), nullable=True),
        sa.Column('error_code', sa.String(length=50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('requested_by', sa.String(length=100), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference_number')
    )
    op.create_index('ix_certificates_issuer_request_number', 'certificates', ['issuer_request_number'])
    op.create_index('ix_certificates_certificate_number', 'certificates', ['certificate_number'])
    op.create_index('ix_certificates_policy_number', 'certificates', ['policy_number'])
    op.create_index('ix_certificates_registration_number', 'certificates', ['registration_number'])
    op.create_index('ix_certificates_company_code', 'certificates', ['company_code'])
    op.create_index('ix_certificates_status', 'certificates', ['status'])
    op.create_index('ix_certificates_requested_by', 'certificates', ['requested_by'])
    op.create_index('ix_certificates_idempotency_key', 'certificates', ['idempotency_key'])
    op.create_index('ix_certificates_created_at', 'certificates', ['created_at'])

    # At most one active certificate per (policy, registration, company)
    op.create_index(
        'uq_active_certificate',
        'certificates',
        ['policy_number', 'registration_number', 'company_code'],
        unique=True,
        postgresql_where=ACTIVE_STATUS_CLAUSE
    )

    # Create certificate_audit_logs table
    op.create_table(
        'certificate_audit_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('certificate_id', sa.String(length=36), nullable=False),
        sa.Column('actor_id', sa.String(length=100), nullable=False),
        sa.Column('action', sa.String(length=30), nullable=False),
        sa.Column('old_status', sa.String(length=20), nullable=True),
        sa.Column('new_status', sa.String(length=20), nullable=True),
        sa.Column('old_values', sa.JSON(), nullable=True),
        sa.Column('new_values', sa.JSON(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('session_id', sa.String(length=255), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['certificate_id'], ['certificates.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_certificate_id', 'certificate_audit_logs', ['certificate_id'])
    op.create_index('ix_audit_timestamp', 'certificate_audit_logs', ['timestamp'])
    op.create_index('ix_audit_actor_id', 'certificate_audit_logs', ['actor_id'])
    op.create_index('ix_audit_action', 'certificate_audit_logs', ['action'])

    # Create idempotency_keys table
    op.create_table(
        'idempotency_keys',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('key', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), server_default='pending', nullable=False),
        sa.Column('request_hash', sa.String(length=64), nullable=False),
        sa.Column('request_method', sa.String(length=10), nullable=True),
        sa.Column('request_path', sa.String(length=500), nullable=True),
        sa.Column('user_id', sa.String(length=100), nullable=True),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('response_body', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_idempotency_keys_key', 'idempotency_keys', ['key'], unique=True)
    op.create_index('ix_idempotency_expires_at', 'idempotency_keys', ['expires_at'])


def downgrade() -> None:
    """
    Drop certificate tables (audit trail first, it references certificates).
    """
    op.drop_index('ix_idempotency_expires_at', table_name='idempotency_keys')
    op.drop_index('ix_idempotency_keys_key', table_name='idempotency_keys')
    op.drop_table('idempotency_keys')

    op.drop_index('ix_audit_action', table_name='certificate_audit_logs')
    op.drop_index('ix_audit_actor_id', table_name='certificate_audit_logs')
    op.drop_index('ix_audit_timestamp', table_name='certificate_audit_logs')
    op.drop_index('ix_audit_certificate_id', table_name='certificate_audit_logs')
    op.drop_table('certificate_audit_logs')

    op.drop_index('uq_active_certificate', table_name='certificates')
    op.drop_table('certificates')
