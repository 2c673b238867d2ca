"""create compliance review tables

Revision ID: 3f1a9c2e7b40
Revises:
Create Date: 2026-10-19 09:12:44.102311

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create auth, audit, evidence, vendor document and ledger tables."""
    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("display_name", sa.String(255), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(128), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_identity", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("details", sa.String(1024), nullable=True),
            sa.Column("changes_json", sa.Text(), nullable=True),
        )
        op.create_index("idx_audit_entity", "audit_events", ["entity_type", "entity_id"])

    if "products" not in existing_tables:
        op.create_table(
            "products",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("strength", sa.String(64), nullable=True),
        )

    if "purchase_orders" not in existing_tables:
        op.create_table(
            "purchase_orders",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("order_number", sa.String(64), nullable=False, unique=True),
            sa.Column("quantity", sa.Integer(), nullable=True),
            sa.Column("batch_number", sa.String(64), nullable=True),
            sa.Column("packaging_requirement", sa.String(255), nullable=True),
            sa.Column("min_purity_pct", sa.Float(), nullable=True),
        )

    if "master_standards" not in existing_tables:
        op.create_table(
            "master_standards",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("product_id", sa.String(64), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("doc_type", sa.String(64), nullable=False),
            sa.Column("status", sa.String(32), nullable=False, server_default="DRAFT"),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("requirement", sa.String(512), nullable=False, server_default=""),
            sa.Column("packaging", sa.String(255), nullable=True),
            sa.Column("min_purity_pct", sa.Float(), nullable=True),
            sa.Column("file_name", sa.String(255), nullable=True),
            sa.Column("file_path", sa.String(512), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_master_standards_product_type", "master_standards", ["product_id", "doc_type"])

    if "vendor_documents" not in existing_tables:
        op.create_table(
            "vendor_documents",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("order_id", sa.String(64), nullable=False),
            sa.Column("product_id", sa.String(64), nullable=False),
            sa.Column("vendor_id", sa.String(64), nullable=False),
            sa.Column("doc_type", sa.String(64), nullable=False),
            sa.Column("file_name", sa.String(255), nullable=False),
            sa.Column("file_path", sa.String(512), nullable=False),
            sa.Column("status", sa.String(32), nullable=False, server_default="PENDING_REVIEW"),
            sa.Column("priority", sa.String(16), nullable=False, server_default="MEDIUM"),
            sa.Column("ai_quality_score", sa.Float(), nullable=True),
            sa.Column("ai_flag", sa.String(512), nullable=True),
            sa.Column("extracted_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("blockchain_tx", sa.String(128), nullable=True),
            sa.Column("content_fingerprint", sa.String(64), nullable=True),
            sa.Column("signature_json", sa.Text(), nullable=True),
            sa.Column("reviewed_by", sa.String(320), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(), nullable=True),
            sa.Column("review_comments", sa.Text(), nullable=True),
        )
        op.create_index("idx_vendor_documents_status", "vendor_documents", ["status"])

    if "ledger_anchors" not in existing_tables:
        op.create_table(
            "ledger_anchors",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("token", sa.String(128), nullable=False, unique=True),
            sa.Column("previous_token", sa.String(128), nullable=True),
            sa.Column("fingerprint", sa.String(64), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )


def downgrade() -> None:
    # Users, audit and ledger history are retained on downgrade.
    for table in ("vendor_documents", "master_standards", "purchase_orders", "products"):
        op.drop_table(table)
