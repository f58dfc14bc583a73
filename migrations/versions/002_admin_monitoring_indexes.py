"""Indexes backing the admin monitoring rollups.

Revision ID: 002_admin_monitoring_indexes
Revises: 001_initial_schema
Create Date: 2026-10-02
"""

from __future__ import annotations

from alembic import op


revision = "002_admin_monitoring_indexes"
down_revision = "001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    conn = op.get_bind()
    conn.exec_driver_sql("""
        CREATE INDEX IF NOT EXISTS idx_webhook_events_received
            ON webhook_events(received_at DESC, status)
    """)
    conn.exec_driver_sql("""
        CREATE INDEX IF NOT EXISTS idx_outbox_messages_due
            ON outbox_messages(status, next_attempt_at)
    """)
    conn.exec_driver_sql("""
        CREATE INDEX IF NOT EXISTS idx_outbox_messages_business_status
            ON outbox_messages(business_id, status, updated_at)
    """)
    conn.exec_driver_sql("""
        CREATE INDEX IF NOT EXISTS idx_messages_business_created
            ON messages(business_id, created_at, direction)
    """)
    conn.exec_driver_sql("""
        CREATE INDEX IF NOT EXISTS idx_onboarding_tokens_expires
            ON onboarding_tokens(expires_at)
    """)


def downgrade() -> None:
    conn = op.get_bind()
    for index in (
        "idx_onboarding_tokens_expires",
        "idx_messages_business_created",
        "idx_outbox_messages_business_status",
        "idx_outbox_messages_due",
        "idx_webhook_events_received",
    ):
        conn.exec_driver_sql(f"DROP INDEX IF EXISTS {index}")
