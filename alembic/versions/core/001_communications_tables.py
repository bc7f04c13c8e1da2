"""communications_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS clients (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            client_name TEXT NOT NULL,
            phone TEXT,
            email TEXT,
            openphone_contact_id TEXT UNIQUE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_clients_client_name_lower
        ON clients (lower(client_name))
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_clients_phone
        ON clients (phone)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS communications (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            client_id UUID NOT NULL REFERENCES clients (id),
            client_name TEXT NOT NULL,
            communication_date DATE NOT NULL,
            communication_type TEXT NOT NULL
                CHECK (communication_type IN ('phone_call', 'sms', 'email')),
            subject TEXT,
            notes TEXT NOT NULL,
            source TEXT NOT NULL DEFAULT 'openphone',
            openphone_call_id TEXT UNIQUE,
            openphone_conversation_id TEXT UNIQUE,
            openphone_event_timestamp TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT communications_one_external_id CHECK (
                (openphone_call_id IS NULL) <> (openphone_conversation_id IS NULL)
            )
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_communications_client_date
        ON communications (client_id, communication_date DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS communications")
    op.execute("DROP TABLE IF EXISTS clients")
