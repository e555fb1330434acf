#!/usr/bin/env python3
"""Create the WhatsApp bridge tables."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. tenants
CREATE TABLE IF NOT EXISTS tenants (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    name VARCHAR(255) NOT NULL,
    token_hash VARCHAR(255) NOT NULL UNIQUE,
    hmac_key_encrypted BYTEA,
    webhook_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 2. bridge_configs
CREATE TABLE IF NOT EXISTS bridge_configs (
    tenant_id UUID PRIMARY KEY REFERENCES tenants(id) ON DELETE CASCADE,
    account_id VARCHAR(50) NOT NULL,
    api_token TEXT NOT NULL,
    url TEXT NOT NULL,
    inbox_id BIGINT,
    name_inbox VARCHAR(255) NOT NULL DEFAULT '',
    enabled BOOLEAN NOT NULL DEFAULT FALSE,
    auto_create BOOLEAN NOT NULL DEFAULT FALSE,
    sign_msg BOOLEAN NOT NULL DEFAULT FALSE,
    sign_delimiter VARCHAR(20) NOT NULL DEFAULT '\\n',
    reopen_conversation BOOLEAN NOT NULL DEFAULT FALSE,
    conversation_pending BOOLEAN NOT NULL DEFAULT FALSE,
    merge_brazil_contacts BOOLEAN NOT NULL DEFAULT FALSE,
    organization VARCHAR(255),
    logo TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 3. bridge_conversations
CREATE TABLE IF NOT EXISTS bridge_conversations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    chat_jid VARCHAR(255) NOT NULL,
    conversation_id BIGINT NOT NULL,
    contact_id BIGINT,
    inbox_id BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(tenant_id, chat_jid)
);
CREATE INDEX IF NOT EXISTS idx_bridge_conversations_tenant_id ON bridge_conversations(tenant_id);

-- 4. bridge_messages
CREATE TABLE IF NOT EXISTS bridge_messages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    tenant_id UUID NOT NULL REFERENCES tenants(id) ON DELETE CASCADE,
    whatsapp_message_id VARCHAR(255) NOT NULL,
    remote_message_id BIGINT NOT NULL,
    conversation_id BIGINT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(tenant_id, whatsapp_message_id)
);
CREATE INDEX IF NOT EXISTS idx_bridge_messages_conversation_id ON bridge_messages(conversation_id);
"""


def main():
    print(f"Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    cur.execute(
        "SELECT table_name FROM information_schema.tables "
        "WHERE table_schema = 'public' AND table_name IN "
        "('tenants', 'bridge_configs', 'bridge_conversations', 'bridge_messages') ORDER BY table_name;"
    )
    tables = cur.fetchall()
    print(f"\nTables present: {[t[0] for t in tables]}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
