#!/usr/bin/env python3
"""
Create a tenant and print its bridge token.

Reads TENANT_NAME, and optionally TENANT_WEBHOOK_URL and TENANT_HMAC_KEY, from
the .env file. The HMAC key is stored encrypted with CREDENTIAL_ENCRYPTION_KEY.
Run from project root: python scripts/seed_tenant.py
"""

import os
import secrets
import sys

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

from src.bridge.store import TENANT_TABLE, hash_token
from src.config import settings
from src.db import get_supabase
from src.delivery.vault import CredentialVault


def main():
    name = os.getenv("TENANT_NAME")
    if not name:
        print("Error: TENANT_NAME must be set in .env")
        sys.exit(1)

    row = {
        "name": name,
        "webhook_url": os.getenv("TENANT_WEBHOOK_URL") or None,
    }

    hmac_key = os.getenv("TENANT_HMAC_KEY")
    if hmac_key:
        if not settings.credential_encryption_key:
            print("Error: CREDENTIAL_ENCRYPTION_KEY must be set to store TENANT_HMAC_KEY")
            sys.exit(1)
        vault = CredentialVault.from_base64_key(settings.credential_encryption_key)
        row["hmac_key_encrypted"] = "\\x" + vault.encrypt(hmac_key).hex()

    token = secrets.token_urlsafe(32)
    row["token_hash"] = hash_token(token)

    result = get_supabase().table(TENANT_TABLE).insert(row).execute()
    if not result.data:
        print("Error: Failed to create tenant")
        sys.exit(1)

    tenant = result.data[0]
    print(f"Created tenant:")
    print(f"  ID: {tenant['id']}")
    print(f"  Name: {tenant['name']}")
    print(f"  Token: {token}")
    print("Store the token now; only its hash is kept.")


if __name__ == "__main__":
    main()
