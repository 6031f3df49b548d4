#!/usr/bin/env python3
"""
Generate an ENCRYPTION_KEY for provider API keys, or check the current one.

Usage:
    python scripts/generate_encryption_key.py           # print a new Fernet key
    python scripts/generate_encryption_key.py --check   # decrypt every stored key with ENCRYPTION_KEY

Stored provider keys are only readable with the key they were encrypted
with. Changing ENCRYPTION_KEY means every tenant has to reconnect.
"""
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cryptography.fernet import Fernet


def generate_key():
    key = Fernet.generate_key().decode()
    print("Add this to your .env file:")
    print(f"ENCRYPTION_KEY={key}")


def check_stored_keys() -> int:
    from app.core.config import settings
    from app.db.session import SessionLocal
    from app.models.provider_config import ProviderConfig
    from app.services.providers import get_api_key

    if not settings.ENCRYPTION_KEY:
        print("ENCRYPTION_KEY is not set")
        return 1

    db = SessionLocal()
    try:
        configs = db.query(ProviderConfig).filter(ProviderConfig.api_key.isnot(None)).all()
        unreadable = 0
        for config in configs:
            try:
                get_api_key(config)
            except ValueError:
                unreadable += 1
                print(f"  website {config.website_id} ({config.provider.value}): cannot decrypt")
        print(f"Checked {len(configs)} provider keys, {unreadable} unreadable")
        return 1 if unreadable else 0
    finally:
        db.close()


if __name__ == "__main__":
    if "--check" in sys.argv:
        sys.exit(check_stored_keys())
    generate_key()
