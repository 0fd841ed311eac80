#!/usr/bin/env python3
"""
Create the provisioning tables (pre_users, user_assignments, webhook_events).

Idempotent: existing tables and indexes are left untouched.
"""
import sys

from sqlalchemy import inspect

from ciliosclick.core.config import get_settings
from ciliosclick.core.database import Base, get_sync_db_engine


def run_migration():
    """Create missing tables and indexes through the synchronous engine."""
    settings = get_settings()
    engine = get_sync_db_engine()

    print("🔄 Running migration: create provisioning tables")
    print(f"📊 Database: {settings.DATABASE_URL.split('@')[-1] if '@' in settings.DATABASE_URL else 'N/A'}")

    try:
        existing = set(inspect(engine).get_table_names())
        with engine.begin() as conn:
            Base.metadata.create_all(conn, checkfirst=True)

        created = [name for name in Base.metadata.tables if name not in existing]
        print("✅ Migration completed")
        if created:
            print("\n📋 Tables created:")
            for name in created:
                print(f"   - {name}")
        else:
            print("   (all tables already present)")

    except Exception as e:
        print(f"❌ Migration failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run_migration()
