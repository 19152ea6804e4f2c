#!/usr/bin/env python3
"""
Script to run scan engine database migrations
"""
import os
import sys
from alembic.config import Config
from alembic import command

# Add project root to path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

from scan_engine.config import get_config


def alembic_config() -> Config:
    """Alembic config pointing at migrations/"""
    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", os.path.join(ROOT, "migrations"))
    alembic_cfg.set_main_option("sqlalchemy.url", get_config().database_url)
    return alembic_cfg


def run_migrations(revision: str = "head"):
    """Upgrade the database to ``revision``"""
    print(f"Running database migrations to {revision}...")
    try:
        command.upgrade(alembic_config(), revision)
        print("✓ Database migrations completed successfully")
        return True
    except Exception as e:
        print(f"✗ Migration failed: {e}")
        return False


def rollback_migrations(revision: str):
    """Downgrade the database to ``revision``"""
    print(f"Rolling back database migrations to {revision}...")
    try:
        command.downgrade(alembic_config(), revision)
        print("✓ Database rollback completed successfully")
        return True
    except Exception as e:
        print(f"✗ Rollback failed: {e}")
        return False


def main():
    """Main function"""
    if len(sys.argv) < 2:
        print("Usage:")
        print("  python scripts/run-migrations.py migrate [revision]")
        print("  python scripts/run-migrations.py rollback <revision>")
        sys.exit(1)

    command_arg = sys.argv[1]

    if command_arg == "migrate":
        revision = sys.argv[2] if len(sys.argv) > 2 else "head"
        success = run_migrations(revision)
        sys.exit(0 if success else 1)
    elif command_arg == "rollback":
        if len(sys.argv) < 3:
            print("Error: Target revision required (use 'base' to drop everything)")
            sys.exit(1)
        success = rollback_migrations(sys.argv[2])
        sys.exit(0 if success else 1)
    else:
        print(f"Unknown command: {command_arg}")
        sys.exit(1)


if __name__ == "__main__":
    main()
