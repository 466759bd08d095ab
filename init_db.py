#!/usr/bin/env python3
"""
Database initialization script.
Creates tables if they don't exist.
"""

import sys

from config import Settings
from database import init_db, make_engine


def init_database():
    """Initialize the database by creating all tables."""
    settings = Settings.from_env()
    try:
        print("Creating database tables...")
        init_db(make_engine(settings.database_url))
        print("✅ Database tables created successfully!")
    except Exception as e:
        print(f"❌ Error creating database tables: {e}")
        sys.exit(1)


if __name__ == "__main__":
    init_database()
