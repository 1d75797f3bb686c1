"""
Create the account and processed_event tables.

Usage:
    python scripts/init_db.py
"""
import sys
sys.path.insert(0, ".")

from billing_sync.db import DATABASE_URL, create_db_and_tables

if __name__ == "__main__":
    print(f"Creating tables in {DATABASE_URL.split('@')[-1]}...")
    try:
        create_db_and_tables()
        print("Tables created successfully!")
    except Exception as e:
        print(f"Error creating tables: {e}")
        sys.exit(1)
