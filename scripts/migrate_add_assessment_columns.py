#!/usr/bin/env python3
"""
Migration script to add weight configuration and assessment state to projects.
Adds: weight_w1..weight_w4, freerider_threshold, pressure_threshold,
assessment_status, assessment_version, finalized_at, finalized_by_user_id, finalized_weights
"""

import sys
import os

# Add parent directory to path so we can import app
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app
from models import db

COLUMNS = [
    ("weight_w1", "REAL DEFAULT 0.5 NOT NULL"),
    ("weight_w2", "REAL DEFAULT 0.3 NOT NULL"),
    ("weight_w3", "REAL DEFAULT 0.2 NOT NULL"),
    ("weight_w4", "REAL DEFAULT 0.1 NOT NULL"),
    ("freerider_threshold", "REAL DEFAULT 0.3 NOT NULL"),
    ("pressure_threshold", "REAL DEFAULT 15.0 NOT NULL"),
    ("assessment_status", "VARCHAR(16) DEFAULT 'DRAFT' NOT NULL"),
    ("assessment_version", "INTEGER DEFAULT 0 NOT NULL"),
    ("finalized_at", "DATETIME"),
    ("finalized_by_user_id", "INTEGER"),
    ("finalized_weights", "TEXT"),
]

def migrate():
    app = create_app()
    with app.app_context():
        try:
            result = db.session.execute(db.text("PRAGMA table_info(projects)"))
            existing_columns = [row[1] for row in result]

            migrations = [
                f"ALTER TABLE projects ADD COLUMN {name} {ddl}"
                for name, ddl in COLUMNS if name not in existing_columns
            ]

            if not migrations:
                print("✓ All assessment columns already exist. No migration needed.")
                return

            for sql in migrations:
                print(f"Running: {sql}")
                db.session.execute(db.text(sql))

            db.session.commit()
            print(f"✅ Migration completed successfully! Added {len(migrations)} column(s).")

        except Exception as e:
            db.session.rollback()
            print(f"❌ Migration failed: {e}")
            raise

if __name__ == "__main__":
    migrate()
