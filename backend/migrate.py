"""
Create the database schema from the ORM models.

    python backend/migrate.py
"""

from pathlib import Path

from booking_engine.config import settings
from booking_engine.database import init_db


def apply_schema():
    url = settings.resolved_database_url
    print(f"Using DB: {url}")

    if url.startswith("sqlite:///"):
        # SQLite will not create missing directories
        Path(url.replace("sqlite:///", "", 1)).parent.mkdir(parents=True, exist_ok=True)

    init_db()
    print("Schema ready.")


if __name__ == "__main__":
    apply_schema()
