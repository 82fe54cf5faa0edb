import logging
import sys
from datetime import datetime

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from config import configure_logging
from database import Base
from database.connection import engine
# Importing the models registers every table on Base.metadata
from models import StorageUnit

logger = logging.getLogger(__name__)

DEFAULT_SECTIONS = {"A": -5, "B": -4, "C": -6}
UNITS_PER_SECTION = 4


def add_default_storage_units(session: Session):
    """Seed sections A-C with four cold-storage units each, skipping existing units."""
    for section, temperature in DEFAULT_SECTIONS.items():
        for n in range(1, UNITS_PER_SECTION + 1):
            unit_number = f"{section}-{n:02d}"
            if not session.query(StorageUnit).filter_by(unit_number=unit_number).first():
                session.add(StorageUnit(
                    unit_number=unit_number,
                    section=section,
                    temperature=temperature,
                    status="available",
                    last_maintenance=datetime.utcnow(),
                ))
    session.commit()


def reset_database(bind=None) -> bool:
    """
    Drops all tables, recreates them, and adds the default storage units.
    """
    bind = bind or engine
    print("-------------------------------------------------------------------")
    print("Starting database reset process...")

    try:
        print("1. Dropping all tables...")
        Base.metadata.drop_all(bind)
        print("All tables dropped successfully.")

        print("2. Creating all tables...")
        Base.metadata.create_all(bind)
        print("All tables created successfully.")

        print("3. Adding default storage units...")
        session = Session(bind=bind)
        try:
            add_default_storage_units(session)
        finally:
            session.close()
        print("Default storage units added successfully.")

        print("-------------------------------------------------------------------")
        print("Database reset completed successfully.")
        print("-------------------------------------------------------------------")
        return True

    except OperationalError as e:
        logger.error("Database reset failed: %s", e)
        print("-------------------------------------------------------------------")
        print("Connection or Operational Error:")
        print("Please ensure the database is running and MORTUARY_DATABASE_URL is correct.")
        print(f"Error: {e}")
        print("-------------------------------------------------------------------")
        return False


if __name__ == "__main__":
    configure_logging()
    sys.exit(0 if reset_database() else 1)
