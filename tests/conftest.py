import pytest
import sys
import os
# ensure project root is importable during pytest collection
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from repositories.db_repository import DBService
from database.base import Base
import models  # noqa: F401  registers the tables
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from datetime import datetime


@pytest.fixture
def in_memory_db():
    engine = create_engine("sqlite:///:memory:", echo=False)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    Base.metadata.create_all(engine)
    yield SessionLocal
    engine.dispose()


@pytest.fixture
def db_service(in_memory_db):
    svc = DBService()
    svc.get_db = lambda: in_memory_db()
    return svc


def patient_data(**overrides):
    data = {
        "full_name": "John Doe",
        "age": 67,
        "gender": "male",
        "date_of_death": datetime(2024, 3, 15, 13, 45),
        "cause_of_death": "Cardiac Arrest",
        "ward_from": "ICU",
        "attending_physician": "Dr. Sarah Johnson",
    }
    data.update(overrides)
    return data


def release_data(deceased_id, **overrides):
    data = {
        "deceased_id": deceased_id,
        "next_of_kin_name": "Mary Doe",
        "next_of_kin_relation": "Spouse",
        "next_of_kin_contact": "555-0100",
        "identity_verified": True,
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_patient(db_service):
    def _make(**overrides):
        return db_service.register_patient(patient_data(**overrides))
    return _make


@pytest.fixture
def make_unit(db_service):
    counter = {"n": 0}

    def _make(status="available", section="A"):
        counter["n"] += 1
        return db_service.create_storage_unit({
            "unit_number": f"{section}-{counter['n']:02d}",
            "section": section,
            "temperature": -5,
            "status": status,
        })
    return _make


@pytest.fixture
def patient_payload():
    return patient_data


@pytest.fixture
def release_payload():
    return release_data
