from sqlalchemy import Column, Integer, String, Text, DateTime
from database import Base

UNIT_STATUSES = ("available", "occupied", "maintenance")

class StorageUnit(Base):
    __tablename__ = "storage_units"

    id = Column(Integer, primary_key=True)
    unit_number = Column(String(10), unique=True, nullable=False)  # A-01, B-05, ...
    section = Column(String(5), nullable=False)
    temperature = Column(Integer)  # celsius
    status = Column(String(20), nullable=False, default="available")
    last_maintenance = Column(DateTime)
    notes = Column(Text)
