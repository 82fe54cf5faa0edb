from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime

ASSIGNMENT_STATUSES = ("active", "released")

class StorageAssignment(Base):
    __tablename__ = "storage_assignments"

    id = Column(Integer, primary_key=True)
    # One row per patient for its whole stay; re-storage updates it in place
    deceased_id = Column(Integer, ForeignKey("deceased_patients.id", ondelete="CASCADE"), unique=True, nullable=False)
    storage_unit_id = Column(Integer, ForeignKey("storage_units.id", ondelete="RESTRICT"), nullable=False)
    assigned_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))

    status = Column(String(20), nullable=False, default="active")
    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    release_date = Column(DateTime)

    deceased = relationship("DeceasedPatient")
    storage_unit = relationship("StorageUnit", backref="assignments")
