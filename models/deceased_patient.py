from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime

GENDERS = ("male", "female", "other")

class DeceasedPatient(Base):
    __tablename__ = "deceased_patients"

    id = Column(Integer, primary_key=True)
    mr_number = Column(String(20), unique=True, nullable=False)  # MR-YYYY-NNNN
    full_name = Column(String(255), nullable=False)
    age = Column(Integer, nullable=False)
    gender = Column(String(10), nullable=False)
    date_of_death = Column(DateTime, nullable=False)
    cause_of_death = Column(String(255), nullable=False)
    ward_from = Column(String(100), nullable=False)
    attending_physician = Column(String(255), nullable=False)
    notes = Column(Text)
    status = Column(String(30), nullable=False, default="registered")
    # Lifecycle stage held when the body was marked unclaimed
    status_before_unclaimed = Column(String(30))

    registered_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    registered_by = relationship("User")

    registration_date = Column(DateTime, default=datetime.utcnow, nullable=False)
