from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from database import Base

class Postmortem(Base):
    __tablename__ = "postmortems"

    id = Column(Integer, primary_key=True)
    deceased_id = Column(Integer, ForeignKey("deceased_patients.id", ondelete="CASCADE"), unique=True, nullable=False)
    assigned_to_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))

    status = Column(String(20), nullable=False, default="scheduled")
    scheduled_date = Column(DateTime)
    completed_date = Column(DateTime)
    findings = Column(Text)
    is_forensic = Column(Boolean, default=False, nullable=False)
    notes = Column(Text)

    deceased = relationship("DeceasedPatient")
