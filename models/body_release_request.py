from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from database import Base
from datetime import datetime

class BodyReleaseRequest(Base):
    __tablename__ = "body_release_requests"

    id = Column(Integer, primary_key=True)
    deceased_id = Column(Integer, ForeignKey("deceased_patients.id", ondelete="CASCADE"), unique=True, nullable=False)
    request_date = Column(DateTime, default=datetime.utcnow, nullable=False)
    requested_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))

    next_of_kin_name = Column(String(255), nullable=False)
    next_of_kin_relation = Column(String(100), nullable=False)
    next_of_kin_contact = Column(String(255), nullable=False)
    identity_verified = Column(Boolean, default=False, nullable=False)

    approval_status = Column(String(20), nullable=False, default="pending")
    approved_by_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    approval_date = Column(DateTime)
    release_date = Column(DateTime)
    transferred_to = Column(String(255))  # funeral home or other receiving party
    notes = Column(Text)

    deceased = relationship("DeceasedPatient")
