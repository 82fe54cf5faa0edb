from sqlalchemy import Column, Integer, String, DateTime
from database import Base
from datetime import datetime

USER_ROLES = ("admin", "medical_staff", "mortuary_staff", "viewer")

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(100), unique=True, nullable=False)
    password = Column(String(255), nullable=False)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
