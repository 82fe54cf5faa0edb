from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey
from database import Base
from datetime import datetime

TASK_PRIORITIES = ("urgent", "medium", "routine")
TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    assigned_to_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    priority = Column(String(20), nullable=False, default="routine")
    status = Column(String(20), nullable=False, default="pending")
    due_date = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)
    notes = Column(Text)

    # Weak back-reference, not a foreign key
    related_entity_type = Column(String(20))  # deceased|storage|postmortem|release|other
    related_entity_id = Column(Integer)
