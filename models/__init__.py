from .user import User
from .deceased_patient import DeceasedPatient
from .storage_unit import StorageUnit
from .storage_assignment import StorageAssignment
from .postmortem import Postmortem
from .body_release_request import BodyReleaseRequest
from .task import Task
from .system_alert import SystemAlert

__all__ = [
    "User",
    "DeceasedPatient",
    "StorageUnit",
    "StorageAssignment",
    "Postmortem",
    "BodyReleaseRequest",
    "Task",
    "SystemAlert",
]
