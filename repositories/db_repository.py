import logging
from datetime import date, datetime, time

from sqlalchemy import text, func, case
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

import config
from database.connection import SessionLocal
from models import (
    User,
    DeceasedPatient,
    StorageUnit,
    StorageAssignment,
    Postmortem,
    BodyReleaseRequest,
    Task,
    SystemAlert,
)
from models.user import USER_ROLES
from models.deceased_patient import GENDERS
from models.storage_unit import UNIT_STATUSES
from models.task import TASK_PRIORITIES, TASK_STATUSES
from models.system_alert import ALERT_SEVERITIES
from services import lifecycle
from services.errors import (
    MortuaryError,
    NotFound,
    DuplicateRecord,
    AlreadyAssigned,
    AlreadyReleased,
    UnitUnavailable,
    InvalidTransition,
    StorageError,
)
from utils import days_since, format_mr_number, parse_mr_number

logger = logging.getLogger(__name__)

# Serialization conflicts and deadlocks; the whole unit of work is replayed
# against fresh state. Integrity errors are replayed only for unique-key races.
RETRYABLE_ERRORS = (OperationalError,)

# MySQL duplicate-entry error code, and the SQLite message for the same case
MYSQL_DUPLICATE_ENTRY = 1062
SQLITE_UNIQUE_FAILED = "UNIQUE constraint failed"

PATIENT_READONLY_FIELDS = {"id", "mr_number", "registration_date", "registered_by_id", "status_before_unclaimed"}


def is_unique_violation(error: IntegrityError) -> bool:
    """True when an IntegrityError comes from a unique key, not a NOT NULL or foreign key."""
    orig = getattr(error, "orig", None)
    args = getattr(orig, "args", ())
    if args and args[0] == MYSQL_DUPLICATE_ENTRY:
        return True
    return SQLITE_UNIQUE_FAILED in str(orig)


def apply_fields(record, data: dict):
    """Copy `data` onto a mapped record, refusing keys that are not columns of its table."""
    columns = set(record.__table__.columns.keys())
    unknown = set(data) - columns
    if unknown:
        raise ValueError(f"Unknown {record.__tablename__} fields: {', '.join(sorted(unknown))}")
    for key, value in data.items():
        setattr(record, key, value)


class DBService:
    """
    Database Service / Repository
    All persistence for the mortuary records goes through this class. Each
    public method opens its own session; every write runs as one unit of work
    that either commits completely or leaves the database untouched.
    """
    def __init__(self):
        pass

    def get_db(self) -> Session:
        return SessionLocal()

    def test_connection(self) -> bool:
        try:
            db = self.get_db()
            result = db.execute(text("SELECT 1")).fetchone()
            db.close()
            return result[0] == 1
        except Exception as e:
            logger.error("Database connection check failed: %s", e)
            return False

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------
    def _run_in_transaction(self, work, action: str):
        """Run `work(db)` in a fresh session and commit it.

        Domain errors roll back and propagate as they are. Retryable database
        errors roll back and replay the work, up to TRANSACTION_RETRIES
        attempts, before surfacing as StorageError. An integrity error other
        than a unique-key race is bad input and raises ValueError at once.
        """
        attempts = max(1, config.TRANSACTION_RETRIES)
        last_error = None
        for attempt in range(1, attempts + 1):
            db = self.get_db()
            try:
                result = work(db)
                db.commit()
                return result
            except MortuaryError:
                db.rollback()
                raise
            except RETRYABLE_ERRORS as e:
                db.rollback()
                last_error = e
                logger.warning(
                    "%s failed on attempt %d/%d: %s",
                    action, attempt, attempts, e.__class__.__name__,
                )
            except IntegrityError as e:
                db.rollback()
                if not is_unique_violation(e):
                    raise ValueError(f"{action} rejected by the database: {e.orig}") from e
                last_error = e
                logger.warning("%s lost a unique-key race on attempt %d/%d", action, attempt, attempts)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        raise StorageError(f"{action} failed after {attempts} attempts") from last_error

    def _get_or_raise(self, db: Session, model, record_id: int, label: str, lock: bool = False):
        query = db.query(model).filter(model.id == record_id)
        if lock:
            query = query.with_for_update()
        record = query.first()
        if record is None:
            raise NotFound(f"{label} {record_id} not found")
        return record

    def _propagate(self, db: Session, patient: DeceasedPatient, event: str) -> str:
        """Apply a lifecycle event to `patient` and carry out its side effects."""
        new_status, effects = lifecycle.apply_transition(patient.status, event)
        if new_status != patient.status:
            logger.info("Patient %s status %s -> %s (%s)", patient.mr_number, patient.status, new_status, event)
            self._set_status(patient, new_status)

        for effect in effects:
            if effect == lifecycle.RELEASE_STORAGE:
                self._release_active_assignment(db, patient.id)
        return new_status

    def _set_status(self, patient: DeceasedPatient, new_status: str):
        if new_status == lifecycle.UNCLAIMED and patient.status != lifecycle.UNCLAIMED:
            patient.status_before_unclaimed = patient.status
        elif new_status != lifecycle.UNCLAIMED:
            patient.status_before_unclaimed = None
        patient.status = new_status

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def create_user(self, user_data: dict):
        data = dict(user_data)
        if data.get("role") not in USER_ROLES:
            raise ValueError(f"Unknown role: {data.get('role')!r}")

        def work(db):
            if db.query(User).filter_by(username=data["username"]).first():
                raise DuplicateRecord(f"Username {data['username']} already exists.")
            user = User(**data)
            db.add(user)
            db.flush()
            return user

        return self._run_in_transaction(work, "create_user")

    def get_user(self, user_id: int):
        db = self.get_db()
        try:
            return db.query(User).filter_by(id=user_id).first()
        finally:
            db.close()

    def get_user_by_username(self, username: str):
        db = self.get_db()
        try:
            return db.query(User).filter_by(username=username).first()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Deceased patients
    # ------------------------------------------------------------------
    def _next_mr_number(self, db: Session, year: int) -> str:
        """Next free MR-<year>-NNNN number, following the highest one issued."""
        prefix = f"MR-{year}-"
        rows = db.query(DeceasedPatient.mr_number).filter(DeceasedPatient.mr_number.like(prefix + "%")).all()
        highest = 0
        for (mr_number,) in rows:
            parsed = parse_mr_number(mr_number)
            if parsed and parsed[1] > highest:
                highest = parsed[1]
        if highest >= 9999:
            raise StorageError(f"MR number sequence for {year} is exhausted")
        return format_mr_number(year, highest + 1)

    def register_patient(self, patient_data: dict, registered_by_id: int = None):
        """Register a deceased patient; the record always starts as `registered`."""
        data = dict(patient_data)
        data.pop("status", None)
        data.pop("registration_date", None)
        if data.get("gender") not in GENDERS:
            raise ValueError(f"Unknown gender: {data.get('gender')!r}")
        mr_number = data.pop("mr_number", None)
        if mr_number and not parse_mr_number(mr_number):
            raise ValueError(f"MR number {mr_number!r} does not match MR-YYYY-NNNN")

        def work(db):
            number = mr_number
            if number:
                if db.query(DeceasedPatient).filter_by(mr_number=number).first():
                    raise DuplicateRecord(f"MR number {number} is already registered.")
            else:
                number = self._next_mr_number(db, date.today().year)

            patient = DeceasedPatient(
                mr_number=number,
                status=lifecycle.REGISTERED,
                registered_by_id=registered_by_id,
                **data
            )
            db.add(patient)
            db.flush()
            logger.info("Registered deceased patient %s", number)
            return patient

        return self._run_in_transaction(work, "register_patient")

    def get_patient(self, patient_id: int):
        db = self.get_db()
        try:
            return db.query(DeceasedPatient).filter_by(id=patient_id).first()
        finally:
            db.close()

    def get_patient_by_mr_number(self, mr_number: str):
        db = self.get_db()
        try:
            return db.query(DeceasedPatient).filter_by(mr_number=mr_number).first()
        finally:
            db.close()

    def list_patients(self, status: str = None):
        """All patients, most recent registration first."""
        db = self.get_db()
        try:
            query = db.query(DeceasedPatient)
            if status:
                query = query.filter(DeceasedPatient.status == status)
            return query.order_by(DeceasedPatient.registration_date.desc(), DeceasedPatient.id.desc()).all()
        finally:
            db.close()

    def update_patient(self, patient_id: int, patient_data: dict):
        """Edit a patient's details. A status edit may only move the record forward."""
        data = dict(patient_data)
        readonly = PATIENT_READONLY_FIELDS.intersection(data)
        if readonly:
            raise ValueError(f"Fields cannot be changed after registration: {', '.join(sorted(readonly))}")
        if data.get("status") == lifecycle.RELEASED:
            raise InvalidTransition("Patients are released through an approved release request")

        def work(db):
            patient = self._get_or_raise(db, DeceasedPatient, patient_id, "Deceased patient", lock=True)
            fields = dict(data)
            requested = fields.pop("status", patient.status)
            apply_fields(patient, fields)
            requested = lifecycle.check_status_change(patient.status, requested, patient.status_before_unclaimed)
            if requested != patient.status:
                logger.info("Patient %s status set %s -> %s", patient.mr_number, patient.status, requested)
                self._set_status(patient, requested)
            db.flush()
            return patient

        return self._run_in_transaction(work, "update_patient")

    def mark_unclaimed(self, patient_id: int):
        def work(db):
            patient = self._get_or_raise(db, DeceasedPatient, patient_id, "Deceased patient", lock=True)
            self._propagate(db, patient, lifecycle.MARKED_UNCLAIMED)
            db.flush()
            return patient

        return self._run_in_transaction(work, "mark_unclaimed")

    # ------------------------------------------------------------------
    # Storage units
    # ------------------------------------------------------------------
    def create_storage_unit(self, unit_data: dict):
        data = dict(unit_data)
        data.setdefault("status", "available")
        if data["status"] not in ("available", "maintenance"):
            raise InvalidTransition("A new storage unit starts available or under maintenance")

        def work(db):
            if db.query(StorageUnit).filter_by(unit_number=data["unit_number"]).first():
                raise DuplicateRecord(f"Storage unit {data['unit_number']} already exists.")
            unit = StorageUnit(**data)
            db.add(unit)
            db.flush()
            return unit

        return self._run_in_transaction(work, "create_storage_unit")

    def get_storage_unit(self, unit_id: int):
        db = self.get_db()
        try:
            return db.query(StorageUnit).filter_by(id=unit_id).first()
        finally:
            db.close()

    def list_storage_units(self):
        db = self.get_db()
        try:
            return db.query(StorageUnit).order_by(StorageUnit.unit_number).all()
        finally:
            db.close()

    def list_available_units(self):
        db = self.get_db()
        try:
            return (
                db.query(StorageUnit)
                .filter(StorageUnit.status == "available")
                .order_by(StorageUnit.unit_number)
                .all()
            )
        finally:
            db.close()

    def update_storage_unit(self, unit_id: int, unit_data: dict):
        """Edit a unit. Occupancy is owned by assignments and cannot be set here."""
        data = dict(unit_data)

        def work(db):
            unit = self._get_or_raise(db, StorageUnit, unit_id, "Storage unit", lock=True)

            new_number = data.get("unit_number")
            if new_number and new_number != unit.unit_number:
                if db.query(StorageUnit).filter(StorageUnit.unit_number == new_number, StorageUnit.id != unit.id).first():
                    raise DuplicateRecord(f"Storage unit {new_number} already exists.")

            requested = data.get("status", unit.status)
            if requested != unit.status:
                if requested not in UNIT_STATUSES:
                    raise ValueError(f"Unknown storage unit status: {requested!r}")
                if requested == "occupied" or unit.status == "occupied":
                    raise InvalidTransition(f"Occupancy of unit {unit.unit_number} is managed through storage assignments")
                if requested == "maintenance" and not data.get("last_maintenance"):
                    data["last_maintenance"] = datetime.utcnow()
                logger.info("Storage unit %s status %s -> %s", unit.unit_number, unit.status, requested)

            apply_fields(unit, data)
            db.flush()
            return unit

        return self._run_in_transaction(work, "update_storage_unit")

    # ------------------------------------------------------------------
    # Storage assignments
    # ------------------------------------------------------------------
    def _claim_unit(self, db: Session, unit_id: int) -> StorageUnit:
        """Flip an available unit to occupied. Only one concurrent caller can win."""
        unit = self._get_or_raise(db, StorageUnit, unit_id, "Storage unit", lock=True)
        claimed = (
            db.query(StorageUnit)
            .filter(StorageUnit.id == unit_id, StorageUnit.status == "available")
            .update({"status": "occupied"}, synchronize_session="fetch")
        )
        if claimed != 1:
            raise UnitUnavailable(f"Storage unit {unit.unit_number} is {unit.status}")
        return unit

    def _free_unit(self, db: Session, unit_id: int):
        (
            db.query(StorageUnit)
            .filter(StorageUnit.id == unit_id, StorageUnit.status == "occupied")
            .update({"status": "available"}, synchronize_session="fetch")
        )

    def _write_assignment(self, db: Session, assignment, deceased_id: int, unit_id: int, assigned_by_id: int = None):
        """Insert the patient's assignment row, or re-activate its released one."""
        now = datetime.utcnow()
        if assignment is None:
            assignment = StorageAssignment(deceased_id=deceased_id)
            db.add(assignment)
        assignment.storage_unit_id = unit_id
        assignment.assigned_by_id = assigned_by_id
        assignment.status = "active"
        assignment.assigned_at = now
        assignment.release_date = None
        db.flush()
        return assignment

    def _release_assignment(self, db: Session, assignment: StorageAssignment):
        assignment.status = "released"
        assignment.release_date = datetime.utcnow()
        self._free_unit(db, assignment.storage_unit_id)
        db.flush()
        logger.info("Released storage assignment %s (unit %s)", assignment.id, assignment.storage_unit_id)

    def _release_active_assignment(self, db: Session, deceased_id: int):
        assignment = (
            db.query(StorageAssignment)
            .filter_by(deceased_id=deceased_id)
            .with_for_update()
            .first()
        )
        if assignment is not None and assignment.status == "active":
            self._release_assignment(db, assignment)
        return assignment

    def assign_storage(self, deceased_id: int, storage_unit_id: int, assigned_by_id: int = None):
        """Place a patient in an available storage unit."""
        def work(db):
            patient = self._get_or_raise(db, DeceasedPatient, deceased_id, "Deceased patient", lock=True)
            if patient.status == lifecycle.RELEASED:
                raise InvalidTransition(f"Patient {patient.mr_number} has been released and cannot be stored")

            existing = (
                db.query(StorageAssignment)
                .filter_by(deceased_id=deceased_id)
                .with_for_update()
                .first()
            )
            if existing is not None and existing.status == "active":
                raise AlreadyAssigned(f"Patient {patient.mr_number} already has an active storage assignment")

            unit = self._claim_unit(db, storage_unit_id)
            assignment = self._write_assignment(db, existing, patient.id, unit.id, assigned_by_id)
            logger.info("Assigned patient %s to storage unit %s", patient.mr_number, unit.unit_number)
            return assignment

        return self._run_in_transaction(work, "assign_storage")

    def reassign_storage(self, assignment_id: int, new_storage_unit_id: int):
        """Move an active assignment to another available unit."""
        def work(db):
            assignment = self._get_or_raise(db, StorageAssignment, assignment_id, "Storage assignment", lock=True)
            if assignment.status != "active":
                raise AlreadyReleased(f"Storage assignment {assignment_id} has been released")
            if assignment.storage_unit_id == new_storage_unit_id:
                return assignment

            old_unit_id = assignment.storage_unit_id
            new_unit = self._claim_unit(db, new_storage_unit_id)
            self._free_unit(db, old_unit_id)
            assignment.storage_unit_id = new_unit.id
            db.flush()
            logger.info("Moved storage assignment %s from unit %s to %s", assignment.id, old_unit_id, new_unit.unit_number)
            return assignment

        return self._run_in_transaction(work, "reassign_storage")

    def release_storage(self, deceased_id: int):
        """Release a patient's storage assignment; a second call raises AlreadyReleased."""
        def work(db):
            assignment = (
                db.query(StorageAssignment)
                .filter_by(deceased_id=deceased_id)
                .with_for_update()
                .first()
            )
            if assignment is None:
                raise NotFound(f"No storage assignment for deceased patient {deceased_id}")
            if assignment.status == "released":
                raise AlreadyReleased(f"Storage assignment for deceased patient {deceased_id} is already released")
            self._release_assignment(db, assignment)
            return assignment

        return self._run_in_transaction(work, "release_storage")

    def get_assignment(self, assignment_id: int):
        db = self.get_db()
        try:
            return db.query(StorageAssignment).filter_by(id=assignment_id).first()
        finally:
            db.close()

    def get_assignment_for_patient(self, deceased_id: int):
        db = self.get_db()
        try:
            return db.query(StorageAssignment).filter_by(deceased_id=deceased_id).first()
        finally:
            db.close()

    def list_assignments(self, active_only: bool = False):
        db = self.get_db()
        try:
            query = db.query(StorageAssignment)
            if active_only:
                query = query.filter(StorageAssignment.status == "active")
            return query.order_by(StorageAssignment.assigned_at.desc()).all()
        finally:
            db.close()

    def find_storage_inconsistencies(self):
        """Units whose status disagrees with the active assignments that reference them."""
        db = self.get_db()
        try:
            active_counts = dict(
                db.query(StorageAssignment.storage_unit_id, func.count(StorageAssignment.id))
                .filter(StorageAssignment.status == "active")
                .group_by(StorageAssignment.storage_unit_id)
                .all()
            )
            problems = []
            for unit in db.query(StorageUnit).order_by(StorageUnit.unit_number).all():
                active = active_counts.get(unit.id, 0)
                consistent = (active == 1 and unit.status == "occupied") or (active == 0 and unit.status != "occupied")
                if not consistent:
                    problems.append({
                        "unit_id": unit.id,
                        "unit_number": unit.unit_number,
                        "status": unit.status,
                        "active_assignments": active,
                    })
            return problems
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Postmortems
    # ------------------------------------------------------------------
    def schedule_postmortem(self, postmortem_data: dict):
        data = dict(postmortem_data)
        data.setdefault("status", "scheduled")
        if data["status"] not in ("scheduled", "in_progress"):
            raise InvalidTransition("A postmortem starts scheduled or in progress")
        deceased_id = data.get("deceased_id")

        def work(db):
            patient = self._get_or_raise(db, DeceasedPatient, deceased_id, "Deceased patient", lock=True)
            if db.query(Postmortem).filter_by(deceased_id=deceased_id).first():
                raise DuplicateRecord(f"Patient {patient.mr_number} already has a postmortem")

            postmortem = Postmortem(**data)
            db.add(postmortem)
            db.flush()
            self._propagate(db, patient, lifecycle.POSTMORTEM_SCHEDULED)
            logger.info("Scheduled postmortem %s for patient %s", postmortem.id, patient.mr_number)
            return postmortem

        return self._run_in_transaction(work, "schedule_postmortem")

    def update_postmortem(self, postmortem_id: int, postmortem_data: dict):
        """Update a postmortem; completing it moves the patient to autopsy_completed."""
        data = dict(postmortem_data)
        if "deceased_id" in data:
            raise ValueError("A postmortem cannot be moved to another patient")

        def work(db):
            postmortem = self._get_or_raise(db, Postmortem, postmortem_id, "Postmortem", lock=True)
            previous = postmortem.status
            requested = lifecycle.check_postmortem_transition(previous, data.get("status", previous))

            apply_fields(postmortem, data)

            if requested == "completed" and previous != "completed":
                if not postmortem.completed_date:
                    postmortem.completed_date = datetime.utcnow()
                patient = self._get_or_raise(db, DeceasedPatient, postmortem.deceased_id, "Deceased patient", lock=True)
                self._propagate(db, patient, lifecycle.POSTMORTEM_COMPLETED)
            db.flush()
            return postmortem

        return self._run_in_transaction(work, "update_postmortem")

    def get_postmortem(self, postmortem_id: int):
        db = self.get_db()
        try:
            return db.query(Postmortem).filter_by(id=postmortem_id).first()
        finally:
            db.close()

    def list_postmortems(self, status: str = None):
        db = self.get_db()
        try:
            query = db.query(Postmortem)
            if status:
                query = query.filter(Postmortem.status == status)
            return query.order_by(Postmortem.scheduled_date.desc()).all()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Body release requests
    # ------------------------------------------------------------------
    def create_release_request(self, request_data: dict, requested_by_id: int = None):
        data = dict(request_data)
        for stamped in ("approval_status", "approved_by_id", "approval_date"):
            data.pop(stamped, None)
        deceased_id = data.get("deceased_id")

        def work(db):
            patient = self._get_or_raise(db, DeceasedPatient, deceased_id, "Deceased patient", lock=True)
            if db.query(BodyReleaseRequest).filter_by(deceased_id=deceased_id).first():
                raise DuplicateRecord(f"Patient {patient.mr_number} already has a release request")

            request = BodyReleaseRequest(approval_status="pending", requested_by_id=requested_by_id, **data)
            db.add(request)
            db.flush()
            self._propagate(db, patient, lifecycle.RELEASE_REQUESTED)
            logger.info("Release request %s created for patient %s", request.id, patient.mr_number)
            return request

        return self._run_in_transaction(work, "create_release_request")

    def update_release_request(self, request_id: int, request_data: dict, acting_user_id: int = None):
        """
        Update a release request. Approval stamps the approver, releases the
        patient and frees its storage unit in the same transaction. Rejection
        leaves the patient's status alone.
        """
        data = dict(request_data)
        if "deceased_id" in data:
            raise ValueError("A release request cannot be moved to another patient")
        for stamped in ("approved_by_id", "approval_date"):
            data.pop(stamped, None)

        def work(db):
            request = self._get_or_raise(db, BodyReleaseRequest, request_id, "Release request", lock=True)
            previous = request.approval_status
            requested = lifecycle.check_approval_transition(previous, data.get("approval_status", previous))

            apply_fields(request, data)

            if requested != previous:
                patient = self._get_or_raise(db, DeceasedPatient, request.deceased_id, "Deceased patient", lock=True)
                if requested == "approved":
                    if not request.identity_verified:
                        raise InvalidTransition("Next-of-kin identity must be verified before approval")
                    now = datetime.utcnow()
                    request.approved_by_id = acting_user_id
                    request.approval_date = now
                    if not request.release_date:
                        request.release_date = now
                    self._propagate(db, patient, lifecycle.RELEASE_APPROVED)
                elif requested == "rejected":
                    self._propagate(db, patient, lifecycle.RELEASE_REJECTED)
                else:
                    self._propagate(db, patient, lifecycle.RELEASE_REQUESTED)
                logger.info("Release request %s %s -> %s", request.id, previous, requested)
            db.flush()
            return request

        return self._run_in_transaction(work, "update_release_request")

    def get_release_request(self, request_id: int):
        db = self.get_db()
        try:
            return db.query(BodyReleaseRequest).filter_by(id=request_id).first()
        finally:
            db.close()

    def list_release_requests(self, approval_status: str = None):
        db = self.get_db()
        try:
            query = db.query(BodyReleaseRequest)
            if approval_status:
                query = query.filter(BodyReleaseRequest.approval_status == approval_status)
            return query.order_by(BodyReleaseRequest.request_date.desc()).all()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    def create_task(self, task_data: dict):
        data = dict(task_data)
        data.setdefault("priority", "routine")
        data.setdefault("status", "pending")
        if data["priority"] not in TASK_PRIORITIES:
            raise ValueError(f"Unknown task priority: {data['priority']!r}")
        if data["status"] not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {data['status']!r}")

        def work(db):
            task = Task(**data)
            db.add(task)
            db.flush()
            return task

        return self._run_in_transaction(work, "create_task")

    def update_task(self, task_id: int, task_data: dict):
        data = dict(task_data)
        data.pop("completed_at", None)
        if data.get("status", "pending") not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {data['status']!r}")

        def work(db):
            task = self._get_or_raise(db, Task, task_id, "Task", lock=True)
            previous = task.status
            apply_fields(task, data)
            if task.status == "completed" and previous != "completed":
                task.completed_at = datetime.utcnow()
            db.flush()
            return task

        return self._run_in_transaction(work, "update_task")

    def get_task(self, task_id: int):
        db = self.get_db()
        try:
            return db.query(Task).filter_by(id=task_id).first()
        finally:
            db.close()

    def list_tasks(self, status: str = None):
        db = self.get_db()
        try:
            query = db.query(Task)
            if status:
                query = query.filter(Task.status == status)
            return query.order_by(Task.created_at.desc(), Task.id.desc()).all()
        finally:
            db.close()

    def create_unclaimed_follow_up_task(self, patient_id: int, assigned_to_id: int = None,
                                        due_date: datetime = None, priority: str = "urgent"):
        """Open a follow-up task for an unclaimed body, linked back to the patient."""
        if priority not in TASK_PRIORITIES:
            raise ValueError(f"Unknown task priority: {priority!r}")

        def work(db):
            patient = self._get_or_raise(db, DeceasedPatient, patient_id, "Deceased patient")
            if patient.status != lifecycle.UNCLAIMED:
                raise InvalidTransition(f"Patient {patient.mr_number} is not unclaimed")
            task = Task(
                title=f"Follow up on unclaimed body: {patient.mr_number}",
                description=f"Follow up on unclaimed patient: {patient.full_name} ({patient.mr_number})",
                assigned_to_id=assigned_to_id,
                priority=priority,
                status="pending",
                due_date=due_date,
                related_entity_type="deceased",
                related_entity_id=patient.id,
            )
            db.add(task)
            db.flush()
            return task

        return self._run_in_transaction(work, "create_unclaimed_follow_up_task")

    # ------------------------------------------------------------------
    # System alerts
    # ------------------------------------------------------------------
    def create_alert(self, alert_data: dict):
        data = dict(alert_data)
        data.setdefault("status", "active")
        if data.get("severity") not in ALERT_SEVERITIES:
            raise ValueError(f"Unknown alert severity: {data.get('severity')!r}")

        def work(db):
            alert = SystemAlert(**data)
            db.add(alert)
            db.flush()
            logger.info("Raised %s alert %s: %s", alert.severity, alert.id, alert.title)
            return alert

        return self._run_in_transaction(work, "create_alert")

    def update_alert(self, alert_id: int, alert_data: dict, acting_user_id: int = None):
        data = dict(alert_data)
        for stamped in ("acknowledged_by_id", "acknowledged_at", "resolved_by_id", "resolved_at"):
            data.pop(stamped, None)

        def work(db):
            alert = self._get_or_raise(db, SystemAlert, alert_id, "Alert", lock=True)
            previous = alert.status
            apply_fields(alert, data)

            if alert.status == "acknowledged" and previous == "active":
                alert.acknowledged_by_id = acting_user_id
                alert.acknowledged_at = datetime.utcnow()
            elif alert.status == "resolved" and previous != "resolved":
                alert.resolved_by_id = acting_user_id
                alert.resolved_at = datetime.utcnow()
            db.flush()
            return alert

        return self._run_in_transaction(work, "update_alert")

    def list_alerts(self, status: str = None):
        db = self.get_db()
        try:
            query = db.query(SystemAlert)
            if status:
                query = query.filter(SystemAlert.status == status)
            return query.order_by(SystemAlert.created_at.desc(), SystemAlert.id.desc()).all()
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Dashboard and reports
    # ------------------------------------------------------------------
    def get_dashboard_stats(self):
        """Return the counters and short lists shown on the operations dashboard."""
        db = self.get_db()
        try:
            occupied = db.query(func.count(StorageUnit.id)).filter(StorageUnit.status == "occupied").scalar() or 0
            available = db.query(func.count(StorageUnit.id)).filter(StorageUnit.status == "available").scalar() or 0
            pending_releases = db.query(func.count(DeceasedPatient.id)).filter(
                DeceasedPatient.status == lifecycle.PENDING_RELEASE
            ).scalar() or 0
            unclaimed = db.query(func.count(DeceasedPatient.id)).filter(
                DeceasedPatient.status == lifecycle.UNCLAIMED
            ).scalar() or 0

            recent_registrations = (
                db.query(DeceasedPatient)
                .order_by(DeceasedPatient.registration_date.desc(), DeceasedPatient.id.desc())
                .limit(5)
                .all()
            )

            priority_rank = case({"urgent": 0, "medium": 1}, value=Task.priority, else_=2)
            pending_tasks = (
                db.query(Task)
                .filter(Task.status == "pending")
                .order_by(priority_rank, Task.due_date.is_(None), Task.due_date.asc())
                .limit(4)
                .all()
            )

            severity_rank = case({"critical": 0}, value=SystemAlert.severity, else_=1)
            alerts = (
                db.query(SystemAlert)
                .filter(
                    SystemAlert.status == "active",
                    SystemAlert.severity.in_(("critical", "warning")),
                )
                .order_by(severity_rank, SystemAlert.created_at.desc())
                .limit(3)
                .all()
            )

            return {
                "occupied": int(occupied),
                "available": int(available),
                "pending_releases": int(pending_releases),
                "unclaimed": int(unclaimed),
                "recent_registrations": recent_registrations,
                "pending_tasks": pending_tasks,
                "alerts": alerts,
            }
        finally:
            db.close()

    def get_period_summary(self, start: date, end: date):
        """Activity between `start` and `end`, both days inclusive."""
        start_at = datetime.combine(start, time.min)
        end_at = datetime.combine(end, time.max)
        db = self.get_db()
        try:
            patients = (
                db.query(DeceasedPatient.status, DeceasedPatient.ward_from)
                .filter(DeceasedPatient.registration_date.between(start_at, end_at))
                .all()
            )
            releases = (
                db.query(BodyReleaseRequest.approval_status)
                .filter(BodyReleaseRequest.request_date.between(start_at, end_at))
                .all()
            )
            postmortems = (
                db.query(Postmortem.status)
                .filter(Postmortem.scheduled_date != None)
                .filter(Postmortem.scheduled_date.between(start_at, end_at))
                .all()
            )

            by_status = {}
            by_ward = {}
            for status, ward in patients:
                by_status[status] = by_status.get(status, 0) + 1
                by_ward[ward] = by_ward.get(ward, 0) + 1

            release_status = {"approved": 0, "pending": 0, "rejected": 0}
            for (approval_status,) in releases:
                release_status[approval_status] = release_status.get(approval_status, 0) + 1

            postmortem_status = {}
            for (status,) in postmortems:
                postmortem_status[status] = postmortem_status.get(status, 0) + 1

            return {
                "period_start": start,
                "period_end": end,
                "total_patients": len(patients),
                "total_releases": len(releases),
                "released_bodies": release_status["approved"],
                "postmortems": len(postmortems),
                "unclaimed_bodies": by_status.get(lifecycle.UNCLAIMED, 0),
                "by_status": by_status,
                "by_ward": by_ward,
                "release_status": release_status,
                "postmortem_status": postmortem_status,
            }
        finally:
            db.close()

    def get_unclaimed_bodies(self, today: date = None):
        """Unclaimed patients, longest waiting first, with their follow-up bucket."""
        today = today or date.today()
        db = self.get_db()
        try:
            patients = (
                db.query(DeceasedPatient)
                .filter(DeceasedPatient.status == lifecycle.UNCLAIMED)
                .order_by(DeceasedPatient.registration_date.asc())
                .all()
            )
            rows = []
            for patient in patients:
                days = days_since(patient.registration_date, today)
                if days > config.UNCLAIMED_CRITICAL_DAYS:
                    bucket = "critical"
                elif days > config.UNCLAIMED_WARNING_DAYS:
                    bucket = "approaching"
                else:
                    bucket = "recent"
                rows.append({"patient": patient, "days_unclaimed": days, "bucket": bucket})
            return rows
        finally:
            db.close()
