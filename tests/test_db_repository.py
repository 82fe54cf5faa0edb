import pytest
from datetime import date, datetime, timedelta

from models import DeceasedPatient
from services.errors import DuplicateRecord, InvalidTransition, NotFound


def test_register_patient_generates_mr_number(db_service, make_patient):
    first = make_patient()
    second = make_patient(full_name="Jane Smith")
    year = date.today().year

    assert first.mr_number == f"MR-{year}-0001"
    assert second.mr_number == f"MR-{year}-0002"
    assert first.status == "registered"
    assert first.registration_date is not None


def test_register_patient_ignores_supplied_status(db_service, patient_payload):
    patient = db_service.register_patient(patient_payload(status="released"), registered_by_id=None)
    assert patient.status == "registered"


def test_register_patient_validates_mr_number(db_service, patient_payload):
    db_service.register_patient(patient_payload(mr_number="MR-2024-0042"))

    with pytest.raises(DuplicateRecord):
        db_service.register_patient(patient_payload(mr_number="MR-2024-0042"))
    with pytest.raises(ValueError):
        db_service.register_patient(patient_payload(mr_number="MR123456"))


def test_mr_sequence_continues_after_highest_number(db_service, patient_payload):
    year = date.today().year
    db_service.register_patient(patient_payload(mr_number=f"MR-{year}-0007"))
    patient = db_service.register_patient(patient_payload())
    assert patient.mr_number == f"MR-{year}-0008"


def test_update_patient_rejects_regression(db_service, make_patient):
    patient = make_patient()
    db_service.update_patient(patient.id, {"status": "pending_autopsy", "notes": "police case"})

    with pytest.raises(InvalidTransition):
        db_service.update_patient(patient.id, {"status": "registered"})
    with pytest.raises(InvalidTransition):
        db_service.update_patient(patient.id, {"status": "released"})
    with pytest.raises(ValueError):
        db_service.update_patient(patient.id, {"mr_number": "MR-2024-9999"})

    stored = db_service.get_patient(patient.id)
    assert stored.status == "pending_autopsy"
    assert stored.notes == "police case"


def test_unclaimed_patient_cannot_drop_below_its_earlier_stage(db_service, make_patient):
    patient = make_patient()
    postmortem = db_service.schedule_postmortem({
        "deceased_id": patient.id,
        "scheduled_date": datetime(2024, 3, 16, 9, 0),
    })
    db_service.update_postmortem(postmortem.id, {"status": "completed"})
    unclaimed = db_service.mark_unclaimed(patient.id)
    assert unclaimed.status_before_unclaimed == "autopsy_completed"

    with pytest.raises(InvalidTransition):
        db_service.update_patient(patient.id, {"status": "registered"})
    with pytest.raises(InvalidTransition):
        db_service.update_patient(patient.id, {"status": "pending_autopsy"})
    assert db_service.get_patient(patient.id).status == "unclaimed"

    restored = db_service.update_patient(patient.id, {"status": "autopsy_completed"})
    assert restored.status == "autopsy_completed"
    assert restored.status_before_unclaimed is None


def test_register_patient_missing_required_field_is_not_retried(db_service, patient_payload):
    payload = patient_payload()
    del payload["full_name"]
    real_get_db = db_service.get_db
    sessions = {"n": 0}

    def counting_get_db():
        sessions["n"] += 1
        return real_get_db()

    db_service.get_db = counting_get_db

    with pytest.raises(ValueError):
        db_service.register_patient(payload)

    assert sessions["n"] == 1
    assert db_service.list_patients() == []


def test_updates_reject_unknown_fields(db_service, make_patient, make_unit):
    patient = make_patient()
    unit = make_unit()
    task = db_service.create_task({"title": "Check seals"})

    with pytest.raises(ValueError):
        db_service.update_patient(patient.id, {"fullname": "Johnny Doe"})
    with pytest.raises(ValueError):
        db_service.update_storage_unit(unit.id, {"temprature": -8})
    with pytest.raises(ValueError):
        db_service.update_task(task.id, {"titel": "Check door seals"})

    assert db_service.get_patient(patient.id).full_name == "John Doe"
    assert db_service.get_storage_unit(unit.id).temperature == -5


def test_postmortem_lifecycle_updates_patient(db_service, make_patient):
    patient = make_patient()

    postmortem = db_service.schedule_postmortem({
        "deceased_id": patient.id,
        "scheduled_date": datetime(2024, 3, 16, 9, 0),
        "is_forensic": True,
    })
    assert postmortem.status == "scheduled"
    assert db_service.get_patient(patient.id).status == "pending_autopsy"

    db_service.update_postmortem(postmortem.id, {"status": "in_progress"})
    completed = db_service.update_postmortem(postmortem.id, {"status": "completed", "findings": "Myocardial infarction"})

    assert completed.completed_date is not None
    assert completed.findings == "Myocardial infarction"
    assert db_service.get_patient(patient.id).status == "autopsy_completed"


def test_postmortem_keeps_supplied_completion_date(db_service, make_patient):
    patient = make_patient()
    postmortem = db_service.schedule_postmortem({"deceased_id": patient.id})
    done_at = datetime(2024, 3, 17, 15, 30)

    completed = db_service.update_postmortem(postmortem.id, {"status": "completed", "completed_date": done_at})

    assert completed.completed_date == done_at


def test_postmortem_rules(db_service, make_patient):
    patient = make_patient()
    postmortem = db_service.schedule_postmortem({"deceased_id": patient.id})

    with pytest.raises(DuplicateRecord):
        db_service.schedule_postmortem({"deceased_id": patient.id})
    with pytest.raises(NotFound):
        db_service.schedule_postmortem({"deceased_id": 9999})

    db_service.update_postmortem(postmortem.id, {"status": "completed"})
    with pytest.raises(InvalidTransition):
        db_service.update_postmortem(postmortem.id, {"status": "in_progress"})


def test_postmortem_does_not_move_patient_backwards(db_service, make_patient, release_payload):
    patient = make_patient()
    db_service.create_release_request(release_payload(patient.id))

    db_service.schedule_postmortem({"deceased_id": patient.id})

    assert db_service.get_patient(patient.id).status == "pending_release"


def test_release_approval_releases_patient_and_storage(db_service, make_patient, make_unit, release_payload):
    patient = make_patient()
    unit = make_unit()
    db_service.assign_storage(patient.id, unit.id)

    request = db_service.create_release_request(release_payload(patient.id, transferred_to="Evergreen Funeral Home"))
    assert request.approval_status == "pending"
    assert db_service.get_patient(patient.id).status == "pending_release"

    approved = db_service.update_release_request(request.id, {"approval_status": "approved"}, acting_user_id=None)

    assert approved.approval_status == "approved"
    assert approved.approval_date is not None
    assert approved.release_date is not None
    assert db_service.get_patient(patient.id).status == "released"
    assert db_service.get_assignment_for_patient(patient.id).status == "released"
    assert db_service.get_storage_unit(unit.id).status == "available"


def test_release_approval_stamps_approver(db_service, make_patient, release_payload):
    approver = db_service.create_user({
        "username": "mortuary",
        "password": "hashed",
        "full_name": "Mortuary Staff",
        "email": "mortuary@example.org",
        "role": "mortuary_staff",
    })
    patient = make_patient()
    request = db_service.create_release_request(release_payload(patient.id))

    approved = db_service.update_release_request(request.id, {"approval_status": "approved"}, acting_user_id=approver.id)

    assert approved.approved_by_id == approver.id


def test_release_rejection_leaves_patient_alone(db_service, make_patient, make_unit, release_payload):
    patient = make_patient()
    unit = make_unit()
    db_service.assign_storage(patient.id, unit.id)
    request = db_service.create_release_request(release_payload(patient.id))

    rejected = db_service.update_release_request(request.id, {"approval_status": "rejected"})

    assert rejected.approval_status == "rejected"
    assert rejected.approval_date is None
    assert db_service.get_patient(patient.id).status == "pending_release"
    assert db_service.get_storage_unit(unit.id).status == "occupied"


def test_approval_requires_verified_identity(db_service, make_patient, release_payload):
    patient = make_patient()
    request = db_service.create_release_request(release_payload(patient.id, identity_verified=False))

    with pytest.raises(InvalidTransition):
        db_service.update_release_request(request.id, {"approval_status": "approved"})
    assert db_service.get_release_request(request.id).approval_status == "pending"

    approved = db_service.update_release_request(
        request.id, {"approval_status": "approved", "identity_verified": True}
    )
    assert approved.approval_status == "approved"


def test_approved_request_is_final(db_service, make_patient, release_payload):
    patient = make_patient()
    request = db_service.create_release_request(release_payload(patient.id))
    db_service.update_release_request(request.id, {"approval_status": "approved"})

    with pytest.raises(InvalidTransition):
        db_service.update_release_request(request.id, {"approval_status": "rejected"})
    assert db_service.get_patient(patient.id).status == "released"


def test_failed_approval_leaves_everything_unchanged(db_service, make_patient, make_unit, release_payload, monkeypatch):
    patient = make_patient()
    unit = make_unit()
    db_service.assign_storage(patient.id, unit.id)
    request = db_service.create_release_request(release_payload(patient.id))

    def broken_release(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db_service, "_release_assignment", broken_release)

    with pytest.raises(RuntimeError):
        db_service.update_release_request(request.id, {"approval_status": "approved"})

    assert db_service.get_release_request(request.id).approval_status == "pending"
    assert db_service.get_release_request(request.id).approval_date is None
    assert db_service.get_patient(patient.id).status == "pending_release"
    assert db_service.get_assignment_for_patient(patient.id).status == "active"
    assert db_service.get_storage_unit(unit.id).status == "occupied"


def test_duplicate_release_request_rejected(db_service, make_patient, release_payload):
    patient = make_patient()
    db_service.create_release_request(release_payload(patient.id))
    with pytest.raises(DuplicateRecord):
        db_service.create_release_request(release_payload(patient.id))


def test_mark_unclaimed_and_follow_up_task(db_service, make_patient):
    patient = make_patient()
    other = make_patient(full_name="Jane Smith")

    unclaimed = db_service.mark_unclaimed(patient.id)
    task = db_service.create_unclaimed_follow_up_task(patient.id)

    assert unclaimed.status == "unclaimed"
    assert task.related_entity_type == "deceased"
    assert task.related_entity_id == patient.id
    assert patient.mr_number in task.title
    assert task.priority == "urgent"
    with pytest.raises(InvalidTransition):
        db_service.create_unclaimed_follow_up_task(other.id)


def test_unclaimed_buckets(db_service, in_memory_db, make_patient):
    today = date(2024, 4, 30)
    registered = {"recent": 3, "approaching": 18, "critical": 30}
    ids = {}
    for label, days in registered.items():
        patient = make_patient(full_name=label)
        db_service.mark_unclaimed(patient.id)
        ids[label] = patient.id

    db = in_memory_db()
    for label, days in registered.items():
        db.query(DeceasedPatient).filter_by(id=ids[label]).update(
            {"registration_date": datetime.combine(today - timedelta(days=days), datetime.min.time())}
        )
    db.commit()
    db.close()

    rows = db_service.get_unclaimed_bodies(today)

    assert [r["bucket"] for r in rows] == ["critical", "approaching", "recent"]
    assert [r["days_unclaimed"] for r in rows] == [30, 18, 3]


def test_task_completion_is_stamped(db_service):
    task = db_service.create_task({"title": "Restock body bags", "priority": "medium"})
    assert task.status == "pending"

    done = db_service.update_task(task.id, {"status": "completed"})

    assert done.completed_at is not None
    with pytest.raises(ValueError):
        db_service.create_task({"title": "Bad", "priority": "whenever"})


def test_alert_acknowledge_and_resolve(db_service):
    alert = db_service.create_alert({
        "type": "temperature",
        "title": "Unit A-04 temperature high",
        "message": "Temperature reading -1C",
        "severity": "critical",
        "related_entity_type": "storage_unit",
        "related_entity_id": 4,
    })

    acknowledged = db_service.update_alert(alert.id, {"status": "acknowledged"})
    assert acknowledged.acknowledged_at is not None
    assert acknowledged.resolved_at is None

    resolved = db_service.update_alert(alert.id, {"status": "resolved"})
    assert resolved.resolved_at is not None
    assert db_service.list_alerts(status="active") == []


def test_dashboard_stats(db_service, make_patient, make_unit, release_payload):
    first = make_patient()
    second = make_patient(full_name="Jane Smith")
    unit = make_unit()
    make_unit()
    make_unit(status="maintenance")
    db_service.assign_storage(first.id, unit.id)
    db_service.create_release_request(release_payload(first.id))
    db_service.mark_unclaimed(second.id)

    db_service.create_task({"title": "Routine check", "priority": "routine"})
    db_service.create_task({"title": "Call next of kin", "priority": "urgent"})
    db_service.create_alert({"type": "system", "title": "Info", "message": "ok", "severity": "info"})
    db_service.create_alert({"type": "storage", "title": "Door open", "message": "B-02", "severity": "warning"})
    db_service.create_alert({"type": "temperature", "title": "Too warm", "message": "A-04", "severity": "critical"})

    stats = db_service.get_dashboard_stats()

    assert stats["occupied"] == 1
    assert stats["available"] == 1
    assert stats["pending_releases"] == 1
    assert stats["unclaimed"] == 1
    assert len(stats["recent_registrations"]) == 2
    assert stats["pending_tasks"][0].title == "Call next of kin"
    assert [a.severity for a in stats["alerts"]] == ["critical", "warning"]


def test_period_summary(db_service, make_patient, release_payload):
    first = make_patient(ward_from="ICU")
    second = make_patient(full_name="Jane Smith", ward_from="Oncology")
    request = db_service.create_release_request(release_payload(first.id))
    db_service.update_release_request(request.id, {"approval_status": "approved"})
    db_service.schedule_postmortem({"deceased_id": second.id, "scheduled_date": datetime.now()})

    summary = db_service.get_period_summary(date.today() - timedelta(days=7), date.today() + timedelta(days=1))

    assert summary["total_patients"] == 2
    assert summary["total_releases"] == 1
    assert summary["released_bodies"] == 1
    assert summary["postmortems"] == 1
    assert summary["by_ward"] == {"ICU": 1, "Oncology": 1}
    assert summary["by_status"] == {"released": 1, "pending_autopsy": 1}
    assert summary["release_status"] == {"approved": 1, "pending": 0, "rejected": 0}
