import threading
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinicos.db import Base
from clinicos.errors import (
    InvalidMutation,
    InvalidTransition,
    NotFound,
    ProfessionalConflict,
    RoomConflict,
    ValidationError,
)
from clinicos.models import Appointment, Patient, Procedure, Professional, Room
from clinicos.policies import SchedulePolicy, get_schedule_policy, set_schedule_policy
from clinicos.repository import get_or_create_tenant
from clinicos.services import (
    appointment_risk_indicators,
    change_appointment_status,
    check_conflict,
    create_appointment,
    find_available_slots,
    list_appointment_status_events,
    update_appointment,
)

DAY = date(2026, 3, 2)
NOW = datetime(2026, 3, 10, 12, 0)


def at(hour: int, minute: int = 0, day: int = 2) -> datetime:
    return datetime(2026, 3, day, hour, minute)


def make_session(tmp_path):
    db_path = tmp_path / "test_clinicos_services.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    return testing_session_local()


def seed(db, slug="clinic-a"):
    tenant = get_or_create_tenant(db, slug)
    patient = Patient(tenant_id=tenant.id, name="Maria Silva", phone="+5511999990000")
    ana = Professional(tenant_id=tenant.id, name="Ana")
    bruno = Professional(tenant_id=tenant.id, name="Bruno")
    room = Room(tenant_id=tenant.id, name="Room 1")
    procedure = Procedure(tenant_id=tenant.id, name="Cleaning", price=Decimal("400"))
    cheap = Procedure(tenant_id=tenant.id, name="Check-up", price=Decimal("100"))
    db.add_all([patient, ana, bruno, room, procedure, cheap])
    db.commit()
    return {
        "tenant": tenant.id,
        "patient": patient.id,
        "ana": ana.id,
        "bruno": bruno.id,
        "room": room.id,
        "procedure": procedure.id,
    }


def book(db, ids, professional="ana", start=None, end=None, room=None):
    return create_appointment(
        db,
        ids["tenant"],
        patient_id=ids["patient"],
        professional_id=ids[professional],
        start_time=start or at(10),
        end_time=end or at(11),
        room_id=ids["room"] if room else None,
        procedure_id=ids["procedure"],
        actor="desk-1",
    )


def test_create_appointment_records_creation_event(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)

    appointment = book(db, ids)

    assert appointment.id > 0
    assert appointment.status == "scheduled"
    assert appointment.created_by == "desk-1"
    events = list_appointment_status_events(db, ids["tenant"], appointment.id)
    assert [(e.from_status, e.to_status) for e in events] == [(None, "scheduled")]


def test_overlapping_professional_booking_is_rejected(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    first = book(db, ids)

    with pytest.raises(ProfessionalConflict) as exc:
        book(db, ids, start=at(10, 30), end=at(11, 30))

    assert exc.value.appointment_id == first.id
    assert db.query(Appointment).count() == 1


def test_concurrent_bookings_for_one_slot_leave_a_single_row(tmp_path):
    db_path = tmp_path / "test_clinicos_concurrent.db"
    engine = create_engine(
        f"sqlite:///{db_path}", connect_args={"check_same_thread": False, "timeout": 30}
    )
    session_factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    with session_factory() as db:
        ids = seed(db)

    writers = 8
    barrier = threading.Barrier(writers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def attempt():
        db = session_factory()
        try:
            barrier.wait()
            book(db, ids)
            outcome = "booked"
        except ProfessionalConflict:
            outcome = "conflict"
        except Exception as exc:
            outcome = type(exc).__name__
        finally:
            db.close()
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(writers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(outcomes) == ["booked"] + ["conflict"] * (writers - 1)
    with session_factory() as db:
        assert db.query(Appointment).count() == 1


def test_overlapping_room_booking_is_rejected(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    first = book(db, ids, room=True)

    with pytest.raises(RoomConflict) as exc:
        book(db, ids, professional="bruno", start=at(10, 15), end=at(10, 45), room=True)

    assert exc.value.appointment_id == first.id


def test_back_to_back_bookings_are_allowed(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    book(db, ids, room=True)

    second = book(db, ids, start=at(11), end=at(12), room=True)

    assert second.start_time == at(11)


def test_invalid_time_range_is_rejected(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)

    with pytest.raises(ValidationError):
        book(db, ids, start=at(11), end=at(10))


def test_unknown_patient_is_not_found(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    ids["patient"] = 9999

    with pytest.raises(NotFound):
        book(db, ids)


def test_cancelled_appointment_frees_its_slot(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    first = book(db, ids)

    change_appointment_status(
        db, ids["tenant"], first.id, "cancelled", actor="desk-1", reason="patient asked"
    )
    second = book(db, ids)

    assert second.id != first.id
    assert check_conflict(db, ids["tenant"], ids["ana"], None, at(10), at(11)) is not None


def test_no_show_frees_its_slot(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    first = book(db, ids)

    change_appointment_status(db, ids["tenant"], first.id, "no_show", actor="desk-1", now=NOW)

    assert check_conflict(db, ids["tenant"], ids["ana"], None, at(10), at(11)) is None


def test_reschedule_does_not_conflict_with_itself(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    appointment = book(db, ids)

    moved = update_appointment(
        db, ids["tenant"], appointment.id, {"start_time": at(10, 30), "end_time": at(11, 30)}
    )

    assert moved.start_time == at(10, 30)
    assert moved.end_time == at(11, 30)


def test_reschedule_into_taken_slot_is_rejected(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    book(db, ids)
    other = book(db, ids, start=at(14), end=at(15))

    with pytest.raises(ProfessionalConflict):
        update_appointment(
            db, ids["tenant"], other.id, {"start_time": at(10, 30), "end_time": at(11, 30)}
        )

    db.refresh(other)
    assert other.start_time == at(14)


def test_completed_appointment_only_accepts_note_changes(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    appointment = book(db, ids)
    change_appointment_status(db, ids["tenant"], appointment.id, "completed", now=NOW)

    with pytest.raises(InvalidMutation):
        update_appointment(db, ids["tenant"], appointment.id, {"start_time": at(12), "end_time": at(13)})

    updated = update_appointment(db, ids["tenant"], appointment.id, {"notes": "follow up in 6 months"})
    assert updated.notes == "follow up in 6 months"


def test_update_rejects_read_only_fields(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    appointment = book(db, ids)

    with pytest.raises(ValidationError):
        update_appointment(db, ids["tenant"], appointment.id, {"status": "completed"})


def test_status_history_is_recorded(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    appointment = book(db, ids)

    change_appointment_status(db, ids["tenant"], appointment.id, "confirmed", actor="bot", via="sms")
    change_appointment_status(db, ids["tenant"], appointment.id, "waiting", actor="desk-1")

    events = list_appointment_status_events(db, ids["tenant"], appointment.id)
    assert [(e.from_status, e.to_status) for e in events] == [
        (None, "scheduled"),
        ("scheduled", "confirmed"),
        ("confirmed", "waiting"),
    ]
    db.refresh(appointment)
    assert appointment.confirmed_via == "sms"


def test_terminal_status_change_is_rejected(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    appointment = book(db, ids)
    change_appointment_status(db, ids["tenant"], appointment.id, "completed", now=NOW)

    with pytest.raises(InvalidTransition):
        change_appointment_status(db, ids["tenant"], appointment.id, "scheduled")


def test_available_slots_follow_bookings(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)

    free_day = list(find_available_slots(db, ids["tenant"], ids["ana"], DAY))
    assert len(free_day) == 20
    assert free_day[0] == at(8)
    assert free_day[-1] == at(17, 30)

    book(db, ids, start=at(9), end=at(10))
    slots = find_available_slots(db, ids["tenant"], ids["ana"], DAY)
    first = list(slots)
    assert list(slots) == first
    assert len(first) == 18
    assert at(9) not in first and at(9, 30) not in first


def test_fully_booked_day_has_no_slots(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    book(db, ids, start=at(8), end=at(18))

    assert list(find_available_slots(db, ids["tenant"], ids["ana"], DAY)) == []
    assert len(list(find_available_slots(db, ids["tenant"], ids["bruno"], DAY))) == 20


def test_schedule_policy_changes_slot_window(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    set_schedule_policy(
        db, ids["tenant"], SchedulePolicy(work_start_hour=9, work_end_hour=12, default_slot_minutes=60)
    )

    assert get_schedule_policy(db, ids["tenant"]).working_hours_per_day == 3
    assert list(find_available_slots(db, ids["tenant"], ids["ana"], DAY)) == [at(9), at(10), at(11)]


def test_available_slots_validate_input(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)

    with pytest.raises(ValidationError):
        find_available_slots(db, ids["tenant"], ids["ana"], DAY, slot_duration_minutes=0)
    with pytest.raises(NotFound):
        find_available_slots(db, ids["tenant"], 9999, DAY)


def test_tenants_do_not_share_calendars(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    appointment = book(db, ids)
    other = seed(db, slug="clinic-b")

    with pytest.raises(NotFound):
        update_appointment(db, other["tenant"], appointment.id, {"notes": "x"})
    assert book(db, other).start_time == at(10)


def test_risk_indicators_use_no_show_history(tmp_path):
    db = make_session(tmp_path)
    ids = seed(db)
    missed = book(db, ids, start=at(9), end=at(10))
    change_appointment_status(db, ids["tenant"], missed.id, "no_show", now=NOW)
    upcoming = book(db, ids, start=at(10, day=12), end=at(11, day=12))

    indicators = appointment_risk_indicators(db, ids["tenant"], upcoming.id, now=NOW)

    assert indicators.no_show_risk is True
    # 400 against an average active price of 250.
    assert indicators.is_premium is True
    assert indicators.is_confirmed is False
