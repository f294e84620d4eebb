class ClinicError(ValueError):
    code = "clinic_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ClinicError):
    code = "validation_error"


class NotFound(ClinicError, LookupError):
    code = "not_found"

    def __init__(self, entity: str, entity_id=None):
        label = entity if entity_id is None else f"{entity} #{entity_id}"
        super().__init__(f"{label} not found")
        self.entity = entity
        self.entity_id = entity_id


class ScheduleConflict(ClinicError):
    code = "schedule_conflict"

    def __init__(self, message: str, appointment_id: int | None = None):
        super().__init__(message)
        self.appointment_id = appointment_id


class ProfessionalConflict(ScheduleConflict):
    code = "professional_conflict"


class RoomConflict(ScheduleConflict):
    code = "room_conflict"


class InvalidTransition(ClinicError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str, reason: str | None = None):
        message = f"Invalid appointment status transition: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.current = current
        self.target = target


class InvalidMutation(ClinicError):
    code = "invalid_mutation"

    def __init__(self, status: str, fields):
        names = ", ".join(sorted(fields))
        super().__init__(f"{status} appointments can only have notes modified (got: {names})")
        self.status = status
        self.fields = sorted(fields)
