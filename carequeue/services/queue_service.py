# carequeue/services/queue_service.py
# Token queue / appointment state machine. Every trigger runs the access
# gate before it writes anything, validates the transition, and lands its
# writes in one storage transaction. Broadcasting is left to the caller.
from datetime import date, datetime
from typing import Callable, List, Optional, Tuple

import structlog

from .. import schemas
from ..access import Operation, authorize, authorize_role
from ..exceptions import CareQueueError, NotFound, ValidationFailure
from ..models import AppointmentStatus, TokenStatus, UserRole
from ..storage import Entity, Storage
from ..transitions import (
    ACTIVE_TOKEN_STATUSES,
    CANCELLABLE_APPOINTMENT_STATUSES,
    TOKEN_FLOW,
    effective_appointment_status,
    is_forward_step,
)

logger = structlog.get_logger(__name__)

TOKEN_SUFFIX_SPACE = 10000
FALLBACK_DEPARTMENT_CODE = "TKN"


class QueueService:
    def __init__(self, storage: Storage, clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or storage.clock

    # ==================== TOKEN NUMBERS ====================

    @staticmethod
    def department_code(name: str) -> str:
        """First three letters of the department name, uppercased ("Cardiology" -> "CAR")."""
        letters = "".join(ch for ch in name if ch.isalpha())
        return letters[:3].upper() or FALLBACK_DEPARTMENT_CODE

    def _numbers_taken(self, department_id: int, day: date) -> set:
        return {
            token.token_number
            for token in self.storage.list(Entity.tokens, department_id=department_id)
            if token.created_at.date() == day
        }

    def generate_token_number(self, department: schemas.Department) -> str:
        """
        `{CODE}-{NNNN}` where NNNN is the low four digits of the current epoch
        milliseconds. On a clash within the department for the day, the suffix
        is probed forward (wrapping at 10000) until a free one is found.
        """
        now = self.clock()
        code = self.department_code(department.name)
        taken = self._numbers_taken(department.id, now.date())
        suffix = int(now.timestamp() * 1000) % TOKEN_SUFFIX_SPACE
        for _ in range(TOKEN_SUFFIX_SPACE):
            candidate = f"{code}-{suffix:04d}"
            if candidate not in taken:
                return candidate
            suffix = (suffix + 1) % TOKEN_SUFFIX_SPACE
        raise ValidationFailure(f"No token numbers left today for department {department.name}")

    # ==================== BOOKING ====================

    def book_appointment(self, actor: schemas.User, request: schemas.AppointmentCreate) -> schemas.Appointment:
        """Create a scheduled appointment together with its waiting token."""
        authorize_role(actor, Operation.BOOK_APPOINTMENT)
        patient = self.storage.get(Entity.patients, request.patient_id)
        authorize(actor, Operation.BOOK_APPOINTMENT, owner_user_id=patient.user_id if patient else None)
        if patient is None:
            raise NotFound(f"Patient {request.patient_id} not found")

        department = self.storage.require(Entity.departments, request.department_id)
        if not department.is_active:
            raise ValidationFailure(f"Department {department.name} is not accepting appointments")
        doctor = self.storage.require(Entity.doctors, request.doctor_id)
        if doctor.department_id != department.id:
            raise ValidationFailure(f"Doctor {doctor.id} does not belong to department {department.name}")

        # a blank supplied number counts as none
        supplied = (request.token_number or "").strip()
        with self.storage.transaction():
            if not supplied:
                token_number = self.generate_token_number(department)
            elif supplied in self._numbers_taken(department.id, self.clock().date()):
                raise ValidationFailure(f"Token number {supplied} is already in use today")
            else:
                token_number = supplied

            appointment = self.storage.create(Entity.appointments, {
                "patient_id": patient.id,
                "doctor_id": doctor.id,
                "department_id": department.id,
                "appointment_date": request.appointment_date,
                "token_number": token_number,
                "status": AppointmentStatus.scheduled,
                "notes": request.notes,
            })
            token = self.storage.create(Entity.tokens, {
                "appointment_id": appointment.id,
                "department_id": department.id,
                "token_number": token_number,
                "status": TokenStatus.waiting,
            })

        logger.info("appointment_booked", appointment_id=appointment.id, token_id=token.id,
                    token_number=token_number, doctor_id=doctor.id, actor_id=actor.id)
        return appointment

    # ==================== TOKEN TRIGGERS ====================

    def _load(self, token_id: int) -> Tuple[schemas.Token, schemas.Appointment]:
        token = self.storage.require(Entity.tokens, token_id)
        appointment = self.storage.get(Entity.appointments, token.appointment_id)
        if appointment is None:
            raise NotFound(f"Appointment {token.appointment_id} for token {token.token_number} not found")
        return token, appointment

    def _doctor_user_id(self, appointment: schemas.Appointment) -> Optional[int]:
        doctor = self.storage.get(Entity.doctors, appointment.doctor_id)
        return doctor.user_id if doctor else None

    @staticmethod
    def _expect(token: schemas.Token, appointment: schemas.Appointment, target: TokenStatus, action: str):
        if appointment.status == AppointmentStatus.cancelled:
            raise ValidationFailure(f"Cannot {action} token {token.token_number}: appointment is cancelled")
        if not is_forward_step(token.status, target):
            raise ValidationFailure(
                f"Cannot {action} token {token.token_number}: status is {token.status.value}, "
                f"it cannot move to {target.value}"
            )

    def call_token(self, actor: schemas.User, token_id: int,
                   called_at: Optional[datetime] = None) -> schemas.Token:
        authorize(actor, Operation.CALL_TOKEN)
        # check and write under one transaction so a concurrent trigger sees the result
        with self.storage.transaction():
            token, appointment = self._load(token_id)
            self._expect(token, appointment, TokenStatus.called, "call")
            token = self.storage.update(Entity.tokens, token.id, {
                "status": TokenStatus.called,
                "called_at": called_at or self.clock(),
            })
        logger.info("token_called", token_id=token.id, token_number=token.token_number,
                    appointment_id=appointment.id, actor_id=actor.id)
        return token

    def call_next_patient(self, actor: schemas.User, doctor_id: Optional[int] = None,
                          day: Optional[date] = None) -> schemas.Token:
        """Call the earliest-created waiting token of the doctor's queue."""
        authorize(actor, Operation.CALL_TOKEN)
        if doctor_id is None:
            doctor = self.storage.get_doctor_by_user_id(actor.id) if actor.role == UserRole.doctor else None
            if doctor is None:
                raise ValidationFailure("doctor_id is required")
            doctor_id = doctor.id
        else:
            self.storage.require(Entity.doctors, doctor_id)

        with self.storage.transaction():
            for entry in self.active_queue(doctor_id=doctor_id, day=day):
                if entry.token.status == TokenStatus.waiting:
                    return self.call_token(actor, entry.token.id)
        raise NotFound(f"No waiting patients for doctor {doctor_id}")

    def start_consultation(self, actor: schemas.User, token_id: int) -> schemas.QueueTransition:
        """called -> serving, with the appointment moving to in-progress in the same transaction."""
        authorize_role(actor, Operation.START_CONSULTATION)
        with self.storage.transaction():
            token, appointment = self._load(token_id)
            authorize(actor, Operation.START_CONSULTATION, owner_user_id=self._doctor_user_id(appointment))
            self._expect(token, appointment, TokenStatus.serving, "start")
            token = self.storage.update(Entity.tokens, token.id, {"status": TokenStatus.serving})
            appointment = self.storage.update(Entity.appointments, appointment.id,
                                              {"status": AppointmentStatus.in_progress})
        logger.info("consultation_started", token_id=token.id, token_number=token.token_number,
                    appointment_id=appointment.id, actor_id=actor.id)
        return schemas.QueueTransition(token=token, appointment=appointment)

    def complete_consultation(self, actor: schemas.User, token_id: int,
                              completed_at: Optional[datetime] = None) -> schemas.QueueTransition:
        """serving -> completed for both the token and its appointment."""
        authorize_role(actor, Operation.COMPLETE_CONSULTATION)
        with self.storage.transaction():
            token, appointment = self._load(token_id)
            authorize(actor, Operation.COMPLETE_CONSULTATION, owner_user_id=self._doctor_user_id(appointment))
            self._expect(token, appointment, TokenStatus.completed, "complete")
            token = self.storage.update(Entity.tokens, token.id, {
                "status": TokenStatus.completed,
                "completed_at": completed_at or self.clock(),
            })
            appointment = self.storage.update(Entity.appointments, appointment.id,
                                              {"status": AppointmentStatus.completed})
        logger.info("consultation_completed", token_id=token.id, token_number=token.token_number,
                    appointment_id=appointment.id, actor_id=actor.id)
        return schemas.QueueTransition(token=token, appointment=appointment)

    def update_token(self, actor: schemas.User, token_id: int, update: schemas.TokenUpdate) -> schemas.Token:
        """Generic status update, accepted only as the next step of the token flow."""
        if update.status == TokenStatus.called:
            return self.call_token(actor, token_id, called_at=update.called_at)
        if update.status == TokenStatus.serving:
            return self.start_consultation(actor, token_id).token
        if update.status == TokenStatus.completed:
            return self.complete_consultation(actor, token_id, completed_at=update.completed_at).token
        raise ValidationFailure(f"Tokens cannot move back to {TOKEN_FLOW[0].value}")

    # ==================== APPOINTMENT TRIGGERS ====================

    def _patient_user_id(self, appointment: schemas.Appointment) -> Optional[int]:
        patient = self.storage.get(Entity.patients, appointment.patient_id)
        return patient.user_id if patient else None

    def cancel_appointment(self, actor: schemas.User, appointment_id: int) -> schemas.Appointment:
        authorize_role(actor, Operation.CANCEL_APPOINTMENT)
        with self.storage.transaction():
            appointment = self.storage.require(Entity.appointments, appointment_id)
            authorize(actor, Operation.CANCEL_APPOINTMENT, owner_user_id=self._patient_user_id(appointment))
            if appointment.status not in CANCELLABLE_APPOINTMENT_STATUSES:
                raise ValidationFailure(f"Appointment {appointment_id} is already {appointment.status.value}")
            appointment = self.storage.update(Entity.appointments, appointment_id,
                                              {"status": AppointmentStatus.cancelled})
        logger.info("appointment_cancelled", appointment_id=appointment_id, actor_id=actor.id)
        return appointment

    def update_appointment(self, actor: schemas.User, appointment_id: int,
                           update: schemas.AppointmentUpdate) -> schemas.Appointment:
        """
        Edit notes or the scheduled date. The only status change accepted here
        is cancellation; every other status follows the token triggers.
        """
        authorize_role(actor, Operation.UPDATE_APPOINTMENT)
        fields = update.model_dump(exclude_unset=True, exclude={"status"})
        with self.storage.transaction():
            appointment = self.storage.require(Entity.appointments, appointment_id)
            authorize(actor, Operation.UPDATE_APPOINTMENT, owner_user_id=self._patient_user_id(appointment))

            cancel = update.status is not None and update.status != appointment.status
            if cancel and update.status != AppointmentStatus.cancelled:
                raise ValidationFailure(
                    "Appointment status changes through the queue: call, start and complete the token instead"
                )
            if "appointment_date" in fields and appointment.status != AppointmentStatus.scheduled:
                raise ValidationFailure(f"Appointment {appointment_id} is {appointment.status.value} "
                                        "and can no longer be rescheduled")
            if cancel:
                appointment = self.cancel_appointment(actor, appointment_id)
            if fields:
                appointment = self.storage.update(Entity.appointments, appointment_id, fields)
        logger.info("appointment_updated", appointment_id=appointment_id, fields=sorted(fields),
                    actor_id=actor.id)
        return appointment

    # ==================== QUEUE READS ====================

    def active_queue(self, doctor_id: Optional[int] = None, department_id: Optional[int] = None,
                     day: Optional[date] = None) -> List[schemas.QueueEntry]:
        """
        Tokens in waiting/called/serving for appointments on `day` (today by
        default), oldest first. Tokens of cancelled appointments are left out.
        """
        day = day or self.clock().date()
        filters = {"department_id": department_id} if department_id is not None else {}
        candidates = []
        for token in self.storage.list(Entity.tokens, **filters):
            if token.status not in ACTIVE_TOKEN_STATUSES:
                continue
            appointment = self.storage.get(Entity.appointments, token.appointment_id)
            if appointment is None:
                logger.warning("queue_token_orphaned", token_id=token.id, appointment_id=token.appointment_id)
                continue
            if appointment.status == AppointmentStatus.cancelled:
                continue
            if doctor_id is not None and appointment.doctor_id != doctor_id:
                continue
            if appointment.appointment_date.date() != day:
                continue
            candidates.append((token, appointment))

        candidates.sort(key=lambda pair: (pair[0].created_at, pair[0].id))
        return [
            schemas.QueueEntry(
                position=position,
                token=token,
                appointment=appointment,
                patient_name=self._patient_name(appointment),
                effective_status=effective_appointment_status(appointment.status, token.status),
            )
            for position, (token, appointment) in enumerate(candidates, start=1)
        ]

    def _patient_name(self, appointment: schemas.Appointment) -> str:
        patient = self.storage.get(Entity.patients, appointment.patient_id)
        user = self.storage.get(Entity.users, patient.user_id) if patient else None
        return user.full_name if user else f"Patient {appointment.patient_id}"

    # ==================== CONSISTENCY ====================

    def find_stale_appointments(self) -> List[schemas.StaleAppointment]:
        """Appointments whose stored status lags behind what their token implies."""
        stale = []
        for token in self.storage.list(Entity.tokens):
            appointment = self.storage.get(Entity.appointments, token.appointment_id)
            if appointment is None:
                continue
            effective = effective_appointment_status(appointment.status, token.status)
            if effective != appointment.status:
                stale.append(schemas.StaleAppointment(
                    appointment_id=appointment.id,
                    token_id=token.id,
                    token_status=token.status,
                    stored_status=appointment.status,
                    effective_status=effective,
                ))
        return stale

    def consistency_report(self) -> schemas.QueueConsistencyReport:
        return schemas.QueueConsistencyReport(checked_at=self.clock(),
                                              stale_appointments=self.find_stale_appointments())

    def repair_stale_appointments(self, actor: schemas.User) -> schemas.QueueRepairReport:
        """Move every lagging appointment forward to the status its token implies."""
        authorize(actor, Operation.REPAIR_QUEUE)
        report = schemas.QueueRepairReport(checked_at=self.clock())
        for item in self.find_stale_appointments():
            try:
                with self.storage.transaction():
                    # re-read: a trigger may have moved either record since the scan
                    appointment = self.storage.require(Entity.appointments, item.appointment_id)
                    token = self.storage.require(Entity.tokens, item.token_id)
                    if effective_appointment_status(appointment.status, token.status) != item.effective_status \
                            or appointment.status == item.effective_status:
                        logger.info("appointment_repair_skipped", appointment_id=item.appointment_id,
                                    status=appointment.status.value)
                        continue
                    self.storage.update(Entity.appointments, item.appointment_id, {"status": item.effective_status})
            except CareQueueError as e:
                report.errors.append(f"Appointment {item.appointment_id}: {e.message}")
                logger.error("queue_repair_failed", appointment_id=item.appointment_id, error=e.message)
                continue
            report.repaired.append(item)
            logger.info("appointment_repaired", appointment_id=item.appointment_id,
                        from_status=item.stored_status.value, to_status=item.effective_status.value)
        return report
