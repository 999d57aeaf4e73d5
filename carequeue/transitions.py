# carequeue/transitions.py
# Status tables for tokens and appointments. Pure data and functions; the
# queue service enforces them and the store uses them to annotate reads.
from .models import TokenStatus, AppointmentStatus

TOKEN_FLOW = (
    TokenStatus.waiting,
    TokenStatus.called,
    TokenStatus.serving,
    TokenStatus.completed,
)
TOKEN_RANK = {status: rank for rank, status in enumerate(TOKEN_FLOW)}

ACTIVE_TOKEN_STATUSES = frozenset({TokenStatus.waiting, TokenStatus.called, TokenStatus.serving})

APPOINTMENT_RANK = {
    AppointmentStatus.scheduled: 0,
    AppointmentStatus.in_progress: 1,
    AppointmentStatus.completed: 2,
}

# The appointment status each token status implies once its coupled write lands.
IMPLIED_APPOINTMENT_STATUS = {
    TokenStatus.waiting: AppointmentStatus.scheduled,
    TokenStatus.called: AppointmentStatus.scheduled,
    TokenStatus.serving: AppointmentStatus.in_progress,
    TokenStatus.completed: AppointmentStatus.completed,
}

CANCELLABLE_APPOINTMENT_STATUSES = frozenset({AppointmentStatus.scheduled, AppointmentStatus.in_progress})


def is_forward_step(current: TokenStatus, target: TokenStatus) -> bool:
    """True when target is exactly one step after current in the token flow."""
    return TOKEN_RANK[target] == TOKEN_RANK[current] + 1


def effective_appointment_status(appointment_status: AppointmentStatus,
                                 token_status: TokenStatus) -> AppointmentStatus:
    """
    Status an appointment should be displayed with, given its token.

    If the token is further along the forward chain than the appointment,
    the appointment write is treated as stale and the token wins. Cancelled
    appointments stay cancelled.
    """
    if appointment_status == AppointmentStatus.cancelled:
        return appointment_status
    implied = IMPLIED_APPOINTMENT_STATUS[token_status]
    if APPOINTMENT_RANK[implied] > APPOINTMENT_RANK[appointment_status]:
        return implied
    return appointment_status
