"""Precondition checks against the scheduling and patient collaborators."""

from concurrent.futures import Executor
from typing import List, Optional
from uuid import UUID

from .domain import Appointment, AppointmentLookup, BillingRequest, Patient, PatientLookup
from .errors import NotFoundError, ValidationError


def validate_request(request: BillingRequest) -> None:
    """Reject requests that can never produce a valid order.

    Raises:
        ValidationError: On an empty request, a non-positive quantity or a
            repeated appointment id.
    """
    if not request.products and not request.appointment_ids:
        raise ValidationError("At least one product or appointment is required")
    for it in request.products:
        if it.quantity <= 0:
            raise ValidationError(
                f"Quantity for product {it.product_id} must be greater than 0",
                product_id=str(it.product_id),
            )
    if len(set(request.appointment_ids)) != len(request.appointment_ids):
        raise ValidationError("Appointment ids must not repeat")


def find_patient(patients: PatientLookup, patient_id: UUID) -> Patient:
    patient = patients.find_one(patient_id)
    if patient is None:
        raise NotFoundError(f"Patient {patient_id} not found", patient_id=str(patient_id))
    return patient


class AppointmentValidator:
    """Check that appointments exist and belong to the patient.

    Lookups have no ordering dependency on each other, so when an executor
    is given they run concurrently; results keep the request order.
    """

    def __init__(self, appointments: AppointmentLookup, executor: Optional[Executor] = None):
        self.appointments = appointments
        self.executor = executor

    def validate(self, patient_id: UUID, appointment_ids: List[UUID]) -> List[Appointment]:
        """Return the appointments in request order.

        Raises:
            NotFoundError: If any appointment does not exist.
            ValidationError: If an appointment belongs to another patient.
        """
        fetch = self.executor.map if self.executor else map
        found = list(fetch(self.appointments.find_one, appointment_ids))

        for aid, appt in zip(appointment_ids, found):
            if appt is None:
                raise NotFoundError(f"Appointment {aid} not found", appointment_id=str(aid))
            if appt.patient_id != patient_id:
                raise ValidationError(
                    f"Appointment {aid} does not belong to patient {patient_id}",
                    appointment_id=str(aid),
                )
        return found
