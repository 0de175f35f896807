# backend/booking_engine/routers/bookings.py
# API.md: DELETE = 405 (cancellation is a status, bookings are never removed)

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ..schemas.bookings import (
    BookingCancel,
    BookingCreate,
    BookingRead,
    BookingReschedule,
    BookingUpdate,
    ConsultationComplete,
)
from ..services.booking_lifecycle import BookingStateMachine
from .deps import get_state_machine

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.get("/", response_model=list[BookingRead])
def list_bookings(
    user_id: Optional[int] = None,
    status: Optional[str] = None,
    machine: BookingStateMachine = Depends(get_state_machine),
):
    return machine.list_bookings(user_id=user_id, status=status)


@router.get("/{id}", response_model=BookingRead)
def get_booking(id: int, machine: BookingStateMachine = Depends(get_state_machine)):
    return machine.get(id)


@router.post("/", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def create_booking(
    data: BookingCreate,
    machine: BookingStateMachine = Depends(get_state_machine),
):
    return machine.create(data)


@router.patch("/{id}", response_model=BookingRead)
def update_booking(
    id: int,
    data: BookingUpdate,
    machine: BookingStateMachine = Depends(get_state_machine),
):
    return machine.update(id, data)


@router.post("/{id}/reschedule", response_model=BookingRead)
def reschedule_booking(
    id: int,
    data: BookingReschedule,
    machine: BookingStateMachine = Depends(get_state_machine),
):
    return machine.reschedule(id, data)


@router.post("/{id}/confirm", response_model=BookingRead)
def confirm_booking(id: int, machine: BookingStateMachine = Depends(get_state_machine)):
    return machine.confirm(id)


@router.post("/{id}/complete", response_model=BookingRead)
def complete_booking(id: int, machine: BookingStateMachine = Depends(get_state_machine)):
    return machine.complete(id)


@router.post("/{id}/cancel", response_model=BookingRead)
def cancel_booking(
    id: int,
    data: BookingCancel,
    machine: BookingStateMachine = Depends(get_state_machine),
):
    return machine.cancel(id, reason=data.reason, notify_client=data.notify_client)


@router.post("/{id}/consultation", response_model=BookingRead)
def complete_consultation(
    id: int,
    data: ConsultationComplete,
    machine: BookingStateMachine = Depends(get_state_machine),
):
    return machine.complete_consultation(id, data)


@router.delete("/{id}")
def delete_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )
