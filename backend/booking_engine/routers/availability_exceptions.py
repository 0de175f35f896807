# backend/booking_engine/routers/availability_exceptions.py
# API.md: POST = upsert per (service, date), DELETE = ALLOWED (hard)

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, status

from ..schemas.availability_exceptions import (
    AvailabilityExceptionCreate,
    AvailabilityExceptionRead,
    AvailabilityExceptionUpdate,
)
from ..services.exception_store import AvailabilityExceptionStore
from .deps import get_exception_store

router = APIRouter(prefix="/availability_exceptions", tags=["availability_exceptions"])


@router.get("/", response_model=list[AvailabilityExceptionRead])
def list_availability_exceptions(
    service_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    store: AvailabilityExceptionStore = Depends(get_exception_store),
):
    return store.list_for_service(service_id, start_date, end_date)


@router.get("/{id}", response_model=AvailabilityExceptionRead)
def get_availability_exception(
    id: int,
    store: AvailabilityExceptionStore = Depends(get_exception_store),
):
    return store.get(id)


@router.post(
    "/", response_model=AvailabilityExceptionRead, status_code=status.HTTP_201_CREATED
)
def upsert_availability_exception(
    data: AvailabilityExceptionCreate,
    store: AvailabilityExceptionStore = Depends(get_exception_store),
):
    return store.upsert(data)


@router.patch("/{id}", response_model=AvailabilityExceptionRead)
def update_availability_exception(
    id: int,
    data: AvailabilityExceptionUpdate,
    store: AvailabilityExceptionStore = Depends(get_exception_store),
):
    return store.update(id, data)


@router.delete("/{id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_availability_exception(
    id: int,
    store: AvailabilityExceptionStore = Depends(get_exception_store),
):
    store.delete(id)
