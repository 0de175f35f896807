# backend/booking_engine/services/targets.py
"""
What a booking is made against: a single service or a package of services.
"""

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class ServiceTarget:
    service_id: int


@dataclass(frozen=True)
class PackageTarget:
    package_id: int
    selected_optional_ids: tuple[int, ...] = field(default_factory=tuple)


BookingTarget = Union[ServiceTarget, PackageTarget]


def target_from_ids(
    service_id: int | None,
    package_id: int | None,
    selected_optional_ids=None,
) -> BookingTarget:
    """Build a target from request fields. Exactly one id must be given."""
    if (service_id is None) == (package_id is None):
        raise ValueError("Exactly one of service_id / service_package_id must be set")
    if package_id is not None:
        return PackageTarget(package_id, tuple(selected_optional_ids or ()))
    return ServiceTarget(service_id)
