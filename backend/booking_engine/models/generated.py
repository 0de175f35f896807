from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, Text, UniqueConstraint, text

from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata


class Services(Base):
    __tablename__ = 'services'

    name = Column(Text, nullable=False)
    duration_minutes = Column(Integer, nullable=False, server_default=text('60'))
    id = Column(Integer, primary_key=True)
    description = Column(Text)
    base_price = Column(Integer, nullable=False, server_default=text('0'))  # minor units
    work_schedule = Column(Text, nullable=False, server_default=text("'{}'"))
    daily_capacity = Column(Integer)
    min_advance_booking_hours = Column(Integer, nullable=False, server_default=text('0'))
    max_advance_booking_days = Column(Integer, nullable=False, server_default=text('90'))
    requires_consultation = Column(Integer, nullable=False, server_default=text('0'))
    consultation_duration_minutes = Column(Integer)
    # Gap after each slot; the slot grid steps by duration + buffer
    buffer_minutes = Column(Integer, nullable=False, server_default=text('0'))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    is_bookable = Column(Integer, nullable=False, server_default=text('1'))
    created_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))

    locations = relationship('ServiceLocations', back_populates='service')
    package_items = relationship('ServicePackageItems', back_populates='service')
    availability_exceptions = relationship('AvailabilityExceptions', back_populates='service')
    bookings = relationship('Bookings', back_populates='service')


class ServiceLocations(Base):
    __tablename__ = 'service_locations'

    service_id = Column(ForeignKey('services.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    id = Column(Integer, primary_key=True)
    # Empty = inherit the service schedule
    work_schedule = Column(Text)
    daily_capacity = Column(Integer)
    # Extra notice on top of the service window
    min_advance_booking_hours = Column(Integer)
    is_active = Column(Integer, nullable=False, server_default=text('1'))

    service = relationship('Services', back_populates='locations')


class ServicePackages(Base):
    __tablename__ = 'service_packages'

    name = Column(Text, nullable=False)
    id = Column(Integer, primary_key=True)
    description = Column(Text)
    min_advance_booking_hours = Column(Integer, nullable=False, server_default=text('0'))
    max_advance_booking_days = Column(Integer, nullable=False, server_default=text('90'))
    requires_consultation = Column(Integer, nullable=False, server_default=text('0'))
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    created_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))

    items = relationship(
        'ServicePackageItems',
        back_populates='package',
        order_by='ServicePackageItems.sort_order',
    )
    bookings = relationship('Bookings', back_populates='service_package')


class ServicePackageItems(Base):
    __tablename__ = 'service_package_items'
    __table_args__ = (
        UniqueConstraint('package_id', 'service_id'),
    )

    package_id = Column(ForeignKey('service_packages.id', ondelete='CASCADE'), nullable=False)
    service_id = Column(ForeignKey('services.id', ondelete='CASCADE'), nullable=False)
    id = Column(Integer, primary_key=True)
    sort_order = Column(Integer, nullable=False, server_default=text('0'))
    is_optional = Column(Integer, nullable=False, server_default=text('0'))

    package = relationship('ServicePackages', back_populates='items')
    service = relationship('Services', back_populates='package_items')


class AvailabilityExceptions(Base):
    __tablename__ = 'availability_exceptions'
    __table_args__ = (
        UniqueConstraint('service_id', 'exception_date'),
    )

    service_id = Column(ForeignKey('services.id', ondelete='CASCADE'), nullable=False)
    exception_date = Column(Date, nullable=False)
    exception_type = Column(Text, nullable=False)  # blocked / custom_hours / special_pricing
    id = Column(Integer, primary_key=True)
    location_id = Column(ForeignKey('service_locations.id', ondelete='CASCADE'))
    start_time = Column(Text)  # "HH:MM"
    end_time = Column(Text)
    price_modifier = Column(Integer)
    price_modifier_type = Column(Text)  # fixed / percentage
    reason = Column(Text)
    created_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))
    updated_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))

    service = relationship('Services', back_populates='availability_exceptions')


class CapacityCells(Base):
    __tablename__ = 'capacity_cells'
    __table_args__ = (
        UniqueConstraint('service_id', 'location_id', 'day'),
    )

    service_id = Column(ForeignKey('services.id', ondelete='CASCADE'), nullable=False)
    # 0 = service-wide cell (no location scope)
    location_id = Column(Integer, nullable=False, server_default=text('0'))
    day = Column(Date, nullable=False)
    capacity = Column(Integer, nullable=False)
    consumed = Column(Integer, nullable=False, server_default=text('0'))
    id = Column(Integer, primary_key=True)
    previous_capacity = Column(Integer)
    is_blocked = Column(Integer, nullable=False, server_default=text('0'))
    needs_review = Column(Integer, nullable=False, server_default=text('0'))
    block_reason = Column(Text)
    version = Column(Integer, nullable=False, server_default=text('0'))
    updated_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))


class Bookings(Base):
    __tablename__ = 'bookings'

    reference = Column(Text, nullable=False, unique=True)
    user_id = Column(Integer, nullable=False)
    scheduled_at = Column(DateTime, nullable=False)
    ends_at = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'pending'"))
    id = Column(Integer, primary_key=True)
    service_id = Column(ForeignKey('services.id'))  # nullable for package bookings
    service_package_id = Column(ForeignKey('service_packages.id'))
    location_id = Column(ForeignKey('service_locations.id'))
    client_name = Column(Text, nullable=False)
    client_email = Column(Text, nullable=False)
    client_phone = Column(Text)
    notes = Column(Text)
    special_requirements = Column(Text)
    metadata_json = Column(Text, nullable=False, server_default=text("'{}'"))
    selected_optional_services = Column(Text, nullable=False, server_default=text("'[]'"))
    # JSON list of [service_id, location_id, "YYYY-MM-DD"] held in the ledger
    reserved_cells = Column(Text, nullable=False, server_default=text("'[]'"))
    requires_consultation = Column(Integer, nullable=False, server_default=text('0'))
    consultation_completed_at = Column(DateTime)
    consultation_notes = Column(Text)
    consultation_proceed = Column(Integer)
    recommended_services = Column(Text)
    estimated_duration_minutes = Column(Integer)
    reschedule_count = Column(Integer, nullable=False, server_default=text('0'))
    reschedule_reason = Column(Text)
    cancelled_at = Column(DateTime)
    cancel_reason = Column(Text)
    created_at = Column(Text, nullable=False, server_default=text('CURRENT_TIMESTAMP'))
    updated_at = Column(Text, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    service = relationship('Services', back_populates='bookings')
    service_package = relationship('ServicePackages', back_populates='bookings')


class CalendarIntegrations(Base):
    __tablename__ = 'calendar_integrations'

    user_id = Column(Integer, nullable=False)
    provider = Column(Text, nullable=False, server_default=text("'google'"))
    id = Column(Integer, primary_key=True)
    sync_frequency_minutes = Column(Integer, nullable=False, server_default=text('60'))
    reminder_minutes = Column(Text, nullable=False, server_default=text("'[]'"))
    calendar_color = Column(Text)
    is_active = Column(Integer, nullable=False, server_default=text('1'))
    last_sync_at = Column(DateTime)
    created_at = Column(Text, server_default=text('CURRENT_TIMESTAMP'))
