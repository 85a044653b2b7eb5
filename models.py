from typing import Optional
from sqlalchemy import Index, UniqueConstraint, text
from sqlmodel import SQLModel, Field
from datetime import date, datetime, time


class Role:
    DRIVER = "DRIVER"
    RIDER = "RIDER"


class OptInStatus:
    PENDING_MATCH = "PENDING_MATCH"
    MATCHED = "MATCHED"
    CANCELLED = "CANCELLED"


class RideStatus:
    PROPOSED = "PROPOSED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ParticipantStatus:
    PENDING_ACCEPTANCE = "PENDING_ACCEPTANCE"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    full_name: str
    email: Optional[str] = Field(default=None, index=True)
    default_role: str = Role.RIDER
    vehicle_capacity: Optional[int] = None  # max passengers, drivers only
    home_lat: Optional[float] = None
    home_lng: Optional[float] = None


class PickupLocation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str
    description: str = ""
    lat: float
    lng: float
    is_default: bool = False


class OptIn(SQLModel, table=True):
    # at most one live opt-in per user and day
    __table_args__ = (
        Index("uq_optin_user_date_active", "user_id", "commute_date", unique=True,
              sqlite_where=text("status != 'CANCELLED'"), postgresql_where=text("status != 'CANCELLED'")),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    role: str = Role.RIDER
    commute_date: date = Field(index=True)
    time_window_start: time
    time_window_end: time
    pickup_location_id: int = Field(foreign_key="pickuplocation.id")
    status: str = Field(default=OptInStatus.PENDING_MATCH, index=True)
    is_automatic: bool = False
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class ScheduledOptIn(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    day_of_week: str = Field(index=True)  # MONDAY .. SUNDAY
    start_time: time
    pickup_location_id: int = Field(foreign_key="pickuplocation.id")
    is_active: bool = True


class Ride(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    commute_date: date = Field(index=True)
    driver_user_id: int = Field(foreign_key="user.id", index=True)
    status: str = Field(default=RideStatus.PROPOSED, index=True)
    pickup_order: str = ""  # comma-separated pickup location ids
    estimated_total_time: int = 0  # minutes
    estimated_distance_km: float = 0.0
    estimated_cost_per_person: float = 0.0
    confidence: float = 0.0  # 0-100
    reasoning: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)


class RideParticipant(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("ride_id", "user_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    opt_in_id: int = Field(foreign_key="optin.id", index=True)
    pickup_location_id: int = Field(foreign_key="pickuplocation.id")
    role: str = Role.RIDER
    status: str = Field(default=ParticipantStatus.PENDING_ACCEPTANCE)
    confirmation_deadline: Optional[datetime] = None
    # equals opt_in_id while the participation is live, NULL once released;
    # the unique index is what stops two rides claiming one opt-in
    active_opt_in_id: Optional[int] = Field(default=None, unique=True)
