"""Canonical data-transfer shapes shared by the engine, the scorer backends,
the notification gateway and the HTTP layer."""
import datetime as dt
from datetime import date, time
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RoleName = Literal["DRIVER", "RIDER"]
DetailStatus = Literal["matched", "failed", "skipped"]


class ServiceContext(BaseModel):
    """Explicit capability for privileged, cross-user writes."""
    model_config = ConfigDict(frozen=True)

    actor: str = Field(..., min_length=1)


class Candidate(BaseModel):
    opt_in_id: int
    user_id: int
    user_name: str = ""
    role: RoleName
    commute_date: date
    window_start: time
    window_end: time
    pickup_location_id: int
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    label: str = ""
    vehicle_capacity: Optional[int] = Field(default=None, ge=0)


class ParticipantRef(BaseModel):
    opt_in_id: int
    user_id: int
    role: RoleName
    pickup_location_id: int


class RouteEstimate(BaseModel):
    pickup_order: List[int]
    estimated_total_time: int = Field(..., ge=0)  # minutes
    estimated_distance_km: float = Field(default=0.0, ge=0)
    estimated_cost_per_person: float = Field(..., ge=0)


class ProposedGrouping(BaseModel):
    participants: List[ParticipantRef] = Field(..., min_length=1)
    route: RouteEstimate
    confidence: float = Field(..., ge=0, le=100)
    reasoning: str

    @property
    def opt_in_ids(self) -> List[int]:
        return [p.opt_in_id for p in self.participants]


class Destination(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class ScorerRequest(BaseModel):
    target: Candidate
    candidates: List[Candidate]
    destination: Destination
    min_overlap_minutes: int
    max_pickup_separation_km: float


class ScorerResponse(BaseModel):
    groupings: List[ProposedGrouping]


class MatchOptions(BaseModel):
    dry_run: bool = False
    force_match: bool = False
    budget_seconds: Optional[float] = Field(default=None, gt=0)


class MatchDetail(BaseModel):
    opt_in_id: int
    user_name: str = ""
    status: DetailStatus
    reason: Optional[str] = None


class GroupingReport(BaseModel):
    target_opt_in_id: int
    opt_in_ids: List[int]
    confidence: float
    reasoning: str
    accepted: bool = False


class RideSummary(BaseModel):
    id: Optional[int] = None  # None in dry-run mode
    commute_date: date
    driver_user_id: int
    status: str
    participant_opt_in_ids: List[int]
    participant_user_ids: List[int]
    pickup_order: List[int]
    estimated_total_time: int
    estimated_distance_km: float
    estimated_cost_per_person: float
    confidence: float
    reasoning: str


class RunReport(BaseModel):
    success: bool = True
    date: dt.date
    dry_run: bool = False
    processed: int = 0
    matched: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = []
    details: List[MatchDetail] = []

    def add_detail(self, opt_in_id, user_name, status, reason=None):
        self.details.append(MatchDetail(opt_in_id=opt_in_id, user_name=user_name, status=status, reason=reason))
        if status == "matched":
            self.matched += 1
        elif status == "failed":
            self.failed += 1
        else:
            self.skipped += 1

    def finalize(self):
        self.processed = len(self.details)
        # false only when failures outnumber successes
        self.success = self.failed <= self.matched
        return self


class MatchResult(RunReport):
    groupings: List[GroupingReport] = []
    rides: List[RideSummary] = []
    partial: bool = False
    retryable: bool = False


class RetryResult(RunReport):
    max_retries: int
    cancelled: int = 0


class RideProposedEvent(BaseModel):
    type: Literal["ride_proposed"] = "ride_proposed"
    ride_id: int
    commute_date: date
    participant_user_ids: List[int]


class ExpansionResult(BaseModel):
    success: bool = True
    date: dt.date
    dry_run: bool = False
    total_scheduled: int = 0
    created: int = 0
    skipped: int = 0
    errors: List[str] = []
    opt_in_ids: List[int] = []


class CleanupResult(BaseModel):
    success: bool = True
    dry_run: bool = False
    cutoff: dt.date
    old_rides: int = 0
    expired_opt_ins: int = 0
