"""Field Travel Expense - GPS trip tracking, expense calculation and claim approval."""

from .claims import ClaimApprovalEngine
from .directory import Employee, InMemoryDirectory
from .distance import (
    DistanceAccumulator,
    SampleDecision,
    evaluate_candidate,
    haversine_m,
    recompute_distance,
)
from .exceptions import (
    AlreadyActiveError,
    ClaimError,
    ClaimFinalizedError,
    ClaimNotFoundError,
    FieldTravelError,
    InvalidApprovalChainError,
    PersistenceError,
    PositioningError,
    PositioningErrorKind,
    RemarksRequiredError,
    SamplerAlreadyRunningError,
    SessionNotActiveError,
    SessionNotFoundError,
    StaleClaimStateError,
    StoreUnavailableError,
    TripSessionError,
    UnauthorizedApproverError,
    WriteConflictError,
)
from .expense import ClaimLimitCheck, ExpenseCalculator, FuelEntitlement
from .export import ExportService
from .location import AcquiredSample, LocationSampler, ReplaySource, SampleQuality
from .logging_config import LogContext, configure_logging, get_logger
from .models import (
    ApprovalAction,
    ApprovalChain,
    ApprovalHistoryEntry,
    ApprovalLevel,
    ApprovalStep,
    Claim,
    ClaimStatus,
    ClaimType,
    DealerVisit,
    ExpenseBreakdown,
    Location,
    LocationSample,
    TripSession,
    TripStatus,
)
from .rates import GradePolicy, LocationType, PolicyTable, RateEntry, RateTable, VehicleType
from .reporting import MonthlyTravelSummary, ReportingService
from .settings import TrackingSettings
from .store import InMemoryStore, SqliteStore
from .trips import TripSessionService

__version__ = "0.1.0"

__all__ = [
    "AcquiredSample",
    "AlreadyActiveError",
    "ApprovalAction",
    "ApprovalChain",
    "ApprovalHistoryEntry",
    "ApprovalLevel",
    "ApprovalStep",
    "Claim",
    "ClaimApprovalEngine",
    "ClaimError",
    "ClaimFinalizedError",
    "ClaimLimitCheck",
    "ClaimNotFoundError",
    "ClaimStatus",
    "ClaimType",
    "DealerVisit",
    "DistanceAccumulator",
    "Employee",
    "ExpenseBreakdown",
    "ExpenseCalculator",
    "ExportService",
    "FieldTravelError",
    "FuelEntitlement",
    "GradePolicy",
    "InMemoryDirectory",
    "InMemoryStore",
    "InvalidApprovalChainError",
    "Location",
    "LocationSample",
    "LocationSampler",
    "LocationType",
    "LogContext",
    "MonthlyTravelSummary",
    "PersistenceError",
    "PolicyTable",
    "PositioningError",
    "PositioningErrorKind",
    "RateEntry",
    "RateTable",
    "RemarksRequiredError",
    "ReplaySource",
    "ReportingService",
    "SampleDecision",
    "SampleQuality",
    "SamplerAlreadyRunningError",
    "SessionNotActiveError",
    "SessionNotFoundError",
    "SqliteStore",
    "StaleClaimStateError",
    "StoreUnavailableError",
    "TrackingSettings",
    "TripSession",
    "TripSessionError",
    "TripSessionService",
    "TripStatus",
    "UnauthorizedApproverError",
    "VehicleType",
    "WriteConflictError",
    "__version__",
    "configure_logging",
    "evaluate_candidate",
    "get_logger",
    "haversine_m",
    "recompute_distance",
]
