"""seriesflow: Durable visitor lifecycle series engine."""

from .contracts import (
    EnrollmentResult,
    ProgressStatus,
    Series,
    SeriesProgress,
    SeriesStatus,
    TriggerContext,
    VisitorSignal,
)
from .engine import SeriesEngine
from .persistence import get_repository
from .registry import REGISTRY, register_action
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "EnrollmentResult",
    "ProgressStatus",
    "Series",
    "SeriesProgress",
    "SeriesStatus",
    "SeriesEngine",
    "TriggerContext",
    "VisitorSignal",
    "get_repository",
    "get_transport",
    "REGISTRY",
    "register_action",
]
