"""Infrastructure modules for memetrader"""

from .metrics import MetricsRecorder  # noqa: F401
from .position_store import PositionStore  # noqa: F401
from .scheduler import PeriodicTask, Scheduler  # noqa: F401

__all__ = [
	"MetricsRecorder",
	"PositionStore",
	"PeriodicTask",
	"Scheduler",
]
