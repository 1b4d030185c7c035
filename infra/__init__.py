"""Infrastructure modules for quant-arena"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .broadcast import Broadcaster  # noqa: F401
from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .state_store import StateStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"Broadcaster",
	"MetricsRecorder",
	"CycleStats",
	"HealthServer",
	"StateStore",
]
