# Import all handlers so they register themselves.
from . import daily_score  # noqa: F401
from . import health_export  # noqa: F401
from . import sleep_log  # noqa: F401
from . import blood_work  # noqa: F401
from . import dedup_maintenance  # noqa: F401
