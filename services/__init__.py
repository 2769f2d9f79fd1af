# services/__init__.py

# This file makes the 'services' directory a Python package and
# exposes its modules for import.

from . import stage_graph
from . import task_tracker
from . import notification_service
from . import order_ingest_service
from . import fulfillment_service
