"""Core infrastructure layer: settings, database, errors and tasks.

Exports configuration settings to simplify import paths inside tests
(e.g. `from lms_billing.core import settings`).
"""

from .config import settings  # noqa: F401
