"""API routers for Safee Core."""

from . import approvals
from . import encryption
from . import health
