from __future__ import annotations

from app.models.job import BackgroundJob  # noqa: F401
from app.models.bookmark import Bookmark  # noqa: F401
from app.models.application import ApplicationContact, Interview, JobApplication, User  # noqa: F401
from app.models.scheduled_email import ScheduledEmail  # noqa: F401
from app.models.loop_state import LoopState  # noqa: F401
