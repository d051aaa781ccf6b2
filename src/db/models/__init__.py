# SQLAlchemy models
from .base import Base
from .schedules import ReviewScheduleRow, StudyRecordRow

__all__ = [
    "Base",
    "ReviewScheduleRow",
    "StudyRecordRow",
]
