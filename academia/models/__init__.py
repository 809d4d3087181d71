from .base import Base
from .academy import Academy, ContentItem, Course, CourseAccess
from .profile import Profile
from .viewing_session import PlaybackEvent, ViewingSession

__all__ = [
    "Base",
    "Academy",
    "Course",
    "ContentItem",
    "CourseAccess",
    "Profile",
    "ViewingSession",
    "PlaybackEvent",
]
