from .base import Deps, Handler, Message
from .contact import ContactHandler
from .course import CourseHandler
from .program import ProgramHandler
from .registry import Dispatcher
from .semester import SemesterDetector
from .student import StudentHandler
from .usage import UsageHandler

__all__ = [
    "Deps",
    "Handler",
    "Message",
    "Dispatcher",
    "SemesterDetector",
    "ContactHandler",
    "CourseHandler",
    "StudentHandler",
    "ProgramHandler",
    "UsageHandler",
]
