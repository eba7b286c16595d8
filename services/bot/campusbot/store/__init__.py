from .repository import CONTACT, COURSE, HISTORICAL_COURSE, PROGRAM, STUDENT, Store

__all__ = ["Store", "STUDENT", "CONTACT", "COURSE", "HISTORICAL_COURSE", "PROGRAM"]
