from .client import BIG5, ENDPOINTS, USER_AGENTS, ScraperClient
from .singleflight import SingleFlight

__all__ = ["ScraperClient", "SingleFlight", "ENDPOINTS", "USER_AGENTS", "BIG5"]
