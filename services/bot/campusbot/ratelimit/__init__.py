from .bucket import TokenBucket
from .keyed import KeyedLimiter, LimiterConfig, Usage
from .window import SlidingWindow

__all__ = ["TokenBucket", "SlidingWindow", "KeyedLimiter", "LimiterConfig", "Usage"]
