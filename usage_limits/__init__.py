"""
Day-bucketed usage accounting and quota enforcement.
"""
from .ledger import Scope, UsageCount, UsageEvent, UsageLedger
from .limiter import UsageDecision, UsageLimiter

__all__ = ["Scope", "UsageCount", "UsageEvent", "UsageLedger", "UsageDecision", "UsageLimiter"]
