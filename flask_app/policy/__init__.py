"""Trust controls for agent-initiated actions."""

from .engine import PolicyCache, PolicyDecision, PolicyEngine, check_policy, get_policy_cache
from .patterns import CompiledPattern, compile_pattern
from .service import PolicyService, serialize_policy

__all__ = [
    "CompiledPattern",
    "PolicyCache",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyService",
    "check_policy",
    "compile_pattern",
    "get_policy_cache",
    "serialize_policy",
]
