#Expose the high-level routing pieces:
#Candidate filtering (hard rules)
#Scoring / ranking
#Dispatcher (the "one call" entry point for new orders)
#Reassignment engine, deadline sweep and response resolver

from .candidate_filter import build_base_candidates
from .scoring import rank_candidates
from .dispatcher import OrderDispatcher, select_initial_targets
from .reassignment import reassign, handle_refusal, handle_timeout
from .sweep import DeadlineSweep
from .resolver import PharmacyAction, ResponseResolver
from .errors import DispatchError, NoCandidateError, StaleActionError
from .policy import (
    DispatchPolicy,
    RoutingConfig,
    InMemoryRoutingConfigSource,
    default_dispatch_policy,
    default_routing_config,
)

__all__ = [
    "build_base_candidates",
    "rank_candidates",
    "select_initial_targets",
    "OrderDispatcher",
    "reassign",
    "handle_refusal",
    "handle_timeout",
    "DeadlineSweep",
    "ResponseResolver",
    "PharmacyAction",
    "DispatchError",
    "NoCandidateError",
    "StaleActionError",
    "DispatchPolicy",
    "RoutingConfig",
    "InMemoryRoutingConfigSource",
    "default_dispatch_policy",
    "default_routing_config",
]
