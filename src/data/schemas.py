"""MongoDB collection names, minimal schemas, and index specs.

Schemas here are *descriptors* for consistency and index creation.
We keep them permissive because model/platform payloads evolve.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

from pymongo import ASCENDING, DESCENDING


IndexSpec = Sequence[Tuple[str, int]]


@dataclass(frozen=True)
class CollectionSpec:
    name: str
    required_keys: Sequence[str]
    indexes: Sequence[IndexSpec]


AUDIT_LOG = "audit_log"
LLM_CALLS = "llm_calls"
# One document per cycle ExecutionResult.
EXECUTIONS = "executions"
# One document per runner start (status snapshots are upserted here).
AGENT_RUNS = "agent_runs"


COLLECTION_SPECS: Dict[str, CollectionSpec] = {
    AUDIT_LOG: CollectionSpec(
        name=AUDIT_LOG,
        required_keys=("timestamp", "event_type", "payload"),
        indexes=(
            (("timestamp", DESCENDING),),
            (("run_id", ASCENDING), ("timestamp", DESCENDING)),
            (("agent_id", ASCENDING), ("timestamp", DESCENDING)),
            (("event_type", ASCENDING), ("timestamp", DESCENDING)),
        ),
    ),
    LLM_CALLS: CollectionSpec(
        name=LLM_CALLS,
        required_keys=("timestamp", "provider", "model", "messages", "response"),
        indexes=(
            (("timestamp", DESCENDING),),
            (("agent_id", ASCENDING), ("timestamp", DESCENDING)),
            (("model", ASCENDING), ("timestamp", DESCENDING)),
        ),
    ),
    EXECUTIONS: CollectionSpec(
        name=EXECUTIONS,
        required_keys=("timestamp", "agent_id", "action", "success"),
        indexes=(
            (("agent_id", ASCENDING), ("timestamp", DESCENDING)),
            (("run_id", ASCENDING), ("timestamp", DESCENDING)),
            (("action", ASCENDING), ("timestamp", DESCENDING)),
        ),
    ),
    AGENT_RUNS: CollectionSpec(
        name=AGENT_RUNS,
        required_keys=("run_id", "agent_id", "control"),
        indexes=(
            (("run_id", ASCENDING),),
            (("agent_id", ASCENDING), ("updated_at", DESCENDING)),
        ),
    ),
}
