"""
Event-sourced fact store.

- keys: canonical fact key taxonomy
- matching: pure matching and contradiction rules
- current: deterministic replay into the current-facts view
- store: append-only SQLite ledger
"""

from dde.facts.current import compute_current_facts, format_facts_for_agents
from dde.facts.matching import detect_contradiction, match_fact, match_facts_batch
from dde.facts.store import FactStore, SubmissionResult

__all__ = [
    "FactStore",
    "SubmissionResult",
    "compute_current_facts",
    "detect_contradiction",
    "format_facts_for_agents",
    "match_fact",
    "match_facts_batch",
]
