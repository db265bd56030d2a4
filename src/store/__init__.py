"""Rule persistence: local replica, remote/local backends and the fallback store."""
from store.backends import LocalRuleBackend, RemoteRuleBackend, RuleBackend
from store.local_replica import LocalReplicaStore
from store.rule_store import RuleRepository, RuleStore

__all__ = [
    "LocalReplicaStore",
    "LocalRuleBackend",
    "RemoteRuleBackend",
    "RuleBackend",
    "RuleRepository",
    "RuleStore",
]
