"""
Collection session - all run-scoped state of a collection run.

Every resolver and expander receives the same session object. Nothing here
resets on its own: callers start a fresh session per run or call ``clear()``.
"""

from collections import Counter
from typing import Any, Dict, List, Optional, Set, Tuple

from ..errors import ANOMALY_KINDS, Anomaly
from .deduplicator import RelationshipDeduplicator
from .models import DirectoryEntity, GroupExpansion, GroupMembershipRecord, Relationship


DEFAULT_MAX_DEPTH = 10


class CollectionSession:
    """Caches, registry, dedup set and anomaly log for one collection run."""

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH, verbose: bool = True):
        """Initialize an empty session.

        Parameters:
            max_depth (int): Default nesting depth limit for group expansion
            verbose (bool): Print a warning line whenever an anomaly is recorded
        """
        self.max_depth = max_depth
        self.verbose = verbose

        # Entity cache, keyed by (kind, id); service principals also by appId alias
        self.entity_cache: Dict[Tuple[str, str], DirectoryEntity] = {}
        self.bulk_loaded: Set[str] = set()

        # Membership caches
        self.group_members: Dict[str, List[DirectoryEntity]] = {}
        self.group_expansions: Dict[Tuple[str, int], GroupExpansion] = {}
        self.activated_roles: Optional[Dict[str, Dict[str, Any]]] = None
        self.role_expansions: Dict[str, Tuple[GroupMembershipRecord, ...]] = {}

        # Output state
        self.deduplicator = RelationshipDeduplicator()
        self.registry: Dict[str, Dict[str, Any]] = {}
        self.relationships: List[Relationship] = []
        self.anomalies: List[Anomaly] = []

    def record_anomaly(self, kind: str, subject: str, message: str) -> Anomaly:
        """Log a non-fatal condition and keep going."""
        if kind not in ANOMALY_KINDS:
            raise ValueError(f"Unknown anomaly kind: {kind}")
        anomaly = Anomaly(kind, subject, message)
        self.anomalies.append(anomaly)
        if self.verbose:
            print(f"    Warning: {message}")
        return anomaly

    def anomaly_counts(self) -> Dict[str, int]:
        return dict(Counter(a.kind for a in self.anomalies))

    def register(self, record: Dict[str, Any]) -> bool:
        """Add an entity record to the registry; the first registration per id wins.

        Returns:
            bool: True if the record was added, False if the id was already registered
        """
        entity_id = record.get('id')
        if not entity_id or entity_id in self.registry:
            return False
        self.registry[entity_id] = record
        return True

    def add_relationship(self, relationship: Relationship) -> bool:
        """Emit a relationship unless an identical one was already emitted this run."""
        if not self.deduplicator.try_add(self.deduplicator.key_for(relationship)):
            return False
        self.relationships.append(relationship)
        return True

    def clear(self):
        """Reset every cache and output collection for the next run."""
        self.entity_cache.clear()
        self.bulk_loaded.clear()
        self.group_members.clear()
        self.group_expansions.clear()
        self.activated_roles = None
        self.role_expansions.clear()
        self.deduplicator.clear()
        self.registry.clear()
        self.relationships.clear()
        self.anomalies.clear()

    def snapshot(self) -> Dict[str, Any]:
        """Serializable view of the partial state, used for checkpoints."""
        return {
            'entities': list(self.registry.values()),
            'relationships': [r.to_dict() for r in self.relationships],
            'anomalies': [a.to_dict() for a in self.anomalies],
        }
