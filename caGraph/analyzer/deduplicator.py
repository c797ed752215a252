"""
Run-scoped uniqueness guard for emitted relationships
"""

from typing import Set, Tuple

from .models import Relationship


VIA_SEPARATOR = ' > '

RelationshipKey = Tuple[str, str, str, str, str]


class RelationshipDeduplicator:
    """Set-backed gate: a relationship key is admitted at most once per run."""

    def __init__(self):
        self._seen: Set[RelationshipKey] = set()

    @staticmethod
    def key_for(relationship: Relationship) -> RelationshipKey:
        """Build the dedup key (policyId, scope, targetType, targetId, joined via path)."""
        via = VIA_SEPARATOR.join(relationship.via or ())
        return (relationship.policy_id, relationship.scope, relationship.target_type,
                relationship.target_id, via)

    def try_add(self, key: RelationshipKey) -> bool:
        """Admit ``key``; returns False if it was already admitted."""
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def clear(self):
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key) -> bool:
        return key in self._seen
