"""
Nested group membership expansion.

Groups may contain groups, and membership graphs in real tenants do contain
cycles. Expansion walks the tree depth-first with an explicit stack; each
branch carries its own visited set and breadcrumb, so a group reachable
through two different parents is expanded on both paths while a group that
re-enters its own ancestry stops that branch.
"""

from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from ..errors import CYCLE_OR_DEPTH_LIMIT, STRUCTURAL_ANOMALY, TRANSIENT_LOOKUP_FAILURE
from ..graph.api_client import GraphAPIClient
from .entity_resolver import EntityResolver
from .models import MEMBER_TYPES, DirectoryEntity, GroupExpansion, GroupMembershipRecord
from .session import CollectionSession


class GroupExpander:
    """Flattens nested group membership into transitive member records"""

    def __init__(self, api_client: GraphAPIClient, session: CollectionSession, entity_resolver: EntityResolver = None):
        """Initialize the group expander.

        Parameters:
            api_client (GraphAPIClient): Directory client for membership lookups
            session (CollectionSession): Run state holding the membership caches
            entity_resolver (EntityResolver): Resolver used for the root group's name and
                                              to cache member payloads (created if omitted)
        """
        self.api_client = api_client
        self.session = session
        self.entity_resolver = entity_resolver or EntityResolver(api_client, session)

    def expand(self, group_id: str, max_depth: Optional[int] = None) -> GroupExpansion:
        """Expand a group to all of its transitive members.

        Parameters:
            group_id (str): Object ID of the group to expand
            max_depth (int): Maximum number of groups on a path, the root group
                             counting as 1 (default: the session's max_depth)

        Returns:
            GroupExpansion: Members (non-group objects) and nested groups, each with
                            the first via-path that reached them, plus cycle/depth flags
        """
        depth_limit = self.session.max_depth if max_depth is None else max_depth
        cache_key = (group_id, depth_limit)
        cached = self.session.group_expansions.get(cache_key)
        if cached is not None:
            return cached

        root = self.entity_resolver.resolve('group', group_id)

        members: Dict[str, GroupMembershipRecord] = {}
        nested_groups: Dict[str, GroupMembershipRecord] = {}
        cycle_detected = False
        max_depth_reached = False

        # Frame: (group id, breadcrumb of group names, groups already on this branch)
        stack: List[Tuple[str, Tuple[str, ...], FrozenSet[str]]] = [
            (group_id, (root.display_name,), frozenset({group_id}))
        ]

        while stack:
            current_id, path, visited = stack.pop()
            branches = []

            for entity in self._direct_members(current_id):
                if entity.type != 'group':
                    if entity.id not in members:
                        members[entity.id] = GroupMembershipRecord(entity.id, entity.type, entity.display_name, path)
                    continue

                if entity.id in visited:
                    cycle_detected = True
                    self.session.record_anomaly(
                        CYCLE_OR_DEPTH_LIMIT, entity.id,
                        f"Membership cycle: group {entity.display_name} re-entered via {' > '.join(path)}"
                    )
                    continue

                if entity.id not in nested_groups:
                    nested_groups[entity.id] = GroupMembershipRecord(entity.id, 'group', entity.display_name, path)

                if len(path) >= depth_limit:
                    max_depth_reached = True
                    self.session.record_anomaly(
                        CYCLE_OR_DEPTH_LIMIT, entity.id,
                        f"Max depth {depth_limit} reached at group {entity.display_name} via {' > '.join(path)}"
                    )
                    continue

                branches.append((entity.id, path + (entity.display_name,), visited | {entity.id}))

            # Reversed so the first nested group is expanded first
            stack.extend(reversed(branches))

        expansion = GroupExpansion(
            group_id=group_id,
            members=tuple(members.values()),
            nested_groups=tuple(nested_groups.values()),
            cycle_detected=cycle_detected,
            max_depth_reached=max_depth_reached,
        )
        self.session.group_expansions[cache_key] = expansion
        return expansion

    def _direct_members(self, group_id: str) -> List[DirectoryEntity]:
        """Get the classified direct members of a group (memoized per run).

        Members are classified once, when the group is first fetched. A failed
        lookup is logged and yields no members; it is not cached so a later
        expansion may try again.
        """
        members = self.session.group_members.get(group_id)
        if members is not None:
            return members

        result = self.api_client.get_group_members(group_id)
        if not result.ok:
            self.session.record_anomaly(
                TRANSIENT_LOOKUP_FAILURE, group_id,
                f"Failed to fetch members of group {group_id}: {result.error or result.status}"
            )
            return []

        members = [entity for entity in (self._classify(raw, group_id) for raw in result.value or []) if entity is not None]
        self.session.group_members[group_id] = members
        return members

    def _classify(self, raw: Dict[str, Any], group_id: str) -> Optional[DirectoryEntity]:
        try:
            entity = DirectoryEntity.from_graph(raw)
        except ValueError:
            self.session.record_anomaly(STRUCTURAL_ANOMALY, group_id,
                                        f"Skipping member without id in group {group_id}")
            return None

        if entity.type == 'unknown':
            self.session.record_anomaly(STRUCTURAL_ANOMALY, entity.id,
                                        f"Member {entity.id} of group {group_id} has no type discriminator")
            return entity

        if entity.type in MEMBER_TYPES:
            return self.entity_resolver.register_entity(entity)
        return entity
