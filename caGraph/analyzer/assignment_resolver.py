"""
Policy assignment resolution.

Walks the include/exclude lists of a Conditional Access policy, resolves
object IDs to entities (expanding groups and roles to their members) and
emits one relationship per policy -> target fact. Keyword values such as
'All' or 'AllTrusted' are kept as-is for the graph builder to interpret.
"""

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import STRUCTURAL_ANOMALY
from ..graph.api_client import GraphAPIClient
from .entity_resolver import EntityResolver
from .group_expander import GroupExpander
from .models import GroupMembershipRecord, PolicyAssignment, Relationship, ResolvedPolicy
from .role_expander import RoleExpander
from .session import CollectionSession


# Regex pattern to detect GUIDs (8-4-4-4-12 format)
GUID_PATTERN = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)

SCOPES = ('include', 'exclude')

# (condition section, list suffix, category), walked in this order
ASSIGNMENT_FIELDS = (
    ('users', 'Users', 'user'),
    ('users', 'Groups', 'group'),
    ('users', 'Roles', 'role'),
    ('applications', 'Applications', 'servicePrincipal'),
    ('clientApplications', 'ServicePrincipals', 'servicePrincipal'),
    ('locations', 'Locations', 'namedLocation'),
)


def is_object_id(value: str) -> bool:
    """Check whether a condition value is an object ID rather than a keyword."""
    return bool(GUID_PATTERN.match(value))


class PolicyAssignmentResolver:
    """Resolves policy condition lists into assignments and relationships"""

    def __init__(self, api_client: GraphAPIClient, session: CollectionSession,
                 expand_groups: bool = True, expand_roles: bool = True):
        """Initialize the resolver and the components it drives.

        Parameters:
            api_client (GraphAPIClient): Directory client
            session (CollectionSession): Run state shared by every component
            expand_groups (bool): Emit relationships for transitive group members
            expand_roles (bool): Emit relationships for role members
        """
        self.session = session
        self.expand_groups = expand_groups
        self.expand_roles = expand_roles
        self.entity_resolver = EntityResolver(api_client, session)
        self.group_expander = GroupExpander(api_client, session, self.entity_resolver)
        self.role_expander = RoleExpander(api_client, session, self.entity_resolver)

    def resolve_policy(self, policy: Dict[str, Any]) -> Optional[ResolvedPolicy]:
        """Resolve every assignment list of a policy.

        Parameters:
            policy (Dict): Raw conditional access policy object

        Returns:
            ResolvedPolicy: The policy with its resolved assignments, or None if the
                            policy object has no id
        """
        policy_id = policy.get('id')
        if not policy_id:
            self.session.record_anomaly(STRUCTURAL_ANOMALY, policy.get('displayName') or 'policy',
                                        f"Skipping policy without id: {policy.get('displayName', 'Unknown Policy')}")
            return None

        conditions = policy.get('conditions') or {}
        assignments = []

        for condition, suffix, category in ASSIGNMENT_FIELDS:
            section = conditions.get(condition) or {}
            for scope in SCOPES:
                values = section.get(f"{scope}{suffix}") or []
                if not values:
                    continue
                assignments.append(self.resolve_assignment(policy, scope, category, values, condition))

        return ResolvedPolicy(
            id=policy_id,
            display_name=policy.get('displayName') or policy_id,
            state=policy.get('state', 'unknown'),
            conditions=conditions,
            grant_controls=policy.get('grantControls'),
            session_controls=policy.get('sessionControls'),
            created_date_time=policy.get('createdDateTime'),
            modified_date_time=policy.get('modifiedDateTime'),
            assignments=tuple(assignments),
        )

    def resolve_assignment(self, policy: Dict[str, Any], scope: str, category: str,
                           values: Iterable[Any], condition: str) -> PolicyAssignment:
        """Resolve one include/exclude list of a policy.

        Parameters:
            policy (Dict): Raw policy the values belong to
            scope (str): 'include' or 'exclude'
            category (str): Entity category of the list ('user', 'group', 'role',
                            'servicePrincipal', 'namedLocation')
            values (Iterable): Raw values (object IDs or keywords)
            condition (str): Policy section the list came from ('users', 'applications', ...)

        Returns:
            PolicyAssignment: Keywords and resolved entity records, in input order
        """
        keywords: List[str] = []
        entities: List[Dict[str, Any]] = []

        for value in values:
            if not isinstance(value, str) or not value.strip():
                self.session.record_anomaly(STRUCTURAL_ANOMALY, policy['id'],
                                            f"Ignoring malformed {scope}{category} value {value!r} in policy {policy['id']}")
                continue

            if is_object_id(value):
                entities.append(self._resolve_entity(policy, scope, category, value))
            elif value not in keywords:
                keywords.append(value)
                self.session.add_relationship(Relationship(
                    policy_id=policy['id'],
                    policy_name=policy.get('displayName') or policy['id'],
                    scope=scope,
                    target_type='keyword',
                    target_id=value,
                    target_display_name=value,
                    description=f"{scope.capitalize()}s keyword '{value}' ({condition})",
                ))

        return PolicyAssignment(scope=scope, category=category, condition=condition,
                                keywords=tuple(keywords), entities=tuple(entities))

    def _resolve_entity(self, policy: Dict[str, Any], scope: str, category: str, object_id: str) -> Dict[str, Any]:
        """Resolve, register and relate a single object reference (plus its members)."""
        entity = self.entity_resolver.resolve(category, object_id)
        record = entity.to_dict()
        members: Tuple[GroupMembershipRecord, ...] = ()

        if category == 'group' and self.expand_groups:
            expansion = self.group_expander.expand(entity.id)
            record.update(expansion.to_dict())
            members = expansion.nested_groups + expansion.members
        elif category == 'role' and self.expand_roles:
            members = self.role_expander.expand(object_id)
            record['members'] = [m.to_dict() for m in members]

        self.session.register(record)

        policy_name = policy.get('displayName') or policy['id']
        self.session.add_relationship(Relationship(
            policy_id=policy['id'],
            policy_name=policy_name,
            scope=scope,
            target_type=category,
            target_id=entity.id,
            target_display_name=entity.display_name,
            description=f"Directly {scope}d {category}",
        ))

        for member in members:
            if member.member_type != 'group':
                cached = self.session.entity_cache.get((member.member_type, member.member_id))
                self.session.register(cached.to_dict() if cached else {
                    'id': member.member_id, 'displayName': member.display_name, 'type': member.member_type,
                })
            self.session.add_relationship(Relationship(
                policy_id=policy['id'],
                policy_name=policy_name,
                scope=scope,
                target_type=member.member_type,
                target_id=member.member_id,
                target_display_name=member.display_name,
                via=member.via_path,
                description=f"{scope.capitalize()}d via {category} {' > '.join(member.via_path)}",
            ))

        return record
