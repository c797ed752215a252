"""
Canonical records for collected directory data.

Raw Microsoft Graph payloads come in several shapes (plain dicts with
camelCase keys, dicts with odd casing, objects exposing attributes). They are
converted once, at the boundary, by ``DirectoryEntity.from_graph`` and
``classify_member_type``; nothing past this module inspects raw shapes.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# Third-party imports
from requests.structures import CaseInsensitiveDict


ENTITY_TYPES = ('user', 'group', 'role', 'servicePrincipal', 'namedLocation', 'device', 'organization')

# '@odata.type' discriminator -> canonical entity type
ODATA_TYPE_MAP = {
    '#microsoft.graph.user': 'user',
    '#microsoft.graph.group': 'group',
    '#microsoft.graph.serviceprincipal': 'servicePrincipal',
    '#microsoft.graph.device': 'device',
    '#microsoft.graph.directoryrole': 'role',
    '#microsoft.graph.directoryroletemplate': 'role',
    '#microsoft.graph.namedlocation': 'namedLocation',
    '#microsoft.graph.ipnamedlocation': 'namedLocation',
    '#microsoft.graph.countrynamedlocation': 'namedLocation',
    '#microsoft.graph.organization': 'organization',
}

# Member kinds the group expander recognises
MEMBER_TYPES = ('user', 'servicePrincipal', 'device', 'group')

# Type-specific attributes kept on the canonical record
ENTITY_ATTRIBUTES = {
    'user': ('userPrincipalName', 'mail', 'userType', 'accountEnabled'),
    'group': ('mail', 'securityEnabled', 'groupTypes', 'membershipRule', 'isAssignableToRole'),
    'role': ('roleTemplateId', 'description', 'isBuiltIn'),
    'servicePrincipal': ('appId', 'appDisplayName', 'servicePrincipalType', 'appOwnerOrganizationId', 'accountEnabled'),
    'namedLocation': ('isTrusted', 'countriesAndRegions', 'includeUnknownCountriesAndRegions'),
    'device': ('deviceId', 'operatingSystem', 'trustType', 'accountEnabled'),
    'organization': ('tenantId', 'verifiedDomains'),
}


def _as_mapping(payload: Any) -> CaseInsensitiveDict:
    """Wrap a raw payload (dict-like or object-like) for case-insensitive key access."""
    if payload is None:
        return CaseInsensitiveDict()
    if isinstance(payload, Mapping):
        return CaseInsensitiveDict(payload)
    return CaseInsensitiveDict({k: v for k, v in vars(payload).items() if not k.startswith('_')})


def classify_member_type(odata_type: Optional[str]) -> Tuple[str, bool]:
    """Classify a member's '@odata.type' tag.

    Returns:
        (member_type, recognized): the canonical type for known tags, the raw
        short tag (e.g. 'orgContact') for other tags, or 'unknown' when the
        tag is missing. ``recognized`` is False only for a missing tag.
    """
    if not odata_type or not isinstance(odata_type, str):
        return 'unknown', False

    canonical = ODATA_TYPE_MAP.get(odata_type.lower())
    if canonical:
        return canonical, True

    short = odata_type.rsplit('.', 1)[-1].lstrip('#')
    return short or 'unknown', True


@dataclass(frozen=True)
class DirectoryEntity:
    """Canonical directory object. Immutable once cached."""
    id: str
    display_name: str
    type: str
    attributes: Dict[str, Any] = field(default_factory=dict, hash=False)
    resolved: bool = True

    @classmethod
    def from_graph(cls, payload: Any, kind: str = None) -> 'DirectoryEntity':
        """Build a canonical entity from a raw Graph payload.

        The payload's '@odata.type' wins over the ``kind`` hint; the hint is
        used for endpoints that omit the discriminator (e.g. /users/{id}).

        Raises:
            ValueError: If the payload has no id
        """
        data = _as_mapping(payload)
        object_id = data.get('id')
        if not object_id:
            raise ValueError("Directory payload has no 'id'")

        entity_type, _ = classify_member_type(data.get('@odata.type'))
        if entity_type not in ENTITY_TYPES:
            entity_type = kind or entity_type

        display_name = (data.get('displayName') or data.get('userPrincipalName')
                        or data.get('appDisplayName') or object_id)

        attributes = {}
        for key in ENTITY_ATTRIBUTES.get(entity_type, ()):
            value = data.get(key)
            if value is not None:
                attributes[key] = value

        if entity_type == 'namedLocation':
            odata = (data.get('@odata.type') or '').lower()
            if 'country' in odata:
                attributes['locationType'] = 'country'
            elif 'ip' in odata:
                attributes['locationType'] = 'ip'
            ip_ranges = data.get('ipRanges') or []
            if ip_ranges:
                attributes['ipRanges'] = [r.get('cidrAddress') for r in ip_ranges if isinstance(r, Mapping)]

        return cls(id=str(object_id), display_name=str(display_name), type=entity_type, attributes=attributes)

    @classmethod
    def unresolved(cls, object_id: str, kind: str) -> 'DirectoryEntity':
        """Placeholder for an id that could not be resolved."""
        return cls(id=object_id, display_name=object_id, type=kind, resolved=False)

    def to_dict(self) -> Dict[str, Any]:
        record = {'id': self.id, 'displayName': self.display_name, 'type': self.type}
        record.update(self.attributes)
        if not self.resolved:
            record['unresolved'] = True
        return record


@dataclass(frozen=True)
class GroupMembershipRecord:
    """A transitive member found while expanding a group or role."""
    member_id: str
    member_type: str
    display_name: str
    via_path: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.member_id,
            'type': self.member_type,
            'displayName': self.display_name,
            'via': list(self.via_path),
        }


@dataclass(frozen=True)
class GroupExpansion:
    """Flattened result of a group expansion."""
    group_id: str
    members: Tuple[GroupMembershipRecord, ...] = ()
    nested_groups: Tuple[GroupMembershipRecord, ...] = ()
    cycle_detected: bool = False
    max_depth_reached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'members': [m.to_dict() for m in self.members],
            'nestedGroups': [g.to_dict() for g in self.nested_groups],
            'cycleDetected': self.cycle_detected,
            'maxDepthReached': self.max_depth_reached,
        }


@dataclass(frozen=True)
class PolicyAssignment:
    """Resolved values of one policy condition list (e.g. conditions.users.includeGroups)."""
    scope: str
    category: str
    condition: str
    keywords: Tuple[str, ...] = ()
    entities: Tuple[Dict[str, Any], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scope': self.scope,
            'category': self.category,
            'condition': self.condition,
            'keywords': list(self.keywords),
            'entities': list(self.entities),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'PolicyAssignment':
        return cls(
            scope=data['scope'],
            category=data['category'],
            condition=data.get('condition', ''),
            keywords=tuple(data.get('keywords') or ()),
            entities=tuple(data.get('entities') or ()),
        )


@dataclass(frozen=True)
class Relationship:
    """A policy -> target assignment fact, optionally reached through groups/roles."""
    policy_id: str
    policy_name: str
    scope: str
    target_type: str
    target_id: str
    target_display_name: str
    via: Optional[Tuple[str, ...]] = None
    description: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'policyId': self.policy_id,
            'policyName': self.policy_name,
            'scope': self.scope,
            'targetType': self.target_type,
            'targetId': self.target_id,
            'targetDisplayName': self.target_display_name,
            'via': list(self.via) if self.via else None,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Relationship':
        via = data.get('via')
        return cls(
            policy_id=data['policyId'],
            policy_name=data.get('policyName', ''),
            scope=data['scope'],
            target_type=data['targetType'],
            target_id=data['targetId'],
            target_display_name=data.get('targetDisplayName') or data['targetId'],
            via=tuple(via) if via else None,
            description=data.get('description', ''),
        )


@dataclass(frozen=True)
class ResolvedPolicy:
    """A Conditional Access policy together with its resolved assignments."""
    id: str
    display_name: str
    state: str
    conditions: Dict[str, Any] = field(default_factory=dict, hash=False)
    grant_controls: Optional[Dict[str, Any]] = field(default=None, hash=False)
    session_controls: Optional[Dict[str, Any]] = field(default=None, hash=False)
    created_date_time: Optional[str] = None
    modified_date_time: Optional[str] = None
    assignments: Tuple[PolicyAssignment, ...] = ()

    def find_assignments(self, scope: str = None, category: str = None, condition: str = None) -> List[PolicyAssignment]:
        """Return assignments matching every given filter."""
        return [
            a for a in self.assignments
            if (scope is None or a.scope == scope)
            and (category is None or a.category == category)
            and (condition is None or a.condition == condition)
        ]

    def keywords_for(self, scope: str, category: str, condition: str = None) -> List[str]:
        keywords = []
        for assignment in self.find_assignments(scope, category, condition):
            keywords.extend(k for k in assignment.keywords if k not in keywords)
        return keywords

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'displayName': self.display_name,
            'state': self.state,
            'createdDateTime': self.created_date_time,
            'modifiedDateTime': self.modified_date_time,
            'conditions': self.conditions,
            'grantControls': self.grant_controls,
            'sessionControls': self.session_controls,
            'assignments': [a.to_dict() for a in self.assignments],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ResolvedPolicy':
        return cls(
            id=data['id'],
            display_name=data.get('displayName') or data['id'],
            state=data.get('state', 'unknown'),
            conditions=data.get('conditions') or {},
            grant_controls=data.get('grantControls'),
            session_controls=data.get('sessionControls'),
            created_date_time=data.get('createdDateTime'),
            modified_date_time=data.get('modifiedDateTime'),
            assignments=tuple(PolicyAssignment.from_dict(a) for a in data.get('assignments') or ()),
        )
