"""
Graph builder - turns resolved policies, the entity registry and relationships
into the node/edge document consumed by the visualization front-end.

Edge relationship labels follow a fixed grammar that consumers split on ':':
'<include|exclude>:<targetType>' for assignment edges, or one of the literal
tags in SYNTHETIC_RELATIONSHIPS. Changing it requires a GRAPH_SCHEMA_VERSION bump.
"""

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..analyzer.models import PolicyAssignment, Relationship, ResolvedPolicy


GRAPH_SCHEMA_VERSION = '1.0'

SYNTHETIC_RELATIONSHIPS = (
    'condition:insiderRisk',
    'condition:authFlow',
    'condition:deviceFilter',
    'requires:authContext',
    'excludes:authContext',
)

# Keyword domains in resolution priority order: (domain, policy condition section, node type)
KEYWORD_DOMAINS = (
    ('user', 'users', 'user'),
    ('application', 'applications', 'servicePrincipal'),
    ('clientApplication', 'clientApplications', 'servicePrincipal'),
    ('location', 'locations', 'namedLocation'),
)

KEYWORD_LABELS = {
    'user': {
        'all': 'All Users',
        'none': 'No Users',
        'guestsorexternalusers': 'Guests or External Users',
    },
    'application': {
        'all': 'All Applications',
        'none': 'No Applications',
        'office365': 'Office 365',
        'microsoftadminportals': 'Microsoft Admin Portals',
        'allagentidresources': 'All Agent Resources',
    },
    'clientApplication': {
        'all': 'All Service Principals',
        'serviceprincipalsinmytenant': 'Service Principals in My Tenant',
    },
    'location': {
        'all': 'All Locations',
        'alltrusted': 'All Trusted Locations',
    },
}

DOMAIN_TITLES = {
    'user': 'Users',
    'application': 'Applications',
    'clientApplication': 'Service Principals',
    'location': 'Locations',
}

# Policy-node summary keys for the 'users' section lists
USER_CATEGORY_KEYS = {'user': 'users', 'group': 'groups', 'role': 'roles'}


def split_flags(value: Any) -> List[str]:
    """Normalize a Graph flags value ('a,b' string or list) to a list, dropping 'none'."""
    if not value:
        return []
    if isinstance(value, str):
        items = value.split(',')
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        items = [value]
    result = []
    for item in items:
        item = str(item).strip()
        if item and item.lower() not in ('none', 'unknownfuturevalue') and item not in result:
            result.append(item)
    return result


def summarize_grant_controls(grant_controls: Optional[Dict[str, Any]]) -> List[str]:
    """Flatten grant controls to display strings (e.g. ['mfa', 'authenticationStrength:Phishing-resistant MFA'])."""
    if not grant_controls:
        return []
    summary = list(grant_controls.get('builtInControls') or [])
    strength = grant_controls.get('authenticationStrength')
    if isinstance(strength, Mapping):
        summary.append(f"authenticationStrength:{strength.get('displayName') or strength.get('id')}")
    for factor in grant_controls.get('customAuthenticationFactors') or []:
        summary.append(f"customFactor:{factor}")
    for terms in grant_controls.get('termsOfUse') or []:
        summary.append(f"termsOfUse:{terms}")
    return summary


def summarize_session_controls(session_controls: Optional[Dict[str, Any]]) -> List[str]:
    """Flatten session controls to display strings, keeping only enabled controls."""
    if not session_controls:
        return []
    summary = []
    for name, control in session_controls.items():
        if isinstance(control, Mapping):
            if control.get('isEnabled') is False:
                continue
            if name == 'signInFrequency':
                if control.get('frequencyInterval') == 'everyTime':
                    summary.append('signInFrequency:everyTime')
                else:
                    summary.append(f"signInFrequency:{control.get('value')} {control.get('type')}")
            elif name == 'persistentBrowser':
                summary.append(f"persistentBrowser:{control.get('mode')}")
            elif name == 'cloudAppSecurity':
                summary.append(f"cloudAppSecurity:{control.get('cloudAppSecurityType')}")
            elif name == 'continuousAccessEvaluation':
                summary.append(f"continuousAccessEvaluation:{control.get('mode')}")
            else:
                summary.append(name)
        elif control is True:
            summary.append(name)
    return summary


class GraphBuilder:
    """Builds the node/edge graph; nodes are unique by id and edges by (from, to, relationship)"""

    def __init__(self, auth_context_names: Dict[str, str] = None):
        """Initialize the builder.

        Parameters:
            auth_context_names (Dict[str, str]): Authentication context id -> display name
        """
        self.auth_context_names = auth_context_names or {}
        self._nodes: Dict[str, Dict[str, Any]] = {}
        self._edges: Dict[Tuple[str, str, str], Dict[str, Any]] = {}

    def build(self, policies: Iterable[ResolvedPolicy], entity_registry: Any,
              relationships: Iterable[Relationship]) -> Dict[str, List[Dict[str, Any]]]:
        """Build the graph.

        Each call starts from an empty index, so identical input always yields
        identical nodes and edges.

        Parameters:
            policies (Iterable[ResolvedPolicy]): Resolved policies
            entity_registry (Mapping | Iterable): Registry records keyed by id, or a list of records
            relationships (Iterable[Relationship]): Deduplicated relationships

        Returns:
            Dict: {'nodes': [...], 'edges': [...]}
        """
        self._nodes = {}
        self._edges = {}

        policies = list(policies)
        policy_index = {policy.id: policy for policy in policies}
        registry = self._registry_index(entity_registry)

        for policy in policies:
            self._add_node(policy.id, policy.display_name, 'policy', self._policy_properties(policy))

        for relationship in relationships:
            if relationship.policy_id not in self._nodes:
                self._add_node(relationship.policy_id, relationship.policy_name, 'policy', {})
            if relationship.target_type == 'keyword':
                self._add_keyword(relationship, policy_index.get(relationship.policy_id))
            else:
                self._add_target(relationship, registry.get(relationship.target_id))

        for record in registry.values():
            self._add_node(record['id'], record.get('displayName') or record['id'],
                           record.get('type') or 'unknown', record)

        for policy in policies:
            self._add_guest_nodes(policy)
            self._add_auth_context_nodes(policy)
            self._add_condition_nodes(policy)

        return {'nodes': list(self._nodes.values()), 'edges': list(self._edges.values())}

    def build_document(self, policies: Iterable[ResolvedPolicy], entity_registry: Any,
                       relationships: Iterable[Relationship], metadata: Dict[str, Any] = None) -> Dict[str, Any]:
        """Build the graph wrapped in the document format the front-end loads."""
        graph = self.build(policies, entity_registry, relationships)
        return {
            'generatedAt': datetime.now(timezone.utc).isoformat(),
            'metadata': dict(metadata or {}, schemaVersion=GRAPH_SCHEMA_VERSION),
            'nodes': graph['nodes'],
            'edges': graph['edges'],
        }

    # === Nodes and edges ===

    def _add_node(self, node_id: str, label: str, node_type: str, properties: Dict[str, Any]) -> bool:
        if node_id in self._nodes:
            return False
        self._nodes[node_id] = {'id': node_id, 'label': label, 'type': node_type, 'properties': properties}
        return True

    def _add_edge(self, source: str, target: str, relationship: str, properties: Dict[str, Any]) -> bool:
        key = (source, target, relationship)
        if key in self._edges:
            return False
        self._edges[key] = {'from': source, 'to': target, 'relationship': relationship, 'properties': properties}
        return True

    @staticmethod
    def _registry_index(entity_registry: Any) -> Dict[str, Dict[str, Any]]:
        if isinstance(entity_registry, Mapping):
            return dict(entity_registry)
        index = {}
        for record in entity_registry or []:
            if record.get('id') and record['id'] not in index:
                index[record['id']] = record
        return index

    @staticmethod
    def _edge_properties(relationship: Relationship, target_display_name: str = None) -> Dict[str, Any]:
        properties = {
            'policyName': relationship.policy_name,
            'targetDisplayName': target_display_name or relationship.target_display_name,
            'description': relationship.description,
        }
        if relationship.via:
            properties['via'] = list(relationship.via)
        return properties

    def _add_target(self, relationship: Relationship, record: Optional[Dict[str, Any]]):
        if record is not None:
            self._add_node(relationship.target_id, record.get('displayName') or relationship.target_display_name,
                           record.get('type') or relationship.target_type, record)
        else:
            self._add_node(relationship.target_id, relationship.target_display_name, relationship.target_type, {
                'id': relationship.target_id,
                'displayName': relationship.target_display_name,
                'type': relationship.target_type,
            })
        self._add_edge(relationship.policy_id, relationship.target_id,
                       f"{relationship.scope}:{relationship.target_type}", self._edge_properties(relationship))

    # === Keywords ===

    def resolve_keyword_domain(self, keyword: str, scope: str, policy: Optional[ResolvedPolicy]) -> Optional[Tuple[str, str]]:
        """Find the domain a keyword belongs to by inspecting the policy's assignments.

        Domains are checked in priority order user -> application -> client
        application -> location; the first domain listing the keyword wins.

        Returns:
            Tuple[str, str]: (domain, node type), or None if no domain lists the keyword
        """
        if policy is None:
            return None
        wanted = keyword.lower()
        for domain, condition, node_type in KEYWORD_DOMAINS:
            keywords = [k.lower() for a in policy.find_assignments(scope=scope, condition=condition) for k in a.keywords]
            if wanted in keywords:
                return domain, node_type
        return None

    def _add_keyword(self, relationship: Relationship, policy: Optional[ResolvedPolicy]):
        keyword = relationship.target_id
        scope = relationship.scope
        resolved = self.resolve_keyword_domain(keyword, scope, policy)

        if resolved is None:
            node_id = f"keyword:{relationship.policy_id}:{scope}:keyword:{keyword.lower()}"
            self._add_node(node_id, keyword, 'keyword', {
                'keyword': keyword, 'policyId': relationship.policy_id, 'scope': scope, 'isKeyword': True,
            })
            self._add_edge(relationship.policy_id, node_id, f"{scope}:keyword", self._edge_properties(relationship))
            return

        domain, node_type = resolved
        node_id = f"keyword:{relationship.policy_id}:{scope}:{node_type}:{keyword.lower()}"
        label = KEYWORD_LABELS[domain].get(keyword.lower(), f"{keyword} ({DOMAIN_TITLES[domain]})")
        self._add_node(node_id, label, node_type, {
            'keyword': keyword,
            'policyId': relationship.policy_id,
            'scope': scope,
            'domain': domain,
            'isKeyword': True,
        })
        self._add_edge(relationship.policy_id, node_id, f"{scope}:{node_type}", self._edge_properties(relationship, label))

    # === Synthesized nodes ===

    def _add_guest_nodes(self, policy: ResolvedPolicy):
        users = policy.conditions.get('users') or {}
        for scope in ('include', 'exclude'):
            guests = users.get(f"{scope}GuestsOrExternalUsers") or {}
            types = split_flags(guests.get('guestOrExternalUserTypes'))
            if not types:
                continue

            external = guests.get('externalTenants') or {}
            node_id = f"guests:{policy.id}:{scope}"
            self._add_node(node_id, f"Guests/External Users ({', '.join(types)})", 'user', {
                'guestOrExternalUserTypes': types,
                'externalTenantsMembershipKind': external.get('membershipKind'),
                'policyId': policy.id,
                'scope': scope,
                'synthetic': True,
            })
            self._add_edge(policy.id, node_id, f"{scope}:user", {
                'policyName': policy.display_name,
                'description': f"{scope.capitalize()}s guest or external user types",
            })

            for tenant in external.get('members') or []:
                if isinstance(tenant, Mapping):
                    tenant_id = tenant.get('id') or tenant.get('tenantId')
                    label = tenant.get('displayName') or tenant_id
                else:
                    tenant_id = label = str(tenant)
                if not tenant_id:
                    continue
                self._add_node(tenant_id, label, 'organization', {'tenantId': tenant_id})
                self._add_edge(node_id, tenant_id, f"{scope}:organization", {
                    'policyName': policy.display_name,
                    'description': 'External tenant',
                })

    def _add_auth_context_nodes(self, policy: ResolvedPolicy):
        applications = policy.conditions.get('applications') or {}
        refs = (
            ('requires:authContext', applications.get('includeAuthenticationContextClassReferences')),
            ('excludes:authContext', applications.get('excludeAuthenticationContextClassReferences')),
        )
        for relationship, values in refs:
            for value in split_flags(values):
                node_id = f"authContext:{value}"
                self._add_node(node_id, self.auth_context_names.get(value, value), 'authenticationContext', {
                    'classReference': value,
                })
                self._add_edge(policy.id, node_id, relationship, {'policyName': policy.display_name})

    def _add_condition_nodes(self, policy: ResolvedPolicy):
        conditions = policy.conditions

        levels = split_flags(conditions.get('insiderRiskLevels'))
        if levels:
            node_id = f"insiderRisk:{','.join(sorted(levels))}"
            self._add_node(node_id, f"Insider risk: {', '.join(levels)}", 'condition', {
                'conditionType': 'insiderRisk', 'levels': levels,
            })
            self._add_edge(policy.id, node_id, 'condition:insiderRisk', {'policyName': policy.display_name})

        flows = conditions.get('authenticationFlows') or {}
        for method in split_flags(flows.get('transferMethods')):
            node_id = f"authFlow:{method}"
            self._add_node(node_id, f"Authentication flow: {method}", 'condition', {
                'conditionType': 'authFlow', 'transferMethod': method,
            })
            self._add_edge(policy.id, node_id, 'condition:authFlow', {'policyName': policy.display_name})

        device_filter = (conditions.get('devices') or {}).get('deviceFilter') or {}
        rule = (device_filter.get('rule') or '').strip()
        if rule:
            mode = device_filter.get('mode') or 'include'
            node_id = f"deviceFilter:{policy.id}"
            self._add_node(node_id, f"Device filter ({mode})", 'condition', {
                'conditionType': 'deviceFilter', 'mode': mode, 'rule': rule,
            })
            self._add_edge(policy.id, node_id, 'condition:deviceFilter', {
                'policyName': policy.display_name, 'mode': mode,
            })

    # === Policy summary ===

    @staticmethod
    def _collection(assignments: List[PolicyAssignment]) -> Dict[str, List[Any]]:
        entities, keywords = [], []
        for assignment in assignments:
            entities.extend(assignment.entities)
            keywords.extend(k for k in assignment.keywords if k not in keywords)
        return {'entities': entities, 'keywords': keywords}

    def _policy_properties(self, policy: ResolvedPolicy) -> Dict[str, Any]:
        conditions = policy.conditions
        grant = policy.grant_controls or {}

        assignments = {}
        target_resources = {'applications': {}, 'servicePrincipals': {}}
        locations = {}
        for scope in ('include', 'exclude'):
            assignments[scope] = {
                key: self._collection(policy.find_assignments(scope, category, 'users'))
                for category, key in USER_CATEGORY_KEYS.items()
            }
            target_resources['applications'][scope] = self._collection(policy.find_assignments(scope, condition='applications'))
            target_resources['servicePrincipals'][scope] = self._collection(
                policy.find_assignments(scope, condition='clientApplications'))
            locations[scope] = self._collection(policy.find_assignments(scope, condition='locations'))

        applications = conditions.get('applications') or {}
        target_resources['userActions'] = applications.get('includeUserActions') or []
        target_resources['authenticationContextClassReferences'] = split_flags(
            applications.get('includeAuthenticationContextClassReferences'))

        users = conditions.get('users') or {}
        platforms = conditions.get('platforms') or {}
        insider = split_flags(conditions.get('insiderRiskLevels'))
        transfer = split_flags((conditions.get('authenticationFlows') or {}).get('transferMethods'))
        device_filter = (conditions.get('devices') or {}).get('deviceFilter') or {}

        return {
            'state': policy.state,
            'createdDateTime': policy.created_date_time,
            'modifiedDateTime': policy.modified_date_time,
            'grantControls': summarize_grant_controls(policy.grant_controls),
            'grantOperator': grant.get('operator'),
            'sessionControls': summarize_session_controls(policy.session_controls),
            'assignments': assignments,
            'targetResources': target_resources,
            'conditions': {
                'locations': locations,
                'userRiskLevels': conditions.get('userRiskLevels') or [],
                'signInRiskLevels': conditions.get('signInRiskLevels') or [],
                'servicePrincipalRiskLevels': conditions.get('servicePrincipalRiskLevels') or [],
                'insiderRiskLevels': {'configured': bool(insider), 'levels': insider},
                'authenticationFlows': {'configured': bool(transfer), 'transferMethods': transfer},
                'deviceFilter': {
                    'configured': bool((device_filter.get('rule') or '').strip()),
                    'mode': device_filter.get('mode'),
                    'rule': device_filter.get('rule'),
                },
                'clientAppTypes': conditions.get('clientAppTypes') or [],
                'platforms': {
                    'include': platforms.get('includePlatforms') or [],
                    'exclude': platforms.get('excludePlatforms') or [],
                },
                'users': {
                    'includeGuestsOrExternalUsers': users.get('includeGuestsOrExternalUsers'),
                    'excludeGuestsOrExternalUsers': users.get('excludeGuestsOrExternalUsers'),
                },
            },
            'accessControls': {
                'grant': policy.grant_controls,
                'session': policy.session_controls,
            },
            'rawConditions': conditions,
        }
