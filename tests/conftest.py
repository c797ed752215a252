"""
Shared fixtures: an in-memory directory client and payload builders
"""

from collections import Counter

import jwt
import pytest

from caGraph.analyzer.session import CollectionSession
from caGraph.errors import FatalConfigurationError
from caGraph.graph.api_client import LookupResult


TEST_SIGNING_KEY = 'ca-graph-test-signing-key-0123456789abcdef'


def guid(n: int) -> str:
    """Deterministic GUID-shaped object id."""
    return f"00000000-0000-0000-0000-{n:012d}"


def user(object_id: str, name: str) -> dict:
    return {'@odata.type': '#microsoft.graph.user', 'id': object_id, 'displayName': name,
            'userPrincipalName': f"{name.lower()}@contoso.com"}


def group(object_id: str, name: str) -> dict:
    return {'@odata.type': '#microsoft.graph.group', 'id': object_id, 'displayName': name}


def service_principal(object_id: str, name: str, app_id: str) -> dict:
    return {'@odata.type': '#microsoft.graph.servicePrincipal', 'id': object_id, 'displayName': name, 'appId': app_id}


def make_token(**claims) -> str:
    payload = {'tid': 'tenant-1234', 'upn': 'admin@contoso.com', 'scp': 'Policy.Read.All Directory.Read.All'}
    payload.update(claims)
    return jwt.encode(payload, TEST_SIGNING_KEY, algorithm='HS256')


def make_policy(policy_id: str, name: str = None, state: str = 'enabled', **sections) -> dict:
    """Build a raw policy; keyword args are merged into 'conditions' (users, applications, ...)."""
    conditions = {'users': {}, 'applications': {}}
    conditions.update(sections)
    return {
        'id': policy_id,
        'displayName': name or policy_id,
        'state': state,
        'createdDateTime': '2024-01-01T00:00:00Z',
        'modifiedDateTime': None,
        'conditions': conditions,
        'grantControls': {'operator': 'OR', 'builtInControls': ['mfa']},
        'sessionControls': None,
    }


class FakeDirectoryClient:
    """In-memory stand-in for GraphAPIClient; every lookup is counted in ``calls``."""

    def __init__(self, users=None, groups=None, members=None, service_principals=None, named_locations=None,
                 role_templates=None, activated_roles=None, role_members=None, auth_contexts=None,
                 policies=None, failing=None, organization=None, token_valid=True):
        self.users = {u['id']: u for u in users or []}
        self.groups = {g['id']: g for g in groups or []}
        self.members = members or {}
        self.service_principals = {sp['id']: sp for sp in service_principals or []}
        self.named_locations = named_locations or []
        self.role_templates = role_templates or []
        self.activated_roles = activated_roles or []
        self.role_members = role_members or {}
        self.auth_contexts = auth_contexts or []
        self.policies = policies or []
        self.failing = set(failing or ())
        self.organization = organization
        self.token_valid = token_valid
        self.calls = Counter()

    def _call(self, method, key=None):
        self.calls[(method, key)] += 1
        if method in self.failing or (method, key) in self.failing:
            return LookupResult.failure('503 Server Error: Service Unavailable')
        return None

    def _get(self, method, store, key):
        failure = self._call(method, key)
        if failure:
            return failure
        if key not in store:
            return LookupResult.missing(f"{key} not found")
        return LookupResult.success(store[key])

    def _list(self, method, items, key=None):
        return self._call(method, key) or LookupResult.success(list(items))

    def validate_token(self):
        if self.token_valid:
            return True, ""
        return False, "Invalid or expired access token."

    def get_all_policies(self):
        self.calls[('get_all_policies', None)] += 1
        if 'get_all_policies' in self.failing:
            raise FatalConfigurationError("Access denied. The token lacks required permissions (Policy.Read.All).")
        return [dict(p) for p in self.policies]

    def get_user(self, user_id):
        return self._get('get_user', self.users, user_id)

    def get_group(self, group_id):
        return self._get('get_group', self.groups, group_id)

    def get_group_members(self, group_id):
        return self._list('get_group_members', self.members.get(group_id, []), group_id)

    def get_service_principal(self, sp_id):
        return self._get('get_service_principal', self.service_principals, sp_id)

    def find_service_principal_by_app_id(self, app_id):
        failure = self._call('find_service_principal_by_app_id', app_id)
        if failure:
            return failure
        for sp in self.service_principals.values():
            if sp.get('appId') == app_id:
                return LookupResult.success(sp)
        return LookupResult.missing(f"No service principal with appId {app_id}")

    def list_named_locations(self):
        return self._list('list_named_locations', self.named_locations)

    def list_activated_roles(self):
        return self._list('list_activated_roles', self.activated_roles)

    def list_role_templates(self):
        return self._list('list_role_templates', self.role_templates)

    def get_role_members(self, role_id):
        return self._list('get_role_members', self.role_members.get(role_id, []), role_id)

    def get_authentication_contexts(self):
        return self._list('get_authentication_contexts', self.auth_contexts)

    def get_organization(self):
        failure = self._call('get_organization')
        if failure:
            return failure
        if self.organization is None:
            return LookupResult.missing("No organization object returned")
        return LookupResult.success(self.organization)


@pytest.fixture
def session():
    return CollectionSession(verbose=False)


@pytest.fixture
def token():
    return make_token()
