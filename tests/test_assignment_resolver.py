"""
Policy assignment resolution tests
"""

import pytest

from caGraph.analyzer.assignment_resolver import PolicyAssignmentResolver, is_object_id
from caGraph.errors import STRUCTURAL_ANOMALY
from conftest import FakeDirectoryClient, group, guid, make_policy, service_principal, user


G, G_INNER = guid(1), guid(2)
U1, U2, U3 = guid(11), guid(12), guid(13)
SP_OBJECT_ID, SP_APP_ID = guid(21), guid(31)
ROLE_TEMPLATE = '62e90394-69f5-4237-9190-012177145e10'
ROLE_ID = guid(500)


@pytest.fixture
def client():
    return FakeDirectoryClient(
        users=[user(U1, 'U1'), user(U2, 'U2'), user(U3, 'U3')],
        groups=[group(G, 'Finance'), group(G_INNER, 'Finance EU')],
        members={G: [user(U1, 'U1'), user(U2, 'U2')], G_INNER: []},
        service_principals=[service_principal(SP_OBJECT_ID, 'Payroll', SP_APP_ID)],
        role_templates=[{'id': ROLE_TEMPLATE, 'displayName': 'Global Administrator'}],
        activated_roles=[{'id': ROLE_ID, 'displayName': 'Global Administrator', 'roleTemplateId': ROLE_TEMPLATE}],
        role_members={ROLE_ID: [user(U3, 'U3')]},
    )


class TestPolicyAssignmentResolver:

    def test_is_object_id(self):
        assert is_object_id(U1)
        assert is_object_id(U1.upper())
        assert not is_object_id('All')
        assert not is_object_id('GuestsOrExternalUsers')

    def test_shared_group_registers_entities_once(self, client, session):
        resolver = PolicyAssignmentResolver(client, session)

        resolver.resolve_policy(make_policy('p1', users={'includeGroups': [G]}))
        resolver.resolve_policy(make_policy('p2', users={'includeGroups': [G]}))

        assert set(session.registry) == {G, U1, U2}
        for member in (U1, U2):
            into_member = [r for r in session.relationships if r.target_id == member]
            assert sorted(r.policy_id for r in into_member) == ['p1', 'p2']
        assert client.calls[('get_group_members', G)] == 1

    def test_group_record_embeds_members(self, client, session):
        PolicyAssignmentResolver(client, session).resolve_policy(make_policy('p1', users={'includeGroups': [G]}))

        record = session.registry[G]
        assert [m['id'] for m in record['members']] == [U1, U2]
        assert record['members'][0]['via'] == ['Finance']
        assert record['cycleDetected'] is False
        assert record['maxDepthReached'] is False

    def test_member_relationships_carry_via(self, client, session):
        PolicyAssignmentResolver(client, session).resolve_policy(make_policy('p1', users={'excludeGroups': [G]}))

        direct = [r for r in session.relationships if r.target_id == G]
        indirect = [r for r in session.relationships if r.target_id == U1]
        assert direct[0].via is None
        assert direct[0].scope == 'exclude'
        assert indirect[0].via == ('Finance',)
        assert indirect[0].description == 'Excluded via group Finance'

    def test_keywords_are_kept_verbatim(self, client, session):
        policy = make_policy('p1', users={'includeUsers': ['All'], 'excludeUsers': ['GuestsOrExternalUsers', U1]},
                             applications={'includeApplications': ['All']})

        resolved = PolicyAssignmentResolver(client, session).resolve_policy(policy)

        assert resolved.keywords_for('include', 'user') == ['All']
        assert resolved.keywords_for('exclude', 'user') == ['GuestsOrExternalUsers']
        assert resolved.keywords_for('include', 'servicePrincipal', 'applications') == ['All']
        keyword_targets = sorted((r.scope, r.target_id) for r in session.relationships if r.target_type == 'keyword')
        assert keyword_targets == [('exclude', 'GuestsOrExternalUsers'), ('include', 'All')]

    def test_role_members_are_expanded(self, client, session):
        PolicyAssignmentResolver(client, session).resolve_policy(make_policy('p1', users={'includeRoles': [ROLE_TEMPLATE]}))

        via_role = [r for r in session.relationships if r.target_id == U3]
        assert via_role[0].via == ('Global Administrator',)
        assert session.registry[ROLE_TEMPLATE]['members'][0]['id'] == U3
        assert session.registry[U3]['displayName'] == 'U3'

    def test_expansion_can_be_disabled(self, client, session):
        resolver = PolicyAssignmentResolver(client, session, expand_groups=False, expand_roles=False)

        resolver.resolve_policy(make_policy('p1', users={'includeGroups': [G], 'includeRoles': [ROLE_TEMPLATE]}))

        assert {r.target_id for r in session.relationships} == {G, ROLE_TEMPLATE}
        assert client.calls[('get_group_members', G)] == 0

    def test_application_and_client_application_share_service_principal(self, client, session):
        resolver = PolicyAssignmentResolver(client, session)

        resolver.resolve_policy(make_policy('p1', applications={'includeApplications': [SP_APP_ID]}))
        resolver.resolve_policy(make_policy('p2', clientApplications={'includeServicePrincipals': [SP_OBJECT_ID]}))

        assert [k for k in session.registry if k in (SP_OBJECT_ID, SP_APP_ID)] == [SP_OBJECT_ID]
        targets = {(r.policy_id, r.target_id) for r in session.relationships}
        assert targets == {('p1', SP_OBJECT_ID), ('p2', SP_OBJECT_ID)}

    def test_repeated_value_yields_one_relationship(self, client, session):
        PolicyAssignmentResolver(client, session).resolve_policy(make_policy('p1', users={'includeUsers': [U1, U1]}))

        assert len(session.relationships) == 1

    def test_malformed_values_are_skipped(self, client, session):
        resolved = PolicyAssignmentResolver(client, session).resolve_policy(
            make_policy('p1', users={'includeUsers': [None, '  ', U1]}))

        assert [e['id'] for e in resolved.assignments[0].entities] == [U1]
        assert [a.kind for a in session.anomalies] == [STRUCTURAL_ANOMALY, STRUCTURAL_ANOMALY]

    def test_policy_without_id_is_skipped(self, client, session):
        policy = make_policy('p1')
        del policy['id']

        assert PolicyAssignmentResolver(client, session).resolve_policy(policy) is None
        assert session.anomalies[0].kind == STRUCTURAL_ANOMALY

    def test_unresolvable_user_still_produces_relationship(self, client, session):
        missing = guid(99)

        PolicyAssignmentResolver(client, session).resolve_policy(make_policy('p1', users={'includeUsers': [missing]}))

        assert session.registry[missing]['unresolved'] is True
        assert session.relationships[0].target_display_name == missing

    def test_role_is_expanded_when_template_listing_fails(self, client, session):
        client.failing.add('list_role_templates')

        PolicyAssignmentResolver(client, session).resolve_policy(make_policy('p1', users={'includeRoles': [ROLE_TEMPLATE]}))

        assert session.registry[ROLE_TEMPLATE]['unresolved'] is True
        assert client.calls[('get_role_members', ROLE_ID)] == 1
        via_role = [r for r in session.relationships if r.target_id == U3]
        assert via_role[0].via == ('Global Administrator',)

    def test_group_is_expanded_when_group_lookup_fails(self, client, session):
        client.failing.add(('get_group', G))

        PolicyAssignmentResolver(client, session).resolve_policy(make_policy('p1', users={'includeGroups': [G]}))

        assert session.registry[G]['unresolved'] is True
        members = sorted(r.target_id for r in session.relationships if r.via)
        assert members == [U1, U2]
