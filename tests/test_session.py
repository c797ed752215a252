"""
Collection session tests
"""

import pytest

from caGraph.analyzer.assignment_resolver import PolicyAssignmentResolver
from caGraph.analyzer.session import CollectionSession
from caGraph.errors import ANOMALY_KINDS, TRANSIENT_LOOKUP_FAILURE
from conftest import FakeDirectoryClient, group, guid, make_policy, user


G = guid(1)
U1, U2 = guid(11), guid(12)
LOC = guid(41)
ROLE_TEMPLATE = '62e90394-69f5-4237-9190-012177145e10'
ROLE_ID = guid(500)


@pytest.fixture
def client():
    return FakeDirectoryClient(
        users=[user(U1, 'U1'), user(U2, 'U2')],
        groups=[group(G, 'Finance')],
        members={G: [user(U1, 'U1')]},
        named_locations=[{'@odata.type': '#microsoft.graph.ipNamedLocation', 'id': LOC, 'displayName': 'HQ'}],
        role_templates=[{'id': ROLE_TEMPLATE, 'displayName': 'Global Administrator'}],
        activated_roles=[{'id': ROLE_ID, 'displayName': 'Global Administrator', 'roleTemplateId': ROLE_TEMPLATE}],
        role_members={ROLE_ID: [user(U2, 'U2')]},
    )


def sample_policy():
    return make_policy('p1', users={'includeGroups': [G], 'includeRoles': [ROLE_TEMPLATE], 'excludeUsers': [guid(99)]},
                       locations={'excludeLocations': [LOC]})


class TestCollectionSession:

    def test_clear_resets_every_cache(self, client, session):
        PolicyAssignmentResolver(client, session).resolve_policy(sample_policy())
        assert session.relationships and session.anomalies and session.group_members and session.role_expansions

        session.clear()

        assert session.entity_cache == {}
        assert session.bulk_loaded == set()
        assert session.group_members == {}
        assert session.group_expansions == {}
        assert session.activated_roles is None
        assert session.role_expansions == {}
        assert len(session.deduplicator) == 0
        assert session.registry == {}
        assert session.relationships == []
        assert session.anomalies == []

    def test_cleared_session_fetches_and_emits_again(self, client, session):
        resolver = PolicyAssignmentResolver(client, session)
        resolver.resolve_policy(sample_policy())
        first = list(session.relationships)

        session.clear()
        resolver.resolve_policy(sample_policy())

        assert session.relationships == first
        assert client.calls[('get_group', G)] == 2
        assert client.calls[('get_group_members', G)] == 2
        assert client.calls[('list_named_locations', None)] == 2
        assert client.calls[('list_activated_roles', None)] == 2
        assert client.calls[('get_role_members', ROLE_ID)] == 2

    def test_record_anomaly_counts_by_kind(self):
        session = CollectionSession(verbose=False)

        session.record_anomaly(TRANSIENT_LOOKUP_FAILURE, 'g1', 'Failed to fetch members of group g1')

        assert session.anomaly_counts() == {TRANSIENT_LOOKUP_FAILURE: 1}
        assert session.anomalies[0].to_dict()['subject'] == 'g1'

    def test_unknown_anomaly_kind_is_rejected(self):
        session = CollectionSession(verbose=False)

        with pytest.raises(ValueError):
            session.record_anomaly('somethingElse', 'g1', 'message')
        assert session.anomalies == []
        assert 'somethingElse' not in ANOMALY_KINDS
