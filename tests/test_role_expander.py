"""
Directory role expansion tests
"""

from caGraph.analyzer.role_expander import RoleExpander
from caGraph.errors import TRANSIENT_LOOKUP_FAILURE
from conftest import FakeDirectoryClient, guid, service_principal, user


GLOBAL_ADMIN_TEMPLATE = '62e90394-69f5-4237-9190-012177145e10'
SECURITY_READER_TEMPLATE = '5d6b6bb7-de71-4623-b4af-96380a352509'
ACTIVATED_ID = guid(500)
U1, U2, SP1 = guid(11), guid(12), guid(21)


def role_client(**overrides):
    options = dict(
        role_templates=[
            {'id': GLOBAL_ADMIN_TEMPLATE, 'displayName': 'Global Administrator'},
            {'id': SECURITY_READER_TEMPLATE, 'displayName': 'Security Reader'},
        ],
        activated_roles=[
            {'id': ACTIVATED_ID, 'displayName': 'Global Administrator', 'roleTemplateId': GLOBAL_ADMIN_TEMPLATE},
        ],
        role_members={
            ACTIVATED_ID: [user(U1, 'Alice'), service_principal(SP1, 'Automation', guid(31)), user(U2, 'Bob')],
        },
    )
    options.update(overrides)
    return FakeDirectoryClient(**options)


class TestRoleExpander:

    def test_only_users_are_returned(self, session):
        members = RoleExpander(role_client(), session).expand(GLOBAL_ADMIN_TEMPLATE)

        assert [m.member_id for m in members] == [U1, U2]
        assert all(m.member_type == 'user' for m in members)
        assert members[0].via_path == ('Global Administrator',)

    def test_template_without_activated_role_is_empty(self, session):
        client = role_client()

        members = RoleExpander(client, session).expand(SECURITY_READER_TEMPLATE)

        assert members == ()
        assert session.anomalies == []
        assert not any(method == 'get_role_members' for method, _ in client.calls)

    def test_activated_roles_listed_once(self, session):
        client = role_client()
        expander = RoleExpander(client, session)

        expander.expand(GLOBAL_ADMIN_TEMPLATE)
        expander.expand(SECURITY_READER_TEMPLATE)
        expander.expand(GLOBAL_ADMIN_TEMPLATE)

        assert client.calls[('list_activated_roles', None)] == 1
        assert client.calls[('get_role_members', ACTIVATED_ID)] == 1

    def test_member_lookup_failure_is_soft(self, session):
        client = role_client(failing={('get_role_members', ACTIVATED_ID)})

        members = RoleExpander(client, session).expand(GLOBAL_ADMIN_TEMPLATE)

        assert members == ()
        assert [a.kind for a in session.anomalies] == [TRANSIENT_LOOKUP_FAILURE]

    def test_activated_role_listing_failure_is_soft(self, session):
        client = role_client(failing={'list_activated_roles'})

        assert RoleExpander(client, session).expand(GLOBAL_ADMIN_TEMPLATE) == ()
        assert session.anomalies[0].subject == 'directoryRoles'
