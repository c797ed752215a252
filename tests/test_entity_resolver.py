"""
Entity resolution and caching tests
"""

from caGraph.analyzer.entity_resolver import EntityResolver
from caGraph.analyzer.models import DirectoryEntity
from caGraph.errors import STRUCTURAL_ANOMALY, TRANSIENT_LOOKUP_FAILURE
from conftest import FakeDirectoryClient, guid, service_principal, user


U1 = guid(11)
SP_OBJECT_ID = guid(21)
SP_APP_ID = guid(31)
LOC1, LOC2 = guid(41), guid(42)


class TestEntityResolver:

    def test_cache_hit_skips_lookup(self, session):
        client = FakeDirectoryClient(users=[user(U1, 'Alice')])
        resolver = EntityResolver(client, session)

        first = resolver.resolve('user', U1)
        second = resolver.resolve('user', U1)

        assert first is second
        assert first.display_name == 'Alice'
        assert first.attributes['userPrincipalName'] == 'alice@contoso.com'
        assert client.calls[('get_user', U1)] == 1

    def test_missing_object_becomes_cached_placeholder(self, session):
        client = FakeDirectoryClient()
        resolver = EntityResolver(client, session)

        entity = resolver.resolve('user', U1)
        resolver.resolve('user', U1)

        assert entity.resolved is False
        assert entity.display_name == U1
        assert entity.to_dict()['unresolved'] is True
        assert client.calls[('get_user', U1)] == 1
        assert [a.kind for a in session.anomalies] == [TRANSIENT_LOOKUP_FAILURE]

    def test_service_principal_by_app_id_and_object_id_is_one_entity(self, session):
        client = FakeDirectoryClient(service_principals=[service_principal(SP_OBJECT_ID, 'Payroll', SP_APP_ID)])
        resolver = EntityResolver(client, session)

        by_app_id = resolver.resolve('servicePrincipal', SP_APP_ID)
        by_object_id = resolver.resolve('servicePrincipal', SP_OBJECT_ID)

        assert by_app_id is by_object_id
        assert by_app_id.id == SP_OBJECT_ID
        assert client.calls[('find_service_principal_by_app_id', SP_APP_ID)] == 1
        # The object id alias was cached from the appId lookup
        assert client.calls[('get_service_principal', SP_OBJECT_ID)] == 0

    def test_service_principal_object_id_first_caches_app_id(self, session):
        client = FakeDirectoryClient(service_principals=[service_principal(SP_OBJECT_ID, 'Payroll', SP_APP_ID)])
        resolver = EntityResolver(client, session)

        resolver.resolve('servicePrincipal', SP_OBJECT_ID)
        resolver.resolve('servicePrincipal', SP_APP_ID)

        assert client.calls[('find_service_principal_by_app_id', SP_APP_ID)] == 0

    def test_named_locations_are_preloaded_once(self, session):
        client = FakeDirectoryClient(named_locations=[
            {'@odata.type': '#microsoft.graph.ipNamedLocation', 'id': LOC1, 'displayName': 'HQ',
             'isTrusted': True, 'ipRanges': [{'cidrAddress': '10.0.0.0/8'}]},
            {'@odata.type': '#microsoft.graph.countryNamedLocation', 'id': LOC2, 'displayName': 'Blocked countries',
             'countriesAndRegions': ['KP']},
        ])
        resolver = EntityResolver(client, session)

        hq = resolver.resolve('namedLocation', LOC1)
        countries = resolver.resolve('namedLocation', LOC2)

        assert client.calls[('list_named_locations', None)] == 1
        assert hq.attributes['locationType'] == 'ip'
        assert hq.attributes['ipRanges'] == ['10.0.0.0/8']
        assert countries.attributes['locationType'] == 'country'

    def test_unknown_bulk_id_is_placeholder(self, session):
        client = FakeDirectoryClient(named_locations=[])
        resolver = EntityResolver(client, session)

        entity = resolver.resolve('namedLocation', LOC1)

        assert entity.resolved is False
        assert entity.type == 'namedLocation'

    def test_failed_listing_is_not_retried(self, session):
        client = FakeDirectoryClient(failing={'list_role_templates'})
        resolver = EntityResolver(client, session)

        resolver.resolve('role', guid(1))
        resolver.resolve('role', guid(2))

        assert client.calls[('list_role_templates', None)] == 1

    def test_unsupported_kind_is_structural(self, session):
        entity = EntityResolver(FakeDirectoryClient(), session).resolve('device', guid(1))

        assert entity.resolved is False
        assert session.anomalies[0].kind == STRUCTURAL_ANOMALY

    def test_register_entity_keeps_first(self, session):
        resolver = EntityResolver(FakeDirectoryClient(), session)
        original = DirectoryEntity(U1, 'Alice', 'user')

        resolver.register_entity(original)
        kept = resolver.register_entity(DirectoryEntity(U1, 'Alice (renamed)', 'user'))

        assert kept is original
