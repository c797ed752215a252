"""
Entity resolution with a run-scoped cache.

Raw object references found in policies are turned into canonical
``DirectoryEntity`` records. Lookups never raise: a failed or missing object
comes back as an unresolved placeholder so the graph always has a node to
attach to.
"""

from typing import Callable, Dict, Optional

from ..errors import STRUCTURAL_ANOMALY, TRANSIENT_LOOKUP_FAILURE
from ..graph.api_client import GraphAPIClient, LookupResult
from .models import DirectoryEntity
from .session import CollectionSession


class EntityResolver:
    """Resolves (kind, id) references to canonical directory entities"""

    # Kinds fetched as a full listing on first use
    BULK_KINDS = ('namedLocation', 'role')

    def __init__(self, api_client: GraphAPIClient, session: CollectionSession):
        """Initialize the resolver.

        Parameters:
            api_client (GraphAPIClient): Directory client used on cache misses
            session (CollectionSession): Run state holding the entity cache
        """
        self.api_client = api_client
        self.session = session
        self._fetchers: Dict[str, Callable[[str], LookupResult]] = {
            'user': api_client.get_user,
            'group': api_client.get_group,
        }

    def resolve(self, kind: str, object_id: str) -> DirectoryEntity:
        """Resolve a directory object reference.

        Parameters:
            kind (str): Entity type expected by the caller ('user', 'group', 'role',
                        'servicePrincipal', 'namedLocation')
            object_id (str): Object ID (or appId for service principals)

        Returns:
            DirectoryEntity: The cached or freshly fetched entity, or an unresolved
                             placeholder if the object could not be fetched
        """
        cached = self.session.entity_cache.get((kind, object_id))
        if cached is not None:
            return cached

        if kind in self.BULK_KINDS:
            self._preload(kind)
            cached = self.session.entity_cache.get((kind, object_id))
            if cached is not None:
                return cached
            return self._unresolved(kind, object_id, f"{kind} {object_id} not found in tenant listing")

        if kind == 'servicePrincipal':
            return self._resolve_service_principal(object_id)

        fetch = self._fetchers.get(kind)
        if fetch is None:
            return self._unresolved(kind, object_id, f"No lookup available for {kind} {object_id}",
                                    anomaly_kind=STRUCTURAL_ANOMALY)

        result = fetch(object_id)
        if not result.ok:
            return self._unresolved(kind, object_id, self._describe_failure(kind, object_id, result))

        entity = self._from_payload(result.value, kind, object_id)
        if entity is None:
            return self._unresolved(kind, object_id, f"Malformed {kind} payload for {object_id}",
                                    anomaly_kind=STRUCTURAL_ANOMALY)
        return self._store(kind, entity, object_id)

    def register_entity(self, entity: DirectoryEntity) -> DirectoryEntity:
        """Seed the cache with an entity built from a payload already in hand.

        Returns:
            DirectoryEntity: The canonical cached entity (an earlier entry wins)
        """
        return self._store(entity.type, entity)

    def _resolve_service_principal(self, object_id: str) -> DirectoryEntity:
        """Resolve a service principal by object ID, falling back to appId.

        Policies reference service principals by object ID in client application
        conditions and by appId in application conditions; both are cached as
        aliases of the same canonical entity.
        """
        result = self.api_client.get_service_principal(object_id)
        if not result.ok:
            fallback = self.api_client.find_service_principal_by_app_id(object_id)
            if fallback.ok:
                result = fallback
            else:
                message = self._describe_failure('servicePrincipal', object_id, fallback)
                return self._unresolved('servicePrincipal', object_id, message)

        entity = self._from_payload(result.value, 'servicePrincipal', object_id)
        if entity is None:
            return self._unresolved('servicePrincipal', object_id, f"Malformed servicePrincipal payload for {object_id}",
                                    anomaly_kind=STRUCTURAL_ANOMALY)
        return self._store('servicePrincipal', entity, object_id)

    def _preload(self, kind: str):
        """Fetch the full listing of a bulk kind once per run."""
        if kind in self.session.bulk_loaded:
            return
        self.session.bulk_loaded.add(kind)

        if kind == 'namedLocation':
            result = self.api_client.list_named_locations()
        else:
            result = self.api_client.list_role_templates()

        if not result.ok:
            self.session.record_anomaly(TRANSIENT_LOOKUP_FAILURE, kind,
                                        f"Failed to list {kind} objects: {result.error or result.status}")
            return

        for payload in result.value or []:
            entity = self._from_payload(payload, kind, None)
            if entity is not None:
                self._store(kind, entity)

    def _from_payload(self, payload, kind: str, object_id: Optional[str]) -> Optional[DirectoryEntity]:
        try:
            entity = DirectoryEntity.from_graph(payload, kind=kind)
        except ValueError as e:
            self.session.record_anomaly(STRUCTURAL_ANOMALY, object_id or kind, f"Skipping {kind} payload: {e}")
            return None
        if entity.type != kind:
            # Trust the caller's category; the payload's own discriminator is kept as an attribute
            entity = DirectoryEntity(entity.id, entity.display_name, kind,
                                     dict(entity.attributes, objectType=entity.type))
        return entity

    def _store(self, kind: str, entity: DirectoryEntity, *aliases: str) -> DirectoryEntity:
        cache = self.session.entity_cache
        canonical = cache.get((kind, entity.id), entity)
        cache[(kind, canonical.id)] = canonical

        keys = set(aliases)
        app_id = canonical.attributes.get('appId')
        if kind == 'servicePrincipal' and app_id:
            keys.add(app_id)
        if kind == 'role' and canonical.attributes.get('roleTemplateId'):
            keys.add(canonical.attributes['roleTemplateId'])
        for key in keys:
            cache.setdefault((kind, key), canonical)
        return canonical

    def _unresolved(self, kind: str, object_id: str, message: str,
                    anomaly_kind: str = TRANSIENT_LOOKUP_FAILURE) -> DirectoryEntity:
        self.session.record_anomaly(anomaly_kind, object_id, message)
        placeholder = DirectoryEntity.unresolved(object_id, kind)
        self.session.entity_cache[(kind, object_id)] = placeholder
        return placeholder

    @staticmethod
    def _describe_failure(kind: str, object_id: str, result: LookupResult) -> str:
        if result.not_found:
            return f"{kind} {object_id} not found (deleted or inaccessible)"
        return f"Failed to resolve {kind} {object_id}: {result.error}"
