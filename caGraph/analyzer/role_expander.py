"""
Directory role membership expansion
"""

from typing import Any, Dict, Optional, Tuple

from ..errors import STRUCTURAL_ANOMALY, TRANSIENT_LOOKUP_FAILURE
from ..graph.api_client import GraphAPIClient
from .entity_resolver import EntityResolver
from .models import DirectoryEntity, GroupMembershipRecord
from .session import CollectionSession


class RoleExpander:
    """Resolves role templates to the users assigned to their activated instance"""

    def __init__(self, api_client: GraphAPIClient, session: CollectionSession, entity_resolver: EntityResolver = None):
        self.api_client = api_client
        self.session = session
        self.entity_resolver = entity_resolver or EntityResolver(api_client, session)

    def expand(self, role_template_id: str) -> Tuple[GroupMembershipRecord, ...]:
        """Get the user members of a role template.

        Policies reference roles by template ID, but members can only be read
        from the activated role instance. A template with no activated instance
        has no members; that is not an error.

        Parameters:
            role_template_id (str): Directory role template ID

        Returns:
            Tuple[GroupMembershipRecord, ...]: User members, each with via=[role display name]
        """
        cached = self.session.role_expansions.get(role_template_id)
        if cached is not None:
            return cached

        activated = self._activated_role(role_template_id)
        if activated is None:
            self.session.role_expansions[role_template_id] = ()
            return ()

        role_name = activated.get('displayName') or self.entity_resolver.resolve('role', role_template_id).display_name
        result = self.api_client.get_role_members(activated['id'])
        if not result.ok:
            self.session.record_anomaly(
                TRANSIENT_LOOKUP_FAILURE, role_template_id,
                f"Failed to fetch members of role {role_name}: {result.error or result.status}"
            )
            return ()

        members: Dict[str, GroupMembershipRecord] = {}
        for raw in result.value or []:
            try:
                entity = DirectoryEntity.from_graph(raw)
            except ValueError:
                self.session.record_anomaly(STRUCTURAL_ANOMALY, role_template_id,
                                            f"Skipping member without id in role {role_name}")
                continue

            # Only users are flattened; role-assignable groups and service principals stay out
            if entity.type != 'user' or entity.id in members:
                continue
            entity = self.entity_resolver.register_entity(entity)
            members[entity.id] = GroupMembershipRecord(entity.id, 'user', entity.display_name, (role_name,))

        expansion = tuple(members.values())
        self.session.role_expansions[role_template_id] = expansion
        return expansion

    def _activated_role(self, role_template_id: str) -> Optional[Dict[str, Any]]:
        """Find the activated role instance for a template (activated roles are listed once per run)."""
        if self.session.activated_roles is None:
            result = self.api_client.list_activated_roles()
            if not result.ok:
                self.session.record_anomaly(TRANSIENT_LOOKUP_FAILURE, 'directoryRoles',
                                            f"Failed to list activated roles: {result.error or result.status}")
                self.session.activated_roles = {}
            else:
                self.session.activated_roles = {
                    role['roleTemplateId']: role
                    for role in result.value or []
                    if role.get('roleTemplateId') and role.get('id')
                }
        return self.session.activated_roles.get(role_template_id)
