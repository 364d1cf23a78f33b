"""
Rules granted by GlobalRoles globally, on downstream clusters and in fleet
workspaces.
"""

from typing import List, Optional

from kubeguard.auth.role_template import RoleTemplateResolver
from kubeguard.auth.rules import dedupe_rules
from kubeguard.cache import ObjectCache
from kubeguard.exceptions import NotFoundError, ResolutionError
from kubeguard.models import GlobalRole, PolicyRule, RoleTemplate

OWNER_ROLE_TEMPLATE = "cluster-owner"
ADMIN_ROLES = ["restricted-admin"]

FLEET_RESOURCES = [
    "clusterregistrationtokens",
    "gitreporestrictions",
    "clusterregistrations",
    "clusters",
    "gitrepos",
    "bundles",
    "clustergroups",
]


def _is_admin_role(role: Optional[GlobalRole]) -> bool:
    return role is not None and role.name in ADMIN_ROLES


class GlobalRoleResolver:
    """Determines which rules a GlobalRole gives in each context."""

    def __init__(self, role_template_resolver: RoleTemplateResolver, global_roles: ObjectCache[GlobalRole]):
        self.role_template_resolver = role_template_resolver
        self.global_roles = global_roles

    @property
    def global_role_cache(self) -> ObjectCache[GlobalRole]:
        return self.global_roles

    def global_rules_from_role(self, role: Optional[GlobalRole]) -> Optional[List[PolicyRule]]:
        """Rules the role grants cluster-wide in the local cluster."""
        if role is None:
            return None
        return role.rules

    def cluster_rules_from_role(self, role: Optional[GlobalRole]) -> Optional[List[PolicyRule]]:
        """
        Rules the role grants on every downstream cluster. The restricted
        admin role counts as owner of all clusters, whatever it inherits.
        """
        if role is None:
            return None

        if _is_admin_role(role):
            try:
                return self.role_template_resolver.rules_from_template_name(OWNER_ROLE_TEMPLATE)
            except ResolutionError as e:
                raise ResolutionError(f"unable to resolve {OWNER_ROLE_TEMPLATE} rules: {e}") from e

        rules: List[PolicyRule] = []
        for name in role.inherited_cluster_roles:
            try:
                rules.extend(self.role_template_resolver.rules_from_template_name(name))
            except ResolutionError as e:
                raise ResolutionError(f"unable to get cluster rules for roleTemplate {name}: {e}") from e
        return dedupe_rules(rules)

    def get_role_templates_for_global_role(self, role: Optional[GlobalRole]) -> List[RoleTemplate]:
        """Top-level inherited templates, not flattened."""
        if role is None:
            return []
        return [self.role_template_resolver.get_template(name) for name in role.inherited_cluster_roles]

    def fleet_workspace_resource_rules(self, role: Optional[GlobalRole]) -> List[PolicyRule]:
        """
        Rules on fleet resources in workspace namespaces. Assumes access to
        every workspace, so only use it to evaluate the role's own fleet
        workspace permissions.
        """
        if _is_admin_role(role):
            return [PolicyRule(verbs=["*"], api_groups=["fleet.cattle.io"], resources=list(FLEET_RESOURCES))]
        if role is None or role.inherited_fleet_workspace_permissions is None:
            return []
        return role.inherited_fleet_workspace_permissions.resource_rules

    def fleet_workspace_verbs_rules(self, role: Optional[GlobalRole]) -> List[PolicyRule]:
        """Rules on the cluster-wide fleetworkspaces objects."""
        if _is_admin_role(role):
            return [PolicyRule(verbs=["*"], api_groups=["management.cattle.io"], resources=["fleetworkspaces"])]
        if role is None or role.inherited_fleet_workspace_permissions is None:
            return []
        verbs = role.inherited_fleet_workspace_permissions.workspace_verbs
        if verbs is None:
            return []
        return [PolicyRule(verbs=verbs, api_groups=["management.cattle.io"], resources=["fleetworkspaces"])]

    def get_global_role(self, name: str) -> GlobalRole:
        try:
            return self.global_roles.get(name)
        except NotFoundError as e:
            raise ResolutionError(f"failed to get GlobalRole {name}: {e}") from e
