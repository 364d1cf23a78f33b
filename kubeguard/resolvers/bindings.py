"""
Rule resolvers for the bindings that grant role templates and global roles.
"""

from typing import Callable, Iterable, List, Optional

from kubeguard.admission.review import UserInfo
from kubeguard.auth.global_role import GlobalRoleResolver
from kubeguard.auth.role_template import RoleTemplateResolver
from kubeguard.cache import ObjectCache
from kubeguard.exceptions import WebhookError
from kubeguard.models import (
    ClusterRoleTemplateBinding,
    GlobalRole,
    GlobalRoleBinding,
    PolicyRule,
    ProjectRoleTemplateBinding,
)
from kubeguard.resolvers.base import LOCAL_CLUSTER, RuleResolution, RuleResolver, group_key, user_key

CRTB_SUBJECT_INDEX = "management.cattle.io/crtb-by-subject"
PRTB_SUBJECT_INDEX = "management.cattle.io/prtb-by-subject"
GRB_SUBJECT_INDEX = "management.cattle.io/grb-by-subject"


def crtb_by_subject(crtb: ClusterRoleTemplateBinding) -> List[str]:
    if crtb.user_name:
        return [user_key(crtb.user_name, crtb.cluster_name)]
    if crtb.group_name:
        return [group_key(crtb.group_name, crtb.cluster_name)]
    if crtb.group_principal_name:
        return [group_key(crtb.group_principal_name, crtb.cluster_name)]
    return []


def namespace_from_project(project_name: str) -> Optional[str]:
    """Project names have the form <cluster>:<project>."""
    pieces = project_name.split(":")
    if len(pieces) != 2:
        return None
    return pieces[1]


def prtb_by_subject(prtb: ProjectRoleTemplateBinding) -> List[str]:
    namespace = namespace_from_project(prtb.project_name)
    if namespace is None:
        return []
    if prtb.user_name:
        return [user_key(prtb.user_name, namespace)]
    if prtb.group_name:
        return [group_key(prtb.group_name, namespace)]
    if prtb.group_principal_name:
        return [group_key(prtb.group_principal_name, namespace)]
    return []


def grb_by_subject(grb: GlobalRoleBinding) -> List[str]:
    if grb.user_name:
        return [user_key(grb.user_name, "")]
    if grb.group_principal_name:
        return [group_key(grb.group_principal_name, "")]
    return []


def _subject_keys(user: UserInfo, namespace: str) -> List[str]:
    return [group_key(group, namespace) for group in user.groups] + [user_key(user.username, namespace)]


class _TemplateBindingRuleResolver(RuleResolver):
    index_name: str = ""

    def __init__(self, bindings: ObjectCache, role_template_resolver: RoleTemplateResolver, index_func):
        bindings.add_indexer(self.index_name, index_func)
        self.bindings = bindings
        self.role_template_resolver = role_template_resolver

    def rules_for(self, user: UserInfo, namespace: str) -> RuleResolution:
        result = RuleResolution()
        for key in _subject_keys(user, namespace):
            for binding in self.bindings.get_by_index(self.index_name, key):
                try:
                    result.add(self.role_template_resolver.rules_from_template_name(binding.role_template_name))
                except WebhookError as e:
                    result.add(error=e)
        return result


class CRTBRuleResolver(_TemplateBindingRuleResolver):
    """Rules granted in a cluster, keyed by the cluster name as namespace."""

    index_name = CRTB_SUBJECT_INDEX

    def __init__(self, crtbs: ObjectCache[ClusterRoleTemplateBinding], role_template_resolver: RoleTemplateResolver):
        super().__init__(crtbs, role_template_resolver, crtb_by_subject)


class PRTBRuleResolver(_TemplateBindingRuleResolver):
    """Rules granted in a project, keyed by the project namespace."""

    index_name = PRTB_SUBJECT_INDEX

    def __init__(self, prtbs: ObjectCache[ProjectRoleTemplateBinding], role_template_resolver: RoleTemplateResolver):
        super().__init__(prtbs, role_template_resolver, prtb_by_subject)


GlobalRoleRules = Callable[[str, GlobalRole, GlobalRoleResolver], Iterable[PolicyRule]]


def inherited_cluster_rules(namespace: str, role: GlobalRole, resolver: GlobalRoleResolver) -> List[PolicyRule]:
    """Global rules in the local cluster, inherited template rules elsewhere."""
    if namespace == LOCAL_CLUSTER:
        return resolver.global_rules_from_role(role) or []
    return resolver.cluster_rules_from_role(role) or []


def fleet_workspace_resource_rules(_: str, role: GlobalRole, resolver: GlobalRoleResolver) -> List[PolicyRule]:
    return resolver.fleet_workspace_resource_rules(role)


def fleet_workspace_verbs_rules(_: str, role: GlobalRole, resolver: GlobalRoleResolver) -> List[PolicyRule]:
    return resolver.fleet_workspace_verbs_rules(role)


class GRBRuleResolver(RuleResolver):
    """Rules a user holds through GlobalRoleBindings, as selected by role_rules."""

    def __init__(
        self,
        grbs: ObjectCache[GlobalRoleBinding],
        global_role_resolver: GlobalRoleResolver,
        role_rules: GlobalRoleRules = inherited_cluster_rules,
    ):
        grbs.add_indexer(GRB_SUBJECT_INDEX, grb_by_subject)
        self.grbs = grbs
        self.global_role_resolver = global_role_resolver
        self.role_rules = role_rules

    def rules_for(self, user: UserInfo, namespace: str) -> RuleResolution:
        result = RuleResolution()
        for key in _subject_keys(user, ""):
            for grb in self.grbs.get_by_index(GRB_SUBJECT_INDEX, key):
                try:
                    role = self.global_role_resolver.get_global_role(grb.global_role_name)
                    result.add(self.role_rules(namespace, role, self.global_role_resolver))
                except WebhookError as e:
                    result.add(error=e)
        return result
