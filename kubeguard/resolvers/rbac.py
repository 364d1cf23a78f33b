from typing import List

from kubeguard.admission.review import UserInfo
from kubeguard.cache import ObjectCache
from kubeguard.exceptions import NotFoundError
from kubeguard.models import ClusterRole, ClusterRoleBinding, PolicyRule, Role, RoleBinding, RoleRef, Subject
from kubeguard.resolvers.base import RuleResolution, RuleResolver

SERVICE_ACCOUNT_PREFIX = "system:serviceaccount:"


def applies_to_user(user: UserInfo, subject: Subject, namespace: str) -> bool:
    """True if the binding subject refers to the user."""
    if subject.kind == "User":
        return user.username == subject.name
    if subject.kind == "Group":
        return subject.name in user.groups
    if subject.kind == "ServiceAccount":
        sa_namespace = subject.namespace or namespace
        if not sa_namespace:
            return False
        return user.username == f"{SERVICE_ACCOUNT_PREFIX}{sa_namespace}:{subject.name}"
    return False


class DefaultRuleResolver(RuleResolver):
    """Rules granted through plain Kubernetes RBAC bindings."""

    def __init__(
        self,
        roles: ObjectCache[Role],
        role_bindings: ObjectCache[RoleBinding],
        cluster_roles: ObjectCache[ClusterRole],
        cluster_role_bindings: ObjectCache[ClusterRoleBinding],
    ):
        self.roles = roles
        self.role_bindings = role_bindings
        self.cluster_roles = cluster_roles
        self.cluster_role_bindings = cluster_role_bindings

    def role_reference_rules(self, role_ref: RoleRef, namespace: str) -> List[PolicyRule]:
        if role_ref.kind == "Role":
            return self.roles.get(role_ref.name, namespace).rules
        if role_ref.kind == "ClusterRole":
            return self.cluster_roles.get(role_ref.name).rules
        raise NotFoundError(role_ref.kind.lower(), role_ref.name, namespace)

    def rules_for(self, user: UserInfo, namespace: str) -> RuleResolution:
        result = RuleResolution()

        for binding in self.cluster_role_bindings.list():
            if not any(applies_to_user(user, subject, "") for subject in binding.subjects):
                continue
            try:
                result.add(self.role_reference_rules(binding.role_ref, ""))
            except NotFoundError as e:
                result.add(error=e)

        if not namespace:
            return result

        for binding in self.role_bindings.list(namespace):
            if not any(applies_to_user(user, subject, namespace) for subject in binding.subjects):
                continue
            try:
                result.add(self.role_reference_rules(binding.role_ref, namespace))
            except NotFoundError as e:
                result.add(error=e)

        return result
