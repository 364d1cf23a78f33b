from typing import List, Optional, Tuple

from kubeguard.admission.handler import Admitter, ValidatingAdmissionHandler
from kubeguard.admission.review import (
    AdmissionRequest,
    AdmissionResponse,
    GroupVersionResource,
    Operation,
    response_allowed,
    response_bad_request,
    response_failed_escalation,
)
from kubeguard.auth.escalation import BIND_VERB, CachedVerbChecker, SubjectAccessReviewer
from kubeguard.auth.global_role import GlobalRoleResolver
from kubeguard.exceptions import NotFoundError, RoleTemplateNotFoundError
from kubeguard.models import GlobalRole, GlobalRoleBinding, PolicyRule
from kubeguard.resolvers.base import RuleResolver
from kubeguard.validators.common import GLOBAL_ROLE_BINDING_GVR, GLOBAL_ROLE_GVR, FieldError, require

FIELD_PATH = "globalrolebindings"
IMMUTABLE = "field is immutable"


def validate_update_fields(old: GlobalRoleBinding, new: GlobalRoleBinding) -> Optional[FieldError]:
    if new.user_name != old.user_name:
        return FieldError.invalid(f"{FIELD_PATH}.userName", new.user_name, IMMUTABLE)
    if new.group_principal_name != old.group_principal_name:
        return FieldError.invalid(f"{FIELD_PATH}.groupPrincipalName", new.group_principal_name, IMMUTABLE)
    if new.global_role_name != old.global_role_name:
        return FieldError.invalid(f"{FIELD_PATH}.globalRoleName", new.global_role_name, IMMUTABLE)
    return None


class GlobalRoleBindingAdmitter(Admitter):
    def __init__(
        self,
        global_role_resolver: GlobalRoleResolver,
        rule_resolver: RuleResolver,
        cluster_rule_resolver: RuleResolver,
        fleet_rules_resolver: RuleResolver,
        fleet_verbs_resolver: RuleResolver,
        sar: SubjectAccessReviewer,
    ):
        self.global_role_resolver = global_role_resolver
        self.rule_resolver = rule_resolver
        self.cluster_rule_resolver = cluster_rule_resolver
        self.fleet_rules_resolver = fleet_rules_resolver
        self.fleet_verbs_resolver = fleet_verbs_resolver
        self.sar = sar

    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        old_binding, new_binding = request.old_and_new(GlobalRoleBinding)
        if request.operation == Operation.UPDATE and new_binding.metadata.deletion_timestamp is not None:
            return response_allowed()

        try:
            global_role = self.global_role_resolver.global_role_cache.get(new_binding.global_role_name)
        except NotFoundError:
            field_error = FieldError.not_found(f"{FIELD_PATH}.globalRoleName", new_binding.global_role_name)
            return response_bad_request(str(field_error))

        if request.operation == Operation.UPDATE:
            field_error = validate_update_fields(old_binding, new_binding)
        else:
            field_error = self.validate_create(new_binding, global_role)
        if field_error is not None:
            return response_bad_request(str(field_error))

        try:
            cluster_rules = self.global_role_resolver.cluster_rules_from_role(global_role) or []
        except RoleTemplateNotFoundError as e:
            return response_bad_request(f"at least one roleTemplate was not found {e}")

        checks: List[Tuple[List[PolicyRule], RuleResolver, str]] = [
            (cluster_rules, self.cluster_rule_resolver, ""),
            (self.global_role_resolver.global_rules_from_role(global_role) or [], self.rule_resolver, ""),
            (self.global_role_resolver.fleet_workspace_resource_rules(global_role), self.fleet_rules_resolver, ""),
            (self.global_role_resolver.fleet_workspace_verbs_rules(global_role), self.fleet_verbs_resolver, ""),
        ]
        for namespace, rules in global_role.namespaced_rules.items():
            checks.append((rules, self.rule_resolver, namespace))

        bind_checker = CachedVerbChecker(request, global_role.name, self.sar, GLOBAL_ROLE_GVR, BIND_VERB)
        failures = []
        for rules, resolver, namespace in checks:
            decision = await bind_checker.is_rules_allowed(rules, resolver, namespace)
            if not decision.allowed:
                failures.append(decision.message)

        if failures:
            return response_failed_escalation(f"errors due to escalation: {'; '.join(failures)}")
        return response_allowed()

    def validate_create(self, binding: GlobalRoleBinding, global_role: GlobalRole) -> Optional[FieldError]:
        if binding.user_name and binding.group_principal_name:
            return FieldError.forbidden(FIELD_PATH, "bindings can not set both userName and groupPrincipalName")
        if not binding.user_name and not binding.group_principal_name:
            return FieldError.required(FIELD_PATH, "bindings must have either userName or groupPrincipalName set")

        try:
            role_templates = self.global_role_resolver.get_role_templates_for_global_role(global_role)
        except RoleTemplateNotFoundError as e:
            return FieldError.invalid(FIELD_PATH, "", f"unable to find all roleTemplates {e}")

        locked = [rt.name for rt in role_templates if rt.locked]
        if locked:
            return FieldError.invalid(
                f"{FIELD_PATH}.globalRoleName",
                global_role.name,
                f"global role inherits roleTemplate(s) {', '.join(locked)} which is locked",
            )
        return None


class GlobalRoleBindingValidator(ValidatingAdmissionHandler):
    """Keeps bindings immutable and refuses to bind roles the requester could not grant."""

    def __init__(
        self,
        global_role_resolver: GlobalRoleResolver,
        rule_resolver: RuleResolver,
        cluster_rule_resolver: RuleResolver,
        fleet_rules_resolver: RuleResolver,
        fleet_verbs_resolver: RuleResolver,
        sar: SubjectAccessReviewer,
    ):
        require(
            type(self).__name__,
            global_role_resolver=global_role_resolver,
            rule_resolver=rule_resolver,
            cluster_rule_resolver=cluster_rule_resolver,
            fleet_rules_resolver=fleet_rules_resolver,
            fleet_verbs_resolver=fleet_verbs_resolver,
            sar=sar,
        )
        self._admitter = GlobalRoleBindingAdmitter(
            global_role_resolver, rule_resolver, cluster_rule_resolver, fleet_rules_resolver, fleet_verbs_resolver, sar
        )

    def gvr(self) -> GroupVersionResource:
        return GLOBAL_ROLE_BINDING_GVR

    def operations(self) -> List[Operation]:
        return [Operation.UPDATE, Operation.CREATE]

    def admitters(self) -> List[Admitter]:
        return [self._admitter]
