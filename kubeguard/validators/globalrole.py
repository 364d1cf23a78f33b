from typing import List, Optional

from kubeguard.admission.handler import Admitter, ValidatingAdmissionHandler
from kubeguard.admission.review import (
    AdmissionRequest,
    AdmissionResponse,
    GroupVersionResource,
    Operation,
    response_allowed,
    response_bad_request,
)
from kubeguard.auth.escalation import ESCALATE_VERB, CachedVerbChecker, SubjectAccessReviewer
from kubeguard.auth.global_role import GlobalRoleResolver
from kubeguard.auth.role_template import CLUSTER_CONTEXT
from kubeguard.exceptions import RoleTemplateNotFoundError
from kubeguard.models import GlobalRole
from kubeguard.resolvers.base import RuleResolver
from kubeguard.validators.common import GLOBAL_ROLE_GVR, FieldError, require, validate_rules

FIELD_PATH = "globalrole"


def validate_delete(old_role: GlobalRole) -> AdmissionResponse:
    if old_role.builtin:
        return response_bad_request(str(FieldError.forbidden(FIELD_PATH, "cannot delete builtin GlobalRoles")))
    return response_allowed()


def validate_create_fields(new_role: GlobalRole) -> Optional[FieldError]:
    if new_role.builtin:
        return FieldError.forbidden(FIELD_PATH, "cannot create builtin GlobalRoles")
    return None


# Fields a builtin GlobalRole may change.
MUTABLE_BUILTIN_FIELDS = {"metadata", "apiVersion", "kind", "newUserDefault"}


def _comparable(obj: Optional[dict]) -> dict:
    return {key: value for key, value in (obj or {}).items() if key not in MUTABLE_BUILTIN_FIELDS}


def validate_update_fields(
    old_role: GlobalRole, new_role: GlobalRole, old_obj: Optional[dict], new_obj: Optional[dict]
) -> Optional[FieldError]:
    if not old_role.builtin:
        if new_role.builtin:
            return FieldError.forbidden(FIELD_PATH, f"cannot update non-builtIn GlobalRole {old_role.name} to be builtIn")
        return None
    if _comparable(old_obj) != _comparable(new_obj):
        return FieldError.forbidden(
            FIELD_PATH, "updates to builtIn GlobalRoles for fields other than 'newUserDefault' are forbidden"
        )
    return None


class GlobalRoleAdmitter(Admitter):
    def __init__(
        self,
        global_role_resolver: GlobalRoleResolver,
        cluster_rule_resolver: RuleResolver,
        rule_resolver: RuleResolver,
        sar: SubjectAccessReviewer,
    ):
        self.global_role_resolver = global_role_resolver
        self.cluster_rule_resolver = cluster_rule_resolver
        self.rule_resolver = rule_resolver
        self.sar = sar

    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        old_role, new_role = request.old_and_new(GlobalRole)

        if request.operation == Operation.DELETE:
            return validate_delete(old_role)
        if request.operation == Operation.UPDATE:
            if new_role.metadata.deletion_timestamp is not None:
                return response_allowed()
            field_error = validate_update_fields(old_role, new_role, request.old_object, request.object)
        else:
            field_error = validate_create_fields(new_role)
        if field_error is not None:
            return response_bad_request(str(field_error))

        field_error = self.validate_inherited_cluster_roles(old_role, new_role)
        if field_error is not None:
            return response_bad_request(str(field_error))

        global_rules = self.global_role_resolver.global_rules_from_role(new_role)
        rule_errors = validate_rules(global_rules, False, f"{FIELD_PATH}.rules")
        if rule_errors:
            return response_bad_request(rule_errors)
        for namespace, rules in new_role.namespaced_rules.items():
            rule_errors = validate_rules(rules, True, f"{FIELD_PATH}.namespacedRules[{namespace}]")
            if rule_errors:
                return response_bad_request(rule_errors)

        cluster_rules = self.global_role_resolver.cluster_rules_from_role(new_role) or []

        escalate_checker = CachedVerbChecker(request, new_role.name, self.sar, GLOBAL_ROLE_GVR, ESCALATE_VERB)
        decision = await escalate_checker.is_rules_allowed(cluster_rules, self.cluster_rule_resolver, "")
        if not decision.allowed:
            return decision.to_response()

        decision = await escalate_checker.is_rules_allowed(global_rules or [], self.rule_resolver, "")
        return decision.to_response()

    def validate_inherited_cluster_roles(self, old_role: GlobalRole, new_role: GlobalRole) -> Optional[FieldError]:
        """Newly inherited templates must exist, be cluster scoped and unlocked."""
        field_path = f"{FIELD_PATH}.inheritedClusterRoles"
        try:
            current = self.global_role_resolver.get_role_templates_for_global_role(new_role)
        except RoleTemplateNotFoundError as e:
            return FieldError.invalid(field_path, "", f"unable to find all roleTemplates {e}")

        previous = set(old_role.inherited_cluster_roles)
        for role_template in current:
            if role_template.name in previous:
                continue
            if role_template.context != CLUSTER_CONTEXT:
                return FieldError.invalid(
                    field_path,
                    role_template.name,
                    f"unable to bind a roleTemplate with non-cluster context: {role_template.context}",
                )
            if role_template.locked:
                return FieldError.invalid(field_path, role_template.name, "unable to use locked roleTemplate")
        return None


class GlobalRoleValidator(ValidatingAdmissionHandler):
    """Protects builtin GlobalRoles and checks the rules they grant for escalation."""

    def __init__(
        self,
        global_role_resolver: GlobalRoleResolver,
        cluster_rule_resolver: RuleResolver,
        rule_resolver: RuleResolver,
        sar: SubjectAccessReviewer,
    ):
        require(
            type(self).__name__,
            global_role_resolver=global_role_resolver,
            cluster_rule_resolver=cluster_rule_resolver,
            rule_resolver=rule_resolver,
            sar=sar,
        )
        self._admitter = GlobalRoleAdmitter(global_role_resolver, cluster_rule_resolver, rule_resolver, sar)

    def gvr(self) -> GroupVersionResource:
        return GLOBAL_ROLE_GVR

    def operations(self) -> List[Operation]:
        return [Operation.UPDATE, Operation.CREATE, Operation.DELETE]

    def admitters(self) -> List[Admitter]:
        return [self._admitter]
