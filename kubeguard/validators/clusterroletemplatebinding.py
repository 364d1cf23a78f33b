from typing import List, Optional

from kubeguard.admission.handler import NAMESPACED_SCOPE, Admitter, ValidatingAdmissionHandler
from kubeguard.admission.review import (
    AdmissionRequest,
    AdmissionResponse,
    GroupVersionResource,
    Operation,
    response_allowed,
    response_bad_request,
)
from kubeguard.auth.escalation import EscalationChecker
from kubeguard.auth.role_template import CLUSTER_CONTEXT, RoleTemplateResolver
from kubeguard.cache import ObjectCache
from kubeguard.exceptions import NotFoundError
from kubeguard.models import Cluster, ClusterRoleTemplateBinding
from kubeguard.validators.common import CRTB_GVR, FieldError, require

FIELD_PATH = "clusterroletemplatebinding"
IMMUTABLE = "field is immutable"
SINGLE_TARGET = "binding must target either a user [userName]/[userPrincipalName] OR a group [groupName]/[groupPrincipalName]"


def validate_update_fields(old: ClusterRoleTemplateBinding, new: ClusterRoleTemplateBinding) -> Optional[FieldError]:
    if old.role_template_name != new.role_template_name:
        return FieldError.invalid(f"{FIELD_PATH}.roleTemplateName", new.role_template_name, IMMUTABLE)
    if old.cluster_name != new.cluster_name:
        return FieldError.invalid(f"{FIELD_PATH}.clusterName", new.cluster_name, IMMUTABLE)
    # subject fields may be filled in once, never changed
    for field_name, alias in (
        ("user_name", "userName"),
        ("user_principal_name", "userPrincipalName"),
        ("group_name", "groupName"),
        ("group_principal_name", "groupPrincipalName"),
    ):
        old_value = getattr(old, field_name)
        new_value = getattr(new, field_name)
        if old_value and old_value != new_value:
            return FieldError.invalid(f"{FIELD_PATH}.{alias}", new_value, IMMUTABLE)
    if (new.group_name or old.group_principal_name) and (new.user_name or old.user_principal_name):
        return FieldError.forbidden(FIELD_PATH, SINGLE_TARGET)
    return None


class ClusterRoleTemplateBindingAdmitter(Admitter):
    def __init__(
        self,
        role_template_resolver: RoleTemplateResolver,
        escalation_checker: EscalationChecker,
        clusters: ObjectCache[Cluster],
    ):
        self.role_template_resolver = role_template_resolver
        self.escalation_checker = escalation_checker
        self.clusters = clusters

    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        if request.operation == Operation.UPDATE:
            old_crtb, new_crtb = request.old_and_new(ClusterRoleTemplateBinding)
            field_error = validate_update_fields(old_crtb, new_crtb)
            if field_error is not None:
                return response_bad_request(str(field_error))

        crtb = request.object_as(ClusterRoleTemplateBinding)
        if request.operation == Operation.CREATE:
            field_error = self.validate_create_fields(crtb)
            if field_error is not None:
                return response_bad_request(str(field_error))

        try:
            role_template = self.role_template_resolver.role_template_cache.get(crtb.role_template_name)
        except NotFoundError:
            return response_allowed()

        rules = self.role_template_resolver.rules_from_template(role_template)
        decision = await self.escalation_checker.confirm_no_escalation(
            request, rules, crtb.cluster_name, CRTB_GVR, name=crtb.name
        )
        return decision.to_response()

    def validate_create_fields(self, crtb: ClusterRoleTemplateBinding) -> Optional[FieldError]:
        has_user = bool(crtb.user_name or crtb.user_principal_name)
        has_group = bool(crtb.group_name or crtb.group_principal_name)
        if has_user == has_group:
            return FieldError.forbidden(FIELD_PATH, SINGLE_TARGET)

        if not crtb.cluster_name:
            return FieldError.required(f"{FIELD_PATH}.clusterName", "field is required")
        if crtb.cluster_name != crtb.namespace:
            return FieldError.forbidden(FIELD_PATH, "clusterName and namespace must be the same value")
        try:
            self.clusters.get(crtb.cluster_name)
        except NotFoundError:
            return FieldError.invalid(
                f"{FIELD_PATH}.clusterName", crtb.cluster_name, f"specified cluster {crtb.cluster_name} not found"
            )

        if not crtb.role_template_name:
            return FieldError.required(f"{FIELD_PATH}.roleTemplateName", "field is required")
        try:
            role_template = self.role_template_resolver.role_template_cache.get(crtb.role_template_name)
        except NotFoundError:
            return FieldError.invalid(
                f"{FIELD_PATH}.roleTemplateName", crtb.role_template_name, "the referenced role template was not found"
            )
        if role_template.locked:
            return FieldError.forbidden(
                f"{FIELD_PATH}.roleTemplate",
                f"referenced role {role_template.display_name} is locked and cannot be assigned",
            )
        if role_template.context != CLUSTER_CONTEXT:
            return FieldError.not_supported(
                f"{FIELD_PATH}.roleTemplate.context", role_template.context, [CLUSTER_CONTEXT]
            )
        return None


class ClusterRoleTemplateBindingValidator(ValidatingAdmissionHandler):
    """Validates CRTB subjects and checks the granted template for escalation in its cluster."""

    scope = NAMESPACED_SCOPE

    def __init__(
        self,
        role_template_resolver: RoleTemplateResolver,
        escalation_checker: EscalationChecker,
        clusters: ObjectCache[Cluster],
    ):
        require(
            type(self).__name__,
            role_template_resolver=role_template_resolver,
            escalation_checker=escalation_checker,
            clusters=clusters,
        )
        self._admitter = ClusterRoleTemplateBindingAdmitter(role_template_resolver, escalation_checker, clusters)

    def gvr(self) -> GroupVersionResource:
        return CRTB_GVR

    def operations(self) -> List[Operation]:
        return [Operation.CREATE, Operation.UPDATE]

    def admitters(self) -> List[Admitter]:
        return [self._admitter]
