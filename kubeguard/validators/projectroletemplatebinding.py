from typing import List, Optional, Tuple

from kubeguard.admission.handler import NAMESPACED_SCOPE, Admitter, ValidatingAdmissionHandler
from kubeguard.admission.review import (
    AdmissionRequest,
    AdmissionResponse,
    GroupVersionResource,
    Operation,
    response_allowed,
    response_bad_request,
)
from kubeguard.auth.escalation import EscalationChecker, confirm_no_escalation
from kubeguard.auth.role_template import PROJECT_CONTEXT, RoleTemplateResolver
from kubeguard.exceptions import NotFoundError, RoleTemplateNotFoundError
from kubeguard.models import ProjectRoleTemplateBinding
from kubeguard.resolvers.base import RuleResolver
from kubeguard.validators.common import PRTB_GVR, FieldError, require

FIELD_PATH = "projectroletemplatebinding"
IMMUTABLE = "field is immutable"


def cluster_from_project(project_name: str) -> Tuple[str, str]:
    """Split <cluster>:<project> into its cluster and project namespaces."""
    pieces = project_name.split(":")
    if len(pieces) < 2:
        return "", ""
    return pieces[0], pieces[1]


def validate_update_fields(old: ProjectRoleTemplateBinding, new: ProjectRoleTemplateBinding) -> Optional[FieldError]:
    if old.role_template_name != new.role_template_name:
        return FieldError.invalid(f"{FIELD_PATH}.roleTemplateName", new.role_template_name, IMMUTABLE)
    if old.project_name != new.project_name:
        return FieldError.invalid(f"{FIELD_PATH}.projectName", new.project_name, IMMUTABLE)
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
        return FieldError.forbidden(
            FIELD_PATH,
            "binding must target either a user [userName]/[userPrincipalName] OR a group [groupName]/[groupPrincipalName]",
        )
    if old.service_account != new.service_account:
        return FieldError.forbidden(f"{FIELD_PATH}.serviceAccount", "update is not allowed")
    return None


class ProjectRoleTemplateBindingAdmitter(Admitter):
    def __init__(
        self,
        role_template_resolver: RoleTemplateResolver,
        escalation_checker: EscalationChecker,
        project_rule_resolver: RuleResolver,
    ):
        self.role_template_resolver = role_template_resolver
        self.escalation_checker = escalation_checker
        self.project_rule_resolver = project_rule_resolver

    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        if request.operation == Operation.UPDATE:
            old_prtb, new_prtb = request.old_and_new(ProjectRoleTemplateBinding)
            field_error = validate_update_fields(old_prtb, new_prtb)
            if field_error is not None:
                return response_bad_request(str(field_error))

        prtb = request.object_as(ProjectRoleTemplateBinding)
        if request.operation == Operation.CREATE:
            field_error = self.validate_create_fields(prtb)
            if field_error is not None:
                return response_bad_request(str(field_error))

        try:
            role_template = self.role_template_resolver.role_template_cache.get(prtb.role_template_name)
        except NotFoundError:
            return response_allowed()

        rules = self.role_template_resolver.rules_from_template(role_template)
        cluster_ns, project_ns = cluster_from_project(prtb.project_name)

        # cluster-wide permissions are enough to grant within one of its projects
        decision = await self.escalation_checker.confirm_no_escalation(
            request, rules, cluster_ns, PRTB_GVR, name=prtb.name
        )
        if decision.allowed:
            return decision.to_response()
        return confirm_no_escalation(request.user_info, rules, project_ns, self.project_rule_resolver).to_response()

    def validate_create_fields(self, prtb: ProjectRoleTemplateBinding) -> Optional[FieldError]:
        targets = [
            bool(prtb.user_name or prtb.user_principal_name),
            bool(prtb.group_name or prtb.group_principal_name),
            bool(prtb.service_account),
        ]
        if targets.count(True) != 1:
            return FieldError.forbidden(
                FIELD_PATH,
                "binding must target only a user [userName]/[userPrincipalName] OR a group "
                "[groupName]/[groupPrincipalName] OR a [serviceAccount]",
            )
        if not prtb.project_name:
            return FieldError.required(f"{FIELD_PATH}.projectName")
        if not prtb.role_template_name:
            return FieldError.required(f"{FIELD_PATH}.roleTemplateName")

        try:
            role_template = self.role_template_resolver.get_template(prtb.role_template_name)
        except RoleTemplateNotFoundError as e:
            return FieldError.invalid(f"{FIELD_PATH}.roleTemplateName", prtb.role_template_name, str(e))
        if role_template.locked:
            return FieldError.forbidden(
                f"{FIELD_PATH}.roleTemplate",
                f"referenced role '{role_template.display_name}' is locked and cannot be assigned",
            )
        if role_template.context != PROJECT_CONTEXT:
            return FieldError.not_supported(
                f"{FIELD_PATH}.roleTemplate.context", role_template.context, [PROJECT_CONTEXT]
            )
        return None


class ProjectRoleTemplateBindingValidator(ValidatingAdmissionHandler):
    """Validates PRTB subjects and checks the granted template for escalation."""

    scope = NAMESPACED_SCOPE

    def __init__(
        self,
        role_template_resolver: RoleTemplateResolver,
        escalation_checker: EscalationChecker,
        project_rule_resolver: RuleResolver,
    ):
        require(
            type(self).__name__,
            role_template_resolver=role_template_resolver,
            escalation_checker=escalation_checker,
            project_rule_resolver=project_rule_resolver,
        )
        self._admitter = ProjectRoleTemplateBindingAdmitter(
            role_template_resolver, escalation_checker, project_rule_resolver
        )

    def gvr(self) -> GroupVersionResource:
        return PRTB_GVR

    def operations(self) -> List[Operation]:
        return [Operation.CREATE, Operation.UPDATE]

    def admitters(self) -> List[Admitter]:
        return [self._admitter]
