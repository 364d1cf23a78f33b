from collections import deque
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
from kubeguard.auth.escalation import EscalationChecker
from kubeguard.auth.role_template import RoleTemplateResolver
from kubeguard.models import RoleTemplate
from kubeguard.validators.common import ROLE_TEMPLATE_GVR, require


class RoleTemplateAdmitter(Admitter):
    def __init__(self, role_template_resolver: RoleTemplateResolver, escalation_checker: EscalationChecker):
        self.role_template_resolver = role_template_resolver
        self.escalation_checker = escalation_checker

    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        role_template = request.object_as(RoleTemplate)
        if role_template.metadata.deletion_timestamp is not None:
            return response_allowed()

        circular = self.find_circular_reference(role_template)
        if circular is not None:
            return response_bad_request(
                f"Circular Reference: RoleTemplate {circular.name} already inherits RoleTemplate {role_template.name}"
            )

        rules = self.role_template_resolver.rules_from_template(role_template)
        for rule in rules:
            if not rule.verbs:
                return response_bad_request("RoleTemplate.Rules: PolicyRules must have at least one verb")

        decision = await self.escalation_checker.confirm_no_escalation(
            request, rules, "", ROLE_TEMPLATE_GVR, name=role_template.name
        )
        return decision.to_response()

    def find_circular_reference(self, role_template: RoleTemplate) -> Optional[RoleTemplate]:
        """The template that inherits role_template back, if any."""
        seen = set()
        queue = deque([role_template])
        while queue:
            current = queue.popleft()
            for inherited in current.role_template_names:
                if inherited == role_template.name:
                    return current
                if inherited in seen:
                    continue
                seen.add(inherited)
                queue.append(self.role_template_resolver.get_template(inherited))
        return None


class RoleTemplateValidator(ValidatingAdmissionHandler):
    """Rejects circular inheritance and rules the creator does not hold."""

    def __init__(self, role_template_resolver: RoleTemplateResolver, escalation_checker: EscalationChecker):
        require(
            type(self).__name__,
            role_template_resolver=role_template_resolver,
            escalation_checker=escalation_checker,
        )
        self._admitter = RoleTemplateAdmitter(role_template_resolver, escalation_checker)

    def gvr(self) -> GroupVersionResource:
        return ROLE_TEMPLATE_GVR

    def operations(self) -> List[Operation]:
        return [Operation.UPDATE, Operation.CREATE]

    def admitters(self) -> List[Admitter]:
        return [self._admitter]
