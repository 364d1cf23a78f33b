"""
Checks that a user granting permissions through a role or binding already
holds those permissions.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import httpx
from loguru import logger

from kubeguard.admission.review import (
    AdmissionRequest,
    AdmissionResponse,
    GroupVersionResource,
    UserInfo,
    response_allowed,
    response_failed_escalation,
)
from kubeguard.auth.rules import uncovered_rules
from kubeguard.exceptions import KubeApiError
from kubeguard.models import PolicyRule
from kubeguard.resolvers.base import RuleResolver

ESCALATE_VERB = "escalate"
BIND_VERB = "bind"
CREATOR_ID_ANNOTATION = "field.cattle.io/creatorId"


class SubjectAccessReviewer(Protocol):
    async def create_subject_access_review(
        self, user: UserInfo, verb: str, gvr: GroupVersionResource, name: str = "", namespace: str = ""
    ) -> bool: ...


@dataclass
class EscalationDecision:
    allowed: bool
    uncovered: List[PolicyRule] = field(default_factory=list)
    message: str = ""

    def to_response(self) -> AdmissionResponse:
        if self.allowed:
            return response_allowed()
        return response_failed_escalation(self.message)


ALLOWED = EscalationDecision(allowed=True)


async def request_user_has_verb(
    sar: SubjectAccessReviewer,
    request: AdmissionRequest,
    gvr: GroupVersionResource,
    verb: str,
    name: str = "",
    namespace: str = "",
) -> bool:
    """True if the requesting user may perform verb on the named resource."""
    try:
        return await sar.create_subject_access_review(request.user_info, verb, gvr, name=name, namespace=namespace)
    except httpx.HTTPError as e:
        raise KubeApiError(f"failed to create subjectaccessreview: {e}") from e


def confirm_no_escalation(
    user: UserInfo, rules: List[PolicyRule], namespace: str, rule_resolver: RuleResolver
) -> EscalationDecision:
    """Deny when the user's own rules do not cover every requested rule."""
    resolution = rule_resolver.rules_for(user, namespace)
    missing = uncovered_rules(resolution.rules, rules)
    if not missing:
        return ALLOWED

    message = (
        f'user "{user.username}" (groups={user.groups}) is attempting to grant RBAC permissions '
        "not currently held:\n" + "\n".join(str(rule) for rule in missing)
    )
    if resolution.errors:
        message += f"; resolution errors: {resolution.error_message()}"
    return EscalationDecision(allowed=False, uncovered=missing, message=message)


class EscalationChecker:
    """Escalate-verb check first, then rule coverage against the user's own rules."""

    def __init__(self, sar: Optional[SubjectAccessReviewer], rule_resolver: RuleResolver):
        self.sar = sar
        self.rule_resolver = rule_resolver

    async def confirm_no_escalation(
        self,
        request: AdmissionRequest,
        rules: List[PolicyRule],
        namespace: str,
        gvr: GroupVersionResource,
        name: str = "",
    ) -> EscalationDecision:
        if self.sar is not None:
            try:
                if await request_user_has_verb(self.sar, request, gvr, ESCALATE_VERB, name=name, namespace=namespace):
                    logger.debug(f"{request.user_info.username} holds {ESCALATE_VERB} on {gvr.group_resource}")
                    return ALLOWED
            except KubeApiError as e:
                logger.warning(f"Failed to check {ESCALATE_VERB} verb on {gvr.group_resource}: {e}")

        return confirm_no_escalation(request.user_info, rules, namespace, self.rule_resolver)


class CachedVerbChecker:
    """
    Checks, at most once, whether the requester holds an override verb such as
    bind or escalate on a named cluster-scoped resource. One instance per
    request and admitter.
    """

    def __init__(
        self,
        request: AdmissionRequest,
        name: str,
        sar: SubjectAccessReviewer,
        gvr: GroupVersionResource,
        verb: str,
    ):
        self.request = request
        self.name = name
        self.sar = sar
        self.gvr = gvr
        self.override_verb = verb
        self._has_verb: Optional[bool] = None

    async def has_verb(self) -> bool:
        if self._has_verb is not None:
            return self._has_verb
        try:
            self._has_verb = await request_user_has_verb(self.sar, self.request, self.gvr, self.override_verb, self.name)
        except KubeApiError as e:
            logger.error(f"Failed to check for the verb {self.override_verb} on {self.gvr.resource}: {e}")
            return False
        return self._has_verb

    async def is_rules_allowed(
        self, rules: List[PolicyRule], rule_resolver: RuleResolver, namespace: str
    ) -> EscalationDecision:
        decision = confirm_no_escalation(self.request.user_info, rules, namespace, rule_resolver)
        if not decision.allowed and await self.has_verb():
            return ALLOWED
        return decision
