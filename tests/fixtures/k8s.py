"""
Builders and fakes for cluster objects and admission reviews used in tests.
"""

from typing import Dict, List, Optional

import orjson

from kubeguard.admission.handler import Admitter, MutatingAdmissionHandler, ValidatingAdmissionHandler
from kubeguard.admission.review import (
    AdmissionRequest,
    AdmissionResponse,
    GroupVersionResource,
    Operation,
    UserInfo,
    response_allowed,
)
from kubeguard.exceptions import KubeApiError
from kubeguard.models import (
    ClusterRole,
    GlobalRole,
    ObjectMeta,
    PolicyRule,
    RoleTemplate,
)
from kubeguard.resolvers.base import RuleResolution, RuleResolver

ROLE_TEMPLATES = GroupVersionResource(group="management.cattle.io", version="v3", resource="roletemplates")


def rule(verbs, groups=None, resources=None, names=None, urls=None) -> PolicyRule:
    return PolicyRule(
        verbs=list(verbs),
        api_groups=list(groups or []),
        resources=list(resources or []),
        resource_names=list(names or []),
        non_resource_urls=list(urls or []),
    )


def role_template(
    name: str,
    rules: Optional[List[PolicyRule]] = None,
    inherits: Optional[List[str]] = None,
    context: str = "cluster",
    **kwargs,
) -> RoleTemplate:
    return RoleTemplate(
        metadata=ObjectMeta(name=name),
        rules=rules or [],
        role_template_names=inherits or [],
        context=context,
        **kwargs,
    )


def global_role(
    name: str,
    rules: Optional[List[PolicyRule]] = None,
    inherited: Optional[List[str]] = None,
    **kwargs,
) -> GlobalRole:
    return GlobalRole(
        metadata=ObjectMeta(name=name),
        rules=rules or [],
        inherited_cluster_roles=inherited or [],
        **kwargs,
    )


def cluster_role(name: str, rules: List[PolicyRule]) -> ClusterRole:
    return ClusterRole(metadata=ObjectMeta(name=name), rules=rules)


def request_dict(
    obj: Optional[dict] = None,
    operation: str = "CREATE",
    resource: GroupVersionResource = ROLE_TEMPLATES,
    username: str = "alice",
    groups: Optional[List[str]] = None,
    old_obj: Optional[dict] = None,
    uid: str = "705ab4f5-6393-11e8-b7cc-42010a800002",
) -> dict:
    metadata = (obj or old_obj or {}).get("metadata")
    request = {
        "uid": uid,
        "kind": {"group": resource.group, "version": resource.version, "kind": "Object"},
        "resource": {"group": resource.group, "version": resource.version, "resource": resource.resource},
        "name": metadata.get("name", "") if isinstance(metadata, dict) else "",
        "namespace": metadata.get("namespace", "") if isinstance(metadata, dict) else "",
        "operation": operation,
        "userInfo": {"username": username, "groups": groups or ["system:authenticated"]},
    }
    if obj is not None:
        request["object"] = obj
    if old_obj is not None:
        request["oldObject"] = old_obj
    return request


def make_request(obj=None, **kwargs) -> AdmissionRequest:
    return AdmissionRequest.model_validate(request_dict(obj, **kwargs))


def review_body(obj=None, api_version: str = "admission.k8s.io/v1", **kwargs) -> bytes:
    return orjson.dumps(
        {"apiVersion": api_version, "kind": "AdmissionReview", "request": request_dict(obj, **kwargs)}
    )


class FakeSubjectAccessReviewer:
    """Allows the verbs in allowed_verbs; raises when error is set."""

    def __init__(self, allowed_verbs=(), error: Optional[Exception] = None):
        self.allowed_verbs = set(allowed_verbs)
        self.error = error
        self.calls: List[Dict] = []

    async def create_subject_access_review(
        self, user: UserInfo, verb: str, gvr: GroupVersionResource, name: str = "", namespace: str = ""
    ) -> bool:
        self.calls.append({"user": user.username, "verb": verb, "gvr": gvr, "name": name, "namespace": namespace})
        if self.error is not None:
            raise self.error
        return verb in self.allowed_verbs


def sar_failure() -> KubeApiError:
    return KubeApiError("failed to create subjectaccessreview: 503 unavailable", status_code=503)


class StaticRuleResolver(RuleResolver):
    """Returns the same rules for every user, remembering the namespaces asked for."""

    def __init__(self, rules: Optional[List[PolicyRule]] = None, errors: Optional[List[Exception]] = None):
        self.rules = rules or []
        self.errors = errors or []
        self.namespaces: List[str] = []

    def rules_for(self, user: UserInfo, namespace: str) -> RuleResolution:
        self.namespaces.append(namespace)
        return RuleResolution(rules=list(self.rules), errors=list(self.errors))


class FakeAdmitter(Admitter):
    """Returns a fixed response or raises a fixed error, counting calls."""

    def __init__(self, response: Optional[AdmissionResponse] = None, error: Optional[Exception] = None):
        self.response = response if response is not None else response_allowed()
        self.error = error
        self.calls = 0

    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.response


class FakeValidator(ValidatingAdmissionHandler):
    def __init__(
        self,
        gvr: GroupVersionResource = ROLE_TEMPLATES,
        operations: Optional[List[Operation]] = None,
        admitters: Optional[List[Admitter]] = None,
        path_override: Optional[str] = None,
    ):
        self._gvr = gvr
        self._operations = operations if operations is not None else [Operation.CREATE, Operation.UPDATE]
        self._admitters = admitters if admitters is not None else [FakeAdmitter()]
        self.path_override = path_override

    def gvr(self) -> GroupVersionResource:
        return self._gvr

    def operations(self) -> List[Operation]:
        return self._operations

    def admitters(self) -> List[Admitter]:
        return self._admitters


class FakeMutator(MutatingAdmissionHandler):
    def __init__(
        self,
        gvr: GroupVersionResource = ROLE_TEMPLATES,
        response: Optional[AdmissionResponse] = None,
        error: Optional[Exception] = None,
    ):
        self._gvr = gvr
        self._admitter = FakeAdmitter(response, error)

    def gvr(self) -> GroupVersionResource:
        return self._gvr

    def operations(self) -> List[Operation]:
        return [Operation.CREATE]

    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        return await self._admitter.admit(request)
