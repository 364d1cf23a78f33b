"""
Mutating handler that records the creating user on new objects.
"""

import base64
from typing import List

import orjson

from kubeguard.admission.handler import MutatingAdmissionHandler
from kubeguard.admission.review import (
    AdmissionRequest,
    AdmissionResponse,
    GroupVersionResource,
    Operation,
    response_allowed,
)
from kubeguard.auth.escalation import CREATOR_ID_ANNOTATION
from kubeguard.models import KubeObject

NO_CREATOR_RBAC_ANNOTATION = "field.cattle.io/no-creator-rbac"
JSON_PATCH = "JSONPatch"


def _escape(key: str) -> str:
    """JSON pointer escaping for a single path segment."""
    return key.replace("~", "~0").replace("/", "~1")


def creator_patch(obj: KubeObject, username: str) -> List[dict]:
    """JSONPatch operations setting the creator annotation, or none if opted out."""
    annotations = obj.metadata.annotations
    if NO_CREATOR_RBAC_ANNOTATION in annotations:
        return []
    if not annotations:
        return [{"op": "add", "path": "/metadata/annotations", "value": {CREATOR_ID_ANNOTATION: username}}]
    return [{"op": "add", "path": f"/metadata/annotations/{_escape(CREATOR_ID_ANNOTATION)}", "value": username}]


def patch_response(operations: List[dict]) -> AdmissionResponse:
    if not operations:
        return response_allowed()
    return AdmissionResponse(
        allowed=True,
        patch=base64.b64encode(orjson.dumps(operations)).decode(),
        patch_type=JSON_PATCH,
    )


class CreatorMutator(MutatingAdmissionHandler):
    """Adds the creatorId annotation to objects of one resource on create."""

    def __init__(self, gvr: GroupVersionResource):
        self._gvr = gvr

    def gvr(self) -> GroupVersionResource:
        return self._gvr

    def operations(self) -> List[Operation]:
        return [Operation.CREATE]

    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        if request.operation != Operation.CREATE:
            return response_allowed()
        obj = request.object_as(KubeObject)
        return patch_response(creator_patch(obj, request.user_info.username))
