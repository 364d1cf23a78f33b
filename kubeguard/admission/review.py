"""
AdmissionReview envelope models and helpers for building responses.
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple, Type, TypeVar

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from kubeguard.exceptions import DecodeError

T = TypeVar("T", bound=BaseModel)

ADMISSION_API_VERSION = "admission.k8s.io/v1"
ADMISSION_KIND = "AdmissionReview"


class Operation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CONNECT = "CONNECT"
    ALL = "*"


class ReviewModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class GroupVersionResource(ReviewModel):
    model_config = ConfigDict(frozen=True)

    group: str = ""
    version: str = ""
    resource: str = ""

    @property
    def group_resource(self) -> str:
        if not self.group:
            return self.resource
        return f"{self.resource}.{self.group}"

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Resource={self.resource}"


class GroupVersionKind(ReviewModel):
    group: str = ""
    version: str = ""
    kind: str = ""

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Kind={self.kind}"


class UserInfo(ReviewModel):
    username: str = ""
    uid: str = ""
    groups: List[str] = Field(default_factory=list)
    extra: Dict[str, List[str]] = Field(default_factory=dict)


class AdmissionRequest(ReviewModel):
    model_config = ConfigDict(frozen=True)

    uid: str
    kind: GroupVersionKind = Field(default_factory=GroupVersionKind)
    resource: GroupVersionResource = Field(default_factory=GroupVersionResource)
    sub_resource: str = ""
    name: str = ""
    namespace: str = ""
    operation: str
    user_info: UserInfo = Field(default_factory=UserInfo)
    object: Optional[dict] = None
    old_object: Optional[dict] = None
    dry_run: bool = False

    def object_as(self, model: Type[T]) -> T:
        """Decode the new object, or the old one for deletes."""
        if self.operation == Operation.DELETE:
            return _decode_embedded(self.old_object, model, "oldObject")
        return _decode_embedded(self.object, model, "object")

    def old_and_new(self, model: Type[T]) -> Tuple[T, T]:
        """
        Decode the old and new objects. On CREATE the old object is the
        model's empty value; on DELETE the new object is.
        """
        new = model() if self.operation == Operation.DELETE else _decode_embedded(self.object, model, "object")
        if self.operation == Operation.CREATE:
            return model(), new
        return _decode_embedded(self.old_object, model, "oldObject"), new


def _decode_embedded(raw: Optional[dict], model: Type[T], field: str) -> T:
    if raw is None:
        raise DecodeError(f"request {field} is not set")
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise DecodeError(f"failed to unmarshal request {field}: {e}") from e


class Status(ReviewModel):
    status: str = "Failure"
    message: str = ""
    reason: str = ""
    code: int = 0


class AdmissionResponse(ReviewModel):
    uid: str = ""
    allowed: bool = False
    result: Optional[Status] = Field(default=None, alias="status")
    patch: Optional[str] = None
    patch_type: Optional[str] = None
    warnings: Optional[List[str]] = None


class AdmissionReview(ReviewModel):
    api_version: str = ADMISSION_API_VERSION
    kind: str = ADMISSION_KIND
    request: Optional[AdmissionRequest] = None
    response: Optional[AdmissionResponse] = None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


def decode_review(body: bytes) -> AdmissionReview:
    """Parse an AdmissionReview, requiring the embedded request."""
    try:
        review = AdmissionReview.model_validate(orjson.loads(body))
    except orjson.JSONDecodeError as e:
        raise DecodeError(f"failed to decode admission review: {e}") from e
    except ValidationError as e:
        raise DecodeError(f"invalid admission review: {e}") from e
    if review.request is None:
        raise DecodeError("request is not set: invalid request")
    return review


def response_allowed() -> AdmissionResponse:
    return AdmissionResponse(allowed=True)


def response_bad_request(message: str) -> AdmissionResponse:
    return AdmissionResponse(
        allowed=False,
        result=Status(message=message, reason="BadRequest", code=400),
    )


def response_failed_escalation(message: str) -> AdmissionResponse:
    return AdmissionResponse(
        allowed=False,
        result=Status(message=message, reason="Forbidden", code=403),
    )


def internal_error_status(err: Exception) -> Status:
    return Status(message=f"Internal error occurred: {err}", reason="InternalError", code=500)
