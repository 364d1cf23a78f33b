"""
Helpers shared by the management.cattle.io validators.
"""

from typing import Iterable, List, Optional

from kubeguard.admission.review import GroupVersionResource
from kubeguard.exceptions import HandlerConstructionError, WebhookError
from kubeguard.models import PolicyRule

MANAGEMENT_GROUP = "management.cattle.io"
MANAGEMENT_VERSION = "v3"


def management_gvr(resource: str) -> GroupVersionResource:
    return GroupVersionResource(group=MANAGEMENT_GROUP, version=MANAGEMENT_VERSION, resource=resource)


ROLE_TEMPLATE_GVR = management_gvr("roletemplates")
GLOBAL_ROLE_GVR = management_gvr("globalroles")
GLOBAL_ROLE_BINDING_GVR = management_gvr("globalrolebindings")
CRTB_GVR = management_gvr("clusterroletemplatebindings")
PRTB_GVR = management_gvr("projectroletemplatebindings")


class FieldError(WebhookError):
    """A field level validation failure, reported to the user as a bad request."""

    def __init__(self, path: str, kind: str, detail: str = "", value: Optional[str] = None):
        self.path = path
        self.kind = kind
        self.detail = detail
        self.value = value
        super().__init__(str(self))

    def __str__(self) -> str:
        message = f"{self.path}: {self.kind}"
        if self.value is not None:
            message += f': "{self.value}"'
        if self.detail:
            message += f": {self.detail}"
        return message

    @classmethod
    def invalid(cls, path: str, value: str, detail: str) -> "FieldError":
        return cls(path, "Invalid value", detail, value=value)

    @classmethod
    def forbidden(cls, path: str, detail: str) -> "FieldError":
        return cls(path, "Forbidden", detail)

    @classmethod
    def required(cls, path: str, detail: str = "") -> "FieldError":
        return cls(path, "Required value", detail)

    @classmethod
    def not_found(cls, path: str, value: str) -> "FieldError":
        return cls(path, "Not found", value=value)

    @classmethod
    def not_supported(cls, path: str, value: str, supported: Iterable[str]) -> "FieldError":
        values = ", ".join(f'"{v}"' for v in supported)
        return cls(path, "Unsupported value", f"supported values: {values}", value=value)


def validate_rule(rule: PolicyRule, namespaced: bool, path: str) -> List[FieldError]:
    errors = []
    if not rule.verbs:
        errors.append(FieldError.required(f"{path}.verbs", "verbs must contain at least one value"))

    if rule.non_resource_urls:
        if namespaced:
            errors.append(
                FieldError.invalid(
                    f"{path}.nonResourceURLs", ",".join(rule.non_resource_urls), "namespaced rules cannot apply to non-resource URLs"
                )
            )
        if rule.api_groups or rule.resources or rule.resource_names:
            errors.append(
                FieldError.invalid(
                    f"{path}.nonResourceURLs",
                    ",".join(rule.non_resource_urls),
                    "rules cannot apply to both regular resources and non-resource URLs",
                )
            )
        return errors

    if not rule.api_groups:
        errors.append(FieldError.required(f"{path}.apiGroups", "resource rules must supply at least one api group"))
    if not rule.resources:
        errors.append(FieldError.required(f"{path}.resources", "resource rules must supply at least one resource"))
    return errors


def validate_rules(rules: Optional[List[PolicyRule]], namespaced: bool, path: str) -> Optional[str]:
    """All rule errors joined into one message, or None if the rules are valid."""
    errors: List[FieldError] = []
    for index, rule in enumerate(rules or []):
        errors.extend(validate_rule(rule, namespaced, f"{path}[{index}]"))
    if not errors:
        return None
    return "\n".join(str(e) for e in errors)


def require(owner: str, **dependencies):
    """Raise if any constructor dependency is missing."""
    missing = [name for name, value in dependencies.items() if value is None]
    if missing:
        raise HandlerConstructionError(f"{owner} requires {', '.join(sorted(missing))}")
