"""
Capability interfaces for admission handlers and the helpers that derive
their serving paths and webhook configuration entries.
"""

import copy
from abc import ABC, abstractmethod
from typing import List, Optional

from kubeguard.admission.review import AdmissionRequest, AdmissionResponse, GroupVersionResource, Operation

WEBHOOK_NAME_PREFIX = "rancher.cattle.io"
CLUSTER_SCOPE = "Cluster"
NAMESPACED_SCOPE = "Namespaced"
SLOW_TRACE_DURATION = 2.0


class Admitter(ABC):
    """A single allow/deny check bound to one handler."""

    @abstractmethod
    async def admit(self, request: AdmissionRequest) -> AdmissionResponse:
        """
        Decide on the request. Raise if the request cannot be evaluated;
        the dispatcher turns the exception into an internal error.
        """
        raise NotImplementedError()


class WebhookHandler(ABC):
    """Base interface for validating and mutating handlers."""

    # Scope of the generated webhook rule.
    scope: str = CLUSTER_SCOPE

    # Serving sub-path used instead of the one derived from the GVR.
    path_override: Optional[str] = None

    @abstractmethod
    def gvr(self) -> GroupVersionResource:
        """
        The resource reviewed by this handler. It must be unique among
        handlers of the same kind. A resource of "*" watches a whole group.
        """
        raise NotImplementedError()

    @abstractmethod
    def operations(self) -> List[Operation]:
        """Operations sent to this handler."""
        raise NotImplementedError()


class ValidatingAdmissionHandler(WebhookHandler):
    """Handler whose admitters all have to allow a request."""

    @abstractmethod
    def admitters(self) -> List[Admitter]:
        raise NotImplementedError()

    def validating_webhooks(self, client_config: dict) -> List[dict]:
        return [new_default_validating_webhook(self, client_config)]


class MutatingAdmissionHandler(WebhookHandler, Admitter):
    """Handler that is itself the single admitter and may return a patch."""

    def mutating_webhooks(self, client_config: dict) -> List[dict]:
        return [new_default_mutating_webhook(self, client_config)]


def sub_path(gvr: GroupVersionResource) -> str:
    """Sub-path for a GVR: resource.group, or just the group for "*"."""
    if gvr.resource == "*":
        return gvr.group
    return gvr.group_resource


def path(base_path: str, handler: WebhookHandler) -> str:
    """Serving path of the handler joined onto base_path."""
    handler_path = handler.path_override if handler.path_override else sub_path(handler.gvr())
    return f"{base_path.rstrip('/')}/{handler_path.lstrip('/')}"


def can_handle_operation(handler: WebhookHandler, operation: str) -> bool:
    """True if the handler lists the operation or the "*" marker."""
    for op in handler.operations():
        if op == Operation.ALL or op == operation:
            return True
    return False


def webhook_name(handler: WebhookHandler, suffix: str = "") -> str:
    name = f"{WEBHOOK_NAME_PREFIX}.{sub_path(handler.gvr())}"
    if suffix:
        name = f"{name}.{suffix}"
    return name


def _client_config_for(handler: WebhookHandler, client_config: dict) -> dict:
    config = copy.deepcopy(client_config)
    if config.get("url"):
        config["url"] = path(config["url"], handler)
    service = config.get("service")
    if service and service.get("path"):
        service["path"] = path(service["path"], handler)
    return config


def _default_webhook(
    handler: WebhookHandler,
    client_config: dict,
    scope: Optional[str],
    operations: Optional[List[Operation]],
    suffix: str,
) -> dict:
    gvr = handler.gvr()
    ops = operations if operations is not None else handler.operations()
    return {
        "name": webhook_name(handler, suffix),
        "clientConfig": _client_config_for(handler, client_config),
        "rules": [
            {
                "operations": [Operation(op).value for op in ops],
                "apiGroups": [gvr.group],
                "apiVersions": [gvr.version],
                "resources": [gvr.resource],
                "scope": scope or handler.scope,
            }
        ],
        "failurePolicy": "Fail",
        "matchPolicy": "Equivalent",
        "sideEffects": "None",
        "admissionReviewVersions": ["v1", "v1beta1"],
    }


def new_default_validating_webhook(
    handler: WebhookHandler,
    client_config: dict,
    scope: Optional[str] = None,
    operations: Optional[List[Operation]] = None,
    suffix: str = "",
) -> dict:
    """
    Default ValidatingWebhook entry for the handler. The client config path or
    URL is extended with the handler's path. The suffix distinguishes several
    webhooks for the same handler, e.g. one per namespace selector.
    """
    return _default_webhook(handler, client_config, scope, operations, suffix)


def new_default_mutating_webhook(
    handler: WebhookHandler,
    client_config: dict,
    scope: Optional[str] = None,
    operations: Optional[List[Operation]] = None,
    suffix: str = "",
) -> dict:
    """Default MutatingWebhook entry for the handler."""
    webhook = _default_webhook(handler, client_config, scope, operations, suffix)
    webhook["reinvocationPolicy"] = "Never"
    return webhook
