class WebhookError(Exception):
    """Base class for errors raised by the admission webhook."""


class DecodeError(WebhookError):
    """The admission review envelope could not be decoded."""


class RoutingError(WebhookError):
    """No handler is registered for the requested resource."""


class UnsupportedOperationError(WebhookError):
    """The handler does not accept the requested operation."""


class HandlerConstructionError(WebhookError):
    """A handler or admitter was built with missing or invalid dependencies."""


class NotFoundError(WebhookError):
    """A cached object does not exist."""

    def __init__(self, resource: str, name: str, namespace: str = ""):
        self.resource = resource
        self.name = name
        self.namespace = namespace
        key = f"{namespace}/{name}" if namespace else name
        super().__init__(f'{resource} "{key}" not found')


class RoleTemplateNotFoundError(NotFoundError):
    """A role template referenced during resolution does not exist."""

    def __init__(self, name: str):
        super().__init__("roletemplates", name)


class ResolutionError(WebhookError):
    """Rules for a role could not be fully resolved."""


class KubeApiError(WebhookError):
    """The Kubernetes API returned an unexpected response."""

    def __init__(self, message: str, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message)
