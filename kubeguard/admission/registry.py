from typing import Dict, Iterable, List, Optional, Union

from loguru import logger

from kubeguard.admission.handler import (
    Admitter,
    MutatingAdmissionHandler,
    ValidatingAdmissionHandler,
    WebhookHandler,
    sub_path,
)
from kubeguard.admission.review import GroupVersionResource
from kubeguard.exceptions import HandlerConstructionError, RoutingError

AnyHandler = Union[ValidatingAdmissionHandler, MutatingAdmissionHandler]


class WebhookRegistry:
    """
    Maps a GVR to the validating and mutating handler registered for it.

    Built once at startup and read-only afterwards.
    """

    def __init__(
        self,
        validators: Optional[Iterable[ValidatingAdmissionHandler]] = None,
        mutators: Optional[Iterable[MutatingAdmissionHandler]] = None,
    ):
        self._validators: Dict[GroupVersionResource, ValidatingAdmissionHandler] = {}
        self._mutators: Dict[GroupVersionResource, MutatingAdmissionHandler] = {}
        for handler in validators or []:
            self.register_validating(handler)
        for handler in mutators or []:
            self.register_mutating(handler)

    @property
    def validators(self) -> List[ValidatingAdmissionHandler]:
        return list(self._validators.values())

    @property
    def mutators(self) -> List[MutatingAdmissionHandler]:
        return list(self._mutators.values())

    def register_validating(self, handler: ValidatingAdmissionHandler):
        if not isinstance(handler, ValidatingAdmissionHandler):
            raise HandlerConstructionError(f"{type(handler).__name__} is not a validating handler")
        _check_handler(handler)
        admitters = handler.admitters()
        if not admitters:
            raise HandlerConstructionError(f"validating handler for {sub_path(handler.gvr())} has no admitters")
        for admitter in admitters:
            if not isinstance(admitter, Admitter):
                raise HandlerConstructionError(
                    f"validating handler for {sub_path(handler.gvr())} has invalid admitter {admitter!r}"
                )
        self._add(self._validators, handler, "validating")

    def register_mutating(self, handler: MutatingAdmissionHandler):
        if not isinstance(handler, MutatingAdmissionHandler):
            raise HandlerConstructionError(f"{type(handler).__name__} is not a mutating handler")
        _check_handler(handler)
        self._add(self._mutators, handler, "mutating")

    def _add(self, table: Dict[GroupVersionResource, AnyHandler], handler: AnyHandler, kind: str):
        gvr = handler.gvr()
        if gvr in table:
            raise HandlerConstructionError(f"duplicate {kind} handler for {gvr}")
        table[gvr] = handler
        logger.debug(f"Registered {kind} handler {type(handler).__name__} for {gvr}")

    def lookup_validating(self, gvr: GroupVersionResource) -> ValidatingAdmissionHandler:
        return _lookup(self._validators, gvr, "validating")

    def lookup_mutating(self, gvr: GroupVersionResource) -> MutatingAdmissionHandler:
        return _lookup(self._mutators, gvr, "mutating")

    def handlers_for(self, gvr: GroupVersionResource) -> List[WebhookHandler]:
        """Every handler, validating first, interested in the GVR."""
        handlers: List[WebhookHandler] = []
        for table in (self._validators, self._mutators):
            try:
                handlers.append(_lookup(table, gvr, ""))
            except RoutingError:
                continue
        return handlers


def _check_handler(handler: WebhookHandler):
    gvr = handler.gvr()
    if not gvr.version or not gvr.resource:
        raise HandlerConstructionError(f"{type(handler).__name__} declares incomplete GVR {gvr}")
    if not handler.operations():
        raise HandlerConstructionError(f"{type(handler).__name__} declares no operations")


def _lookup(table: Dict[GroupVersionResource, AnyHandler], gvr: GroupVersionResource, kind: str) -> AnyHandler:
    handler = table.get(gvr)
    if handler is not None:
        return handler
    # group-wide handlers are registered with the "*" resource
    wildcard = GroupVersionResource(group=gvr.group, version=gvr.version, resource="*")
    handler = table.get(wildcard)
    if handler is not None:
        return handler
    raise RoutingError(f"no {kind + ' ' if kind else ''}handler registered for {gvr}")
