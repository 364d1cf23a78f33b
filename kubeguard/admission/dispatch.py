"""
Per-request admission state machine: decode, match, admit, bypass, encode.
"""

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from loguru import logger

from kubeguard.admission.handler import (
    SLOW_TRACE_DURATION,
    MutatingAdmissionHandler,
    ValidatingAdmissionHandler,
    WebhookHandler,
    can_handle_operation,
    sub_path,
)
from kubeguard.admission.registry import WebhookRegistry
from kubeguard.admission.review import (
    AdmissionRequest,
    AdmissionResponse,
    AdmissionReview,
    Status,
    UserInfo,
    decode_review,
    internal_error_status,
)
from kubeguard.exceptions import DecodeError, RoutingError, UnsupportedOperationError

HandlerResolver = Callable[[AdmissionRequest], WebhookHandler]
AdmitFn = Callable[[WebhookHandler, AdmissionRequest], Awaitable[AdmissionResponse]]


@dataclass
class DispatchResult:
    status_code: int
    review: AdmissionReview

    @property
    def body(self) -> dict:
        return self.review.to_wire()


class Dispatcher:
    """Runs admission reviews through handlers and aggregates their verdicts."""

    def __init__(self, bypass_username: str, bypass_group: str):
        self.bypass_username = bypass_username
        self.bypass_group = bypass_group

    def is_bypass_user(self, user: UserInfo) -> bool:
        """Both the username and the group have to match."""
        return user.username == self.bypass_username and self.bypass_group in user.groups

    async def validate(self, handler: ValidatingAdmissionHandler, body: bytes) -> DispatchResult:
        return await self._dispatch(body, lambda _: handler, _run_validating)

    async def mutate(self, handler: MutatingAdmissionHandler, body: bytes) -> DispatchResult:
        return await self._dispatch(body, lambda _: handler, _run_mutating)

    async def validate_routed(self, registry: WebhookRegistry, body: bytes) -> DispatchResult:
        """Validate a review sent to the base path, routing it by GVR."""
        return await self._dispatch(body, lambda req: registry.lookup_validating(req.resource), _run_validating)

    async def mutate_routed(self, registry: WebhookRegistry, body: bytes) -> DispatchResult:
        return await self._dispatch(body, lambda req: registry.lookup_mutating(req.resource), _run_mutating)

    async def _dispatch(self, body: bytes, resolve: HandlerResolver, run: AdmitFn) -> DispatchResult:
        try:
            review = decode_review(body)
        except DecodeError as e:
            logger.error(f"Failed to decode admission review: {e}")
            return _failure(AdmissionReview(), None, Status(message=str(e), reason="BadRequest", code=400))

        request = review.request
        try:
            handler = resolve(request)
            if not can_handle_operation(handler, request.operation):
                raise UnsupportedOperationError(
                    f"can not handle '{request.operation}' for '{sub_path(handler.gvr())}': unsupported operation"
                )
        except RoutingError as e:
            logger.error(str(e))
            return _failure(review, request, Status(message=str(e), reason="NotFound", code=404))
        except UnsupportedOperationError as e:
            logger.error(str(e))
            return _failure(review, request, Status(message=str(e), reason="BadRequest", code=400))

        error: Optional[Exception] = None
        try:
            response = await run(handler, request)
        except Exception as e:
            error = e
            response = AdmissionResponse(allowed=False)

        logger.debug(
            f"admit result: {request.operation} {request.kind} {_resource_string(request)} "
            f"user={request.user_info.username} allowed={response.allowed} err={error}"
        )

        if (error is not None or not response.allowed) and self.is_bypass_user(request.user_info):
            logger.warning(
                f"Bypassing {sub_path(handler.gvr())} verdict for {request.user_info.username} "
                f"(uid={request.uid}, err={error})"
            )
            error = None
            response = AdmissionResponse(allowed=True)

        if error is not None:
            logger.error(f"Admission of {request.uid} failed: {error}")
            return _failure(review, request, internal_error_status(error))

        review.response = response.model_copy(update={"uid": request.uid})
        review.request = None
        return DispatchResult(200, review)


async def _run_validating(handler: ValidatingAdmissionHandler, request: AdmissionRequest) -> AdmissionResponse:
    """Every admitter has to allow; the first denial or error ends the run."""
    response = AdmissionResponse(allowed=False)
    warnings = []
    for admitter in handler.admitters():
        response = await _timed_admit(admitter.admit, request, type(admitter).__name__)
        if response is None:
            response = AdmissionResponse(allowed=False)
        if not response.allowed:
            return response
        warnings.extend(response.warnings or [])
    if warnings:
        response = response.model_copy(update={"warnings": warnings})
    return response


async def _run_mutating(handler: MutatingAdmissionHandler, request: AdmissionRequest) -> AdmissionResponse:
    response = await _timed_admit(handler.admit, request, type(handler).__name__)
    return response if response is not None else AdmissionResponse(allowed=False)


async def _timed_admit(admit, request: AdmissionRequest, name: str) -> AdmissionResponse:
    started = time.monotonic()
    try:
        return await admit(request)
    finally:
        elapsed = time.monotonic() - started
        if elapsed > SLOW_TRACE_DURATION:
            logger.warning(f"{name} Admit took {elapsed:.2f}s for user={request.user_info.username}")


def _failure(review: AdmissionReview, request: Optional[AdmissionRequest], status: Status) -> DispatchResult:
    uid = request.uid if request is not None else ""
    review.response = AdmissionResponse(uid=uid, allowed=False, result=status)
    review.request = None
    return DispatchResult(status.code, review)


def _resource_string(request: AdmissionRequest) -> str:
    if not request.namespace:
        return request.name
    return f"{request.namespace}/{request.name}"
