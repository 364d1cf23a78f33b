"""
Admission webhook service: wires caches, resolvers and handlers together and
serves them over FastAPI.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional

import httpx
from fastapi import Request
from fastapi.responses import ORJSONResponse, PlainTextResponse
from loguru import logger

from kubeguard.admission.dispatch import Dispatcher, DispatchResult
from kubeguard.admission.handler import (
    WEBHOOK_NAME_PREFIX,
    MutatingAdmissionHandler,
    ValidatingAdmissionHandler,
    path,
)
from kubeguard.admission.registry import WebhookRegistry
from kubeguard.admission.review import GroupVersionResource
from kubeguard.auth.escalation import EscalationChecker, SubjectAccessReviewer
from kubeguard.auth.global_role import GlobalRoleResolver
from kubeguard.auth.role_template import RoleTemplateResolver
from kubeguard.cache import CacheLoader, ObjectCache
from kubeguard.clients import KubeClient
from kubeguard.config import WebhookConfig
from kubeguard.exceptions import KubeApiError
from kubeguard.models import (
    Cluster,
    ClusterRole,
    ClusterRoleBinding,
    ClusterRoleTemplateBinding,
    Feature,
    GlobalRole,
    GlobalRoleBinding,
    ProjectRoleTemplateBinding,
    Role,
    RoleBinding,
    RoleTemplate,
)
from kubeguard.mutators.creator import CreatorMutator
from kubeguard.resolvers.base import AggregateRuleResolver
from kubeguard.resolvers.bindings import (
    CRTBRuleResolver,
    GRBRuleResolver,
    PRTBRuleResolver,
    fleet_workspace_resource_rules,
    fleet_workspace_verbs_rules,
)
from kubeguard.resolvers.rbac import DefaultRuleResolver
from kubeguard.server import WebServer
from kubeguard.validators.clusterroletemplatebinding import ClusterRoleTemplateBindingValidator
from kubeguard.validators.common import GLOBAL_ROLE_GVR, ROLE_TEMPLATE_GVR, management_gvr
from kubeguard.validators.globalrole import GlobalRoleValidator
from kubeguard.validators.globalrolebinding import GlobalRoleBindingValidator
from kubeguard.validators.projectroletemplatebinding import ProjectRoleTemplateBindingValidator
from kubeguard.validators.roletemplate import RoleTemplateValidator


def _rbac_gvr(resource: str) -> GroupVersionResource:
    return GroupVersionResource(group="rbac.authorization.k8s.io", version="v1", resource=resource)


@dataclass
class Caches:
    """Every cache the handlers read from, with the resource each one lists."""

    role_templates: ObjectCache = field(default_factory=lambda: ObjectCache(RoleTemplate, "roletemplates"))
    global_roles: ObjectCache = field(default_factory=lambda: ObjectCache(GlobalRole, "globalroles"))
    global_role_bindings: ObjectCache = field(
        default_factory=lambda: ObjectCache(GlobalRoleBinding, "globalrolebindings")
    )
    crtbs: ObjectCache = field(
        default_factory=lambda: ObjectCache(ClusterRoleTemplateBinding, "clusterroletemplatebindings")
    )
    prtbs: ObjectCache = field(
        default_factory=lambda: ObjectCache(ProjectRoleTemplateBinding, "projectroletemplatebindings")
    )
    features: ObjectCache = field(default_factory=lambda: ObjectCache(Feature, "features"))
    clusters: ObjectCache = field(default_factory=lambda: ObjectCache(Cluster, "clusters"))
    roles: ObjectCache = field(default_factory=lambda: ObjectCache(Role, "roles"))
    role_bindings: ObjectCache = field(default_factory=lambda: ObjectCache(RoleBinding, "rolebindings"))
    cluster_roles: ObjectCache = field(default_factory=lambda: ObjectCache(ClusterRole, "clusterroles"))
    cluster_role_bindings: ObjectCache = field(
        default_factory=lambda: ObjectCache(ClusterRoleBinding, "clusterrolebindings")
    )

    def sources(self) -> Dict[GroupVersionResource, ObjectCache]:
        result = {}
        for f in fields(self):
            cache: ObjectCache = getattr(self, f.name)
            if cache.resource in ("roles", "rolebindings", "clusterroles", "clusterrolebindings"):
                result[_rbac_gvr(cache.resource)] = cache
            else:
                result[management_gvr(cache.resource)] = cache
        return result

    def register(self, loader: CacheLoader):
        for gvr, cache in self.sources().items():
            loader.register(gvr, cache)


def build_registry(config: WebhookConfig, caches: Caches, sar: SubjectAccessReviewer) -> WebhookRegistry:
    """Construct every handler and register it."""
    registry = WebhookRegistry()
    if not config.multi_cluster_management:
        logger.info("Multi-cluster management disabled, no role handlers registered")
        return registry

    role_template_resolver = RoleTemplateResolver(caches.role_templates, caches.cluster_roles, caches.features)
    global_role_resolver = GlobalRoleResolver(role_template_resolver, caches.global_roles)

    default_resolver = DefaultRuleResolver(
        caches.roles, caches.role_bindings, caches.cluster_roles, caches.cluster_role_bindings
    )
    grb_cluster_resolver = GRBRuleResolver(caches.global_role_bindings, global_role_resolver)
    grb_fleet_rules_resolver = GRBRuleResolver(
        caches.global_role_bindings, global_role_resolver, fleet_workspace_resource_rules
    )
    grb_fleet_verbs_resolver = GRBRuleResolver(
        caches.global_role_bindings, global_role_resolver, fleet_workspace_verbs_rules
    )
    crtb_resolver = CRTBRuleResolver(caches.crtbs, role_template_resolver)
    prtb_resolver = PRTBRuleResolver(caches.prtbs, role_template_resolver)

    cluster_resolver = AggregateRuleResolver(default_resolver, crtb_resolver, grb_cluster_resolver)
    project_resolver = AggregateRuleResolver(default_resolver, prtb_resolver)

    validators: List[ValidatingAdmissionHandler] = [
        RoleTemplateValidator(role_template_resolver, EscalationChecker(sar, default_resolver)),
        GlobalRoleValidator(global_role_resolver, grb_cluster_resolver, default_resolver, sar),
        GlobalRoleBindingValidator(
            global_role_resolver,
            default_resolver,
            grb_cluster_resolver,
            grb_fleet_rules_resolver,
            grb_fleet_verbs_resolver,
            sar,
        ),
        ClusterRoleTemplateBindingValidator(
            role_template_resolver, EscalationChecker(sar, cluster_resolver), caches.clusters
        ),
        ProjectRoleTemplateBindingValidator(
            role_template_resolver, EscalationChecker(sar, cluster_resolver), project_resolver
        ),
    ]
    mutators: List[MutatingAdmissionHandler] = [
        CreatorMutator(GLOBAL_ROLE_GVR),
        CreatorMutator(ROLE_TEMPLATE_GVR),
    ]

    for handler in validators:
        registry.register_validating(handler)
    for handler in mutators:
        registry.register_mutating(handler)
    return registry


def client_config(config: WebhookConfig, base_path: str) -> dict:
    """Webhook clientConfig pointing at base_path, by URL or by service."""
    if config.webhook_url:
        result = {"url": f"{config.webhook_url.rstrip('/')}{base_path}"}
    else:
        result = {
            "service": {
                "namespace": config.namespace,
                "name": config.service_name,
                "path": base_path,
                "port": config.client_port,
            }
        }
    if config.ca_bundle:
        result["caBundle"] = config.ca_bundle
    return result


def webhook_configurations(config: WebhookConfig, registry: WebhookRegistry) -> List[dict]:
    """Validating and mutating webhook configurations for every registered handler."""
    validating_client = client_config(config, config.validation_path)
    mutating_client = client_config(config, config.mutation_path)

    validating = []
    for handler in registry.validators:
        validating.extend(handler.validating_webhooks(validating_client))
    mutating = []
    for handler in registry.mutators:
        mutating.extend(handler.mutating_webhooks(mutating_client))

    return [
        {
            "apiVersion": "admissionregistration.k8s.io/v1",
            "kind": "ValidatingWebhookConfiguration",
            "metadata": {"name": WEBHOOK_NAME_PREFIX},
            "webhooks": validating,
        },
        {
            "apiVersion": "admissionregistration.k8s.io/v1",
            "kind": "MutatingWebhookConfiguration",
            "metadata": {"name": WEBHOOK_NAME_PREFIX},
            "webhooks": mutating,
        },
    ]


class AdmissionWebhookServer(WebServer):
    """Serves one endpoint per handler plus the GVR-routed base paths."""

    def __init__(
        self,
        config: WebhookConfig,
        registry: WebhookRegistry,
        dispatcher: Optional[Dispatcher] = None,
        client: Optional[KubeClient] = None,
        loader: Optional[CacheLoader] = None,
    ):
        self.registry = registry
        self.dispatcher = dispatcher or Dispatcher(config.bypass_username, config.bypass_group)
        self.client = client
        self.loader = loader
        super().__init__(config)

    def _setup_routes(self):
        """Setup web routes."""
        self.app.add_api_route("/healthz", self.healthz, methods=["GET"], response_class=PlainTextResponse)

        for handler in self.registry.validators:
            handler_path = path(self.config.validation_path, handler)
            self.app.add_api_route(handler_path, self._validation_endpoint(handler), methods=["POST"])
            logger.debug(f"Serving validating handler at {handler_path}")
        for handler in self.registry.mutators:
            handler_path = path(self.config.mutation_path, handler)
            self.app.add_api_route(handler_path, self._mutation_endpoint(handler), methods=["POST"])
            logger.debug(f"Serving mutating handler at {handler_path}")

        self.app.add_api_route(self.config.validation_path, self.validate_routed, methods=["POST"])
        self.app.add_api_route(self.config.mutation_path, self.mutate_routed, methods=["POST"])

    async def startup(self):
        if self.loader is None:
            return
        try:
            await self.loader.sync_once()
            logger.info("Caches loaded")
        except (httpx.HTTPError, KubeApiError) as e:
            logger.error(f"Initial cache load failed, retrying in background: {e}")
        self.loader.start()

    async def shutdown(self):
        if self.loader is not None:
            await self.loader.stop()
        if self.client is not None:
            await self.client.aclose()
        logger.info("Admission webhook shutdown complete")

    async def healthz(self):
        return "ok"

    def _validation_endpoint(self, handler: ValidatingAdmissionHandler):
        async def endpoint(request: Request) -> ORJSONResponse:
            return _to_response(await self.dispatcher.validate(handler, await request.body()))

        return endpoint

    def _mutation_endpoint(self, handler: MutatingAdmissionHandler):
        async def endpoint(request: Request) -> ORJSONResponse:
            return _to_response(await self.dispatcher.mutate(handler, await request.body()))

        return endpoint

    async def validate_routed(self, request: Request) -> ORJSONResponse:
        return _to_response(await self.dispatcher.validate_routed(self.registry, await request.body()))

    async def mutate_routed(self, request: Request) -> ORJSONResponse:
        return _to_response(await self.dispatcher.mutate_routed(self.registry, await request.body()))


def _to_response(result: DispatchResult) -> ORJSONResponse:
    return ORJSONResponse(result.body, status_code=result.status_code)


def run():
    """Main entry point."""
    try:
        # Load configuration using Pydantic
        config = WebhookConfig()

        # Setup logging level based on config
        if config.debug:
            logging.getLogger().setLevel(logging.DEBUG)
            logger.debug("Debug mode enabled")
            logger.debug(f"Configuration: {config.export_json()}")

        # Validate required TLS configuration
        if not config.tls_cert_path or not config.tls_key_path:
            logger.warning("TLS certificates not configured, running in insecure mode")

        client = KubeClient.from_config(config)
        caches = Caches()
        loader = CacheLoader(client, config.cache_resync_seconds)
        caches.register(loader)

        registry = build_registry(config, caches, client)
        server = AdmissionWebhookServer(config, registry, client=client, loader=loader)
        server.run()

    except Exception as e:
        logger.exception(f"Failed to start admission webhook: {e}")
        raise


if __name__ == "__main__":
    run()
