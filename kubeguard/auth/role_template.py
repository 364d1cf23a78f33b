"""
Flattens role templates, including everything they inherit, into rule lists.
"""

from typing import List, Optional

from kubeguard.auth.rules import dedupe_rules
from kubeguard.cache import ObjectCache
from kubeguard.exceptions import NotFoundError, ResolutionError, RoleTemplateNotFoundError
from kubeguard.models import ClusterRole, Feature, PolicyRule, RoleTemplate

EXTERNAL_RULES_FEATURE = "external-rules"
CLUSTER_CONTEXT = "cluster"
PROJECT_CONTEXT = "project"


class RoleTemplateResolver:
    """Resolves the rules granted by a role template and its inherited templates."""

    def __init__(
        self,
        role_templates: ObjectCache[RoleTemplate],
        cluster_roles: ObjectCache[ClusterRole],
        features: Optional[ObjectCache[Feature]] = None,
    ):
        self.role_templates = role_templates
        self.cluster_roles = cluster_roles
        self.features = features

    @property
    def role_template_cache(self) -> ObjectCache[RoleTemplate]:
        return self.role_templates

    def get_template(self, name: str) -> RoleTemplate:
        try:
            return self.role_templates.get(name)
        except NotFoundError as e:
            raise RoleTemplateNotFoundError(name) from e

    def rules_from_template_name(self, name: str) -> List[PolicyRule]:
        return self.rules_from_template(self.get_template(name))

    def rules_from_template(self, role_template: Optional[RoleTemplate]) -> List[PolicyRule]:
        """
        Depth-first walk over the inheritance graph. Each template contributes
        once, cycles included; a missing template aborts the whole walk.
        """
        if role_template is None:
            return []

        rules: List[PolicyRule] = []
        seen = set()
        stack = [role_template]
        while stack:
            current = stack.pop()
            if current.name in seen:
                continue
            seen.add(current.name)

            rules.extend(self._own_rules(current))

            children = []
            for name in current.role_template_names:
                if name in seen:
                    continue
                children.append(self.get_template(name))
            # reversed so the first inherited template is walked first
            stack.extend(reversed(children))

        return dedupe_rules(rules)

    def _own_rules(self, role_template: RoleTemplate) -> List[PolicyRule]:
        rules: List[PolicyRule] = []
        if role_template.external:
            if self.external_rules_enabled():
                if role_template.external_rules is not None:
                    rules.extend(role_template.external_rules)
                else:
                    rules.extend(
                        self._backing_cluster_role(
                            role_template.name,
                            "for external RoleTemplates, externalRules must be provided or a backing "
                            "clusterRole must be installed to check for privilege escalations",
                        )
                    )
            elif role_template.context == CLUSTER_CONTEXT:
                rules.extend(self._backing_cluster_role(role_template.name))
        rules.extend(role_template.rules)
        return rules

    def _backing_cluster_role(self, name: str, hint: str = "") -> List[PolicyRule]:
        try:
            return self.cluster_roles.get(name).rules
        except NotFoundError as e:
            message = f'failed to get ClusterRole "{name}": {e}'
            if hint:
                message = f"{hint}: {message}"
            raise ResolutionError(message) from e

    def external_rules_enabled(self) -> bool:
        if self.features is None:
            return False
        try:
            return self.features.get(EXTERNAL_RULES_FEATURE).enabled
        except NotFoundError:
            return False
