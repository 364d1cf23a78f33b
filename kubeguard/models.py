"""
Pydantic models for the cluster objects the webhook reads and admits.

Only the fields the webhook needs are modelled; anything else in the raw
object is ignored on parse.
"""

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class KubeModel(BaseModel):
    """Base model accepting the camelCase field names used on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ObjectMeta(KubeModel):
    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: Optional[str] = None


class KubeObject(KubeModel):
    api_version: str = ""
    kind: str = ""
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace


class PolicyRule(KubeModel):
    """A single RBAC grant. "*" in any field matches every value of that field."""

    verbs: List[str] = Field(default_factory=list)
    api_groups: List[str] = Field(default_factory=list)
    resources: List[str] = Field(default_factory=list)
    resource_names: List[str] = Field(default_factory=list)
    non_resource_urls: List[str] = Field(default_factory=list, alias="nonResourceURLs")

    def key(self) -> Tuple[Tuple[str, ...], ...]:
        return (
            tuple(self.verbs),
            tuple(self.api_groups),
            tuple(self.resources),
            tuple(self.resource_names),
            tuple(self.non_resource_urls),
        )

    def __str__(self) -> str:
        parts = []
        if self.api_groups:
            parts.append(f"APIGroups:{_quoted(self.api_groups)}")
        if self.resources:
            parts.append(f"Resources:{_quoted(self.resources)}")
        if self.resource_names:
            parts.append(f"ResourceNames:{_quoted(self.resource_names)}")
        if self.non_resource_urls:
            parts.append(f"NonResourceURLs:{_quoted(self.non_resource_urls)}")
        parts.append(f"Verbs:{_quoted(self.verbs)}")
        return "{" + ", ".join(parts) + "}"


def _quoted(values: List[str]) -> str:
    return "[" + " ".join(f'"{v}"' for v in values) + "]"


class RoleRef(KubeModel):
    api_group: str = "rbac.authorization.k8s.io"
    kind: str
    name: str


class Subject(KubeModel):
    kind: str
    name: str
    api_group: str = ""
    namespace: str = ""


class Role(KubeObject):
    rules: List[PolicyRule] = Field(default_factory=list)


class ClusterRole(KubeObject):
    rules: List[PolicyRule] = Field(default_factory=list)


class RoleBinding(KubeObject):
    subjects: List[Subject] = Field(default_factory=list)
    role_ref: RoleRef


class ClusterRoleBinding(KubeObject):
    subjects: List[Subject] = Field(default_factory=list)
    role_ref: RoleRef


class RoleTemplate(KubeObject):
    display_name: str = ""
    context: str = ""
    rules: List[PolicyRule] = Field(default_factory=list)
    role_template_names: List[str] = Field(default_factory=list)
    locked: bool = False
    builtin: bool = False
    external: bool = False
    external_rules: Optional[List[PolicyRule]] = None
    administrative: bool = False


class FleetWorkspacePermission(KubeModel):
    resource_rules: List[PolicyRule] = Field(default_factory=list)
    workspace_verbs: Optional[List[str]] = None


class GlobalRole(KubeObject):
    display_name: str = ""
    rules: List[PolicyRule] = Field(default_factory=list)
    namespaced_rules: Dict[str, List[PolicyRule]] = Field(default_factory=dict)
    inherited_cluster_roles: List[str] = Field(default_factory=list)
    inherited_fleet_workspace_permissions: Optional[FleetWorkspacePermission] = None
    builtin: bool = False


class GlobalRoleBinding(KubeObject):
    user_name: str = ""
    user_principal_name: str = ""
    group_principal_name: str = ""
    global_role_name: str = ""


class ClusterRoleTemplateBinding(KubeObject):
    cluster_name: str = ""
    role_template_name: str = ""
    user_name: str = ""
    user_principal_name: str = ""
    group_name: str = ""
    group_principal_name: str = ""


class ProjectRoleTemplateBinding(KubeObject):
    project_name: str = ""
    role_template_name: str = ""
    user_name: str = ""
    user_principal_name: str = ""
    group_name: str = ""
    group_principal_name: str = ""
    service_account: str = ""


class FeatureSpec(KubeModel):
    value: Optional[bool] = None


class FeatureStatus(KubeModel):
    default: bool = False


class Feature(KubeObject):
    spec: FeatureSpec = Field(default_factory=FeatureSpec)
    status: FeatureStatus = Field(default_factory=FeatureStatus)

    @property
    def enabled(self) -> bool:
        if self.spec.value is None:
            return self.status.default
        return self.spec.value


class Cluster(KubeObject):
    pass
