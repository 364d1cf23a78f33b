# conftest.py
"""
Shared test fixtures for the admission webhook tests
"""

import os

import pytest

from fixtures.k8s import cluster_role, role_template, rule
from kubeguard.auth.global_role import GlobalRoleResolver
from kubeguard.auth.role_template import RoleTemplateResolver
from kubeguard.cache import ObjectCache
from kubeguard.models import ClusterRole, Feature, GlobalRole, RoleTemplate


@pytest.fixture(autouse=True)
def env():
    """Restore the environment after every test."""
    original_env = os.environ.copy()

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def admin_rule():
    return rule(["*"], ["*"], ["*"])


@pytest.fixture
def role_templates():
    """Role templates with an inheritance chain, a cycle and the owner template."""
    return ObjectCache(
        RoleTemplate,
        "roletemplates",
        [
            role_template("read-pods", [rule(["get", "list"], [""], ["pods"])]),
            role_template("edit-pods", [rule(["create", "update"], [""], ["pods"])], inherits=["read-pods"]),
            role_template("cycle-a", [rule(["get"], ["apps"], ["deployments"])], inherits=["cycle-b"]),
            role_template("cycle-b", [rule(["get"], ["batch"], ["jobs"])], inherits=["cycle-a"]),
            role_template("cluster-owner", [rule(["*"], ["*"], ["*"])]),
            role_template("project-member", [rule(["get"], [""], ["configmaps"])], context="project"),
            role_template("locked-template", [rule(["get"], [""], ["secrets"])], locked=True),
            role_template("dangling", [rule(["get"], [""], ["nodes"])], inherits=["missing"]),
        ],
    )


@pytest.fixture
def cluster_roles():
    return ObjectCache(ClusterRole, "clusterroles", [cluster_role("backing-role", [rule(["get"], [""], ["services"])])])


@pytest.fixture
def features():
    return ObjectCache(Feature, "features")


@pytest.fixture
def role_template_resolver(role_templates, cluster_roles, features) -> RoleTemplateResolver:
    return RoleTemplateResolver(role_templates, cluster_roles, features)


@pytest.fixture
def global_roles():
    return ObjectCache(GlobalRole, "globalroles")


@pytest.fixture
def global_role_resolver(role_template_resolver, global_roles) -> GlobalRoleResolver:
    return GlobalRoleResolver(role_template_resolver, global_roles)
