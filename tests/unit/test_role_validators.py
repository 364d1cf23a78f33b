# tests/unit/test_role_validators.py
"""
Unit tests for the RoleTemplate, GlobalRole and GlobalRoleBinding validators
"""

import asyncio

import pytest

from fixtures.k8s import FakeSubjectAccessReviewer, StaticRuleResolver, global_role, make_request, rule
from kubeguard.auth.escalation import BIND_VERB, ESCALATE_VERB, EscalationChecker
from kubeguard.exceptions import HandlerConstructionError, RoleTemplateNotFoundError
from kubeguard.validators.common import FieldError, validate_rules
from kubeguard.validators.globalrole import GlobalRoleValidator
from kubeguard.validators.globalrolebinding import GlobalRoleBindingValidator
from kubeguard.validators.roletemplate import RoleTemplateValidator

ADMIN = rule(["*"], ["*"], ["*"])
POD_READER = {"verbs": ["get", "list"], "apiGroups": [""], "resources": ["pods"]}


def _admit(handler, request):
    return asyncio.run(handler.admitters()[0].admit(request))


def _role_template_obj(name, rules=None, inherits=None, **fields):
    obj = {"metadata": {"name": name}, "context": "cluster", "rules": rules or [], "roleTemplateNames": inherits or []}
    obj.update(fields)
    return obj


def _global_role_obj(name, rules=None, inherited=None, **fields):
    obj = {"metadata": {"name": name}, "rules": rules or [], "inheritedClusterRoles": inherited or []}
    obj.update(fields)
    return obj


# RoleTemplate


@pytest.fixture
def role_template_validator(role_template_resolver):
    def build(held_rules=(), sar=None):
        checker = EscalationChecker(sar or FakeSubjectAccessReviewer(), StaticRuleResolver(list(held_rules)))
        return RoleTemplateValidator(role_template_resolver, checker)

    return build


def test_role_template_allowed_when_rules_held(role_template_validator):
    validator = role_template_validator([ADMIN])

    response = _admit(validator, make_request(_role_template_obj("new", [POD_READER], inherits=["edit-pods"])))

    assert response.allowed is True


def test_role_template_escalation_denied(role_template_validator):
    """Creating a template with rules the user lacks is forbidden."""
    validator = role_template_validator([rule(["get", "list"], [""], ["pods"])])

    response = _admit(validator, make_request(_role_template_obj("new", inherits=["edit-pods"])))

    assert response.allowed is False
    assert response.result.code == 403
    assert 'Verbs:["create"]' in response.result.message


def test_role_template_escalate_verb(role_template_validator):
    validator = role_template_validator([], sar=FakeSubjectAccessReviewer(allowed_verbs=[ESCALATE_VERB]))

    response = _admit(validator, make_request(_role_template_obj("new", [POD_READER])))

    assert response.allowed is True


def test_role_template_circular_reference(role_template_validator):
    """Inheriting a template that already inherits this one is rejected."""
    validator = role_template_validator([ADMIN])
    request = make_request(
        _role_template_obj("read-pods", [POD_READER], inherits=["edit-pods"]),
        operation="UPDATE",
        old_obj=_role_template_obj("read-pods", [POD_READER]),
    )

    response = _admit(validator, request)

    assert response.allowed is False
    assert response.result.code == 400
    assert response.result.message == "Circular Reference: RoleTemplate edit-pods already inherits RoleTemplate read-pods"


def test_role_template_self_reference(role_template_validator):
    validator = role_template_validator([ADMIN])

    response = _admit(validator, make_request(_role_template_obj("self", inherits=["self"])))

    assert response.result.message == "Circular Reference: RoleTemplate self already inherits RoleTemplate self"


def test_role_template_rule_without_verbs(role_template_validator):
    validator = role_template_validator([ADMIN])
    rules = [{"verbs": [], "apiGroups": [""], "resources": ["pods"]}]

    response = _admit(validator, make_request(_role_template_obj("new", rules)))

    assert response.allowed is False
    assert response.result.code == 400
    assert "at least one verb" in response.result.message


def test_role_template_being_deleted_is_allowed(role_template_validator):
    """Updates to templates with a deletion timestamp skip every check."""
    validator = role_template_validator([])
    obj = _role_template_obj("new", [POD_READER])
    obj["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    response = _admit(validator, make_request(obj, operation="UPDATE", old_obj=obj))

    assert response.allowed is True


def test_role_template_missing_inherited_template(role_template_validator):
    validator = role_template_validator([ADMIN])

    with pytest.raises(RoleTemplateNotFoundError):
        _admit(validator, make_request(_role_template_obj("new", inherits=["missing"])))


def test_role_template_validator_requires_dependencies(role_template_resolver):
    with pytest.raises(HandlerConstructionError, match="escalation_checker"):
        RoleTemplateValidator(role_template_resolver, None)


# GlobalRole


@pytest.fixture
def global_role_validator(global_role_resolver):
    def build(cluster_rules=(), rules=(), sar=None):
        return GlobalRoleValidator(
            global_role_resolver,
            StaticRuleResolver(list(cluster_rules)),
            StaticRuleResolver(list(rules)),
            sar or FakeSubjectAccessReviewer(),
        )

    return build


def test_global_role_create_allowed(global_role_validator):
    validator = global_role_validator([ADMIN], [ADMIN])

    response = _admit(validator, make_request(_global_role_obj("gr", [POD_READER], inherited=["read-pods"])))

    assert response.allowed is True


def test_global_role_create_builtin(global_role_validator):
    validator = global_role_validator([ADMIN], [ADMIN])

    response = _admit(validator, make_request(_global_role_obj("gr", builtin=True)))

    assert response.result.code == 400
    assert "cannot create builtin GlobalRoles" in response.result.message


def test_global_role_delete_builtin(global_role_validator):
    """Builtin roles cannot be deleted, other roles can."""
    validator = global_role_validator()

    builtin = _admit(validator, make_request(old_obj=_global_role_obj("admin", builtin=True), operation="DELETE"))
    custom = _admit(validator, make_request(old_obj=_global_role_obj("custom"), operation="DELETE"))

    assert builtin.allowed is False
    assert "cannot delete builtin GlobalRoles" in builtin.result.message
    assert custom.allowed is True


def test_global_role_builtin_only_metadata_changes(global_role_validator):
    """Builtin roles may have their metadata changed but nothing else."""
    validator = global_role_validator([ADMIN], [ADMIN])
    old = _global_role_obj("admin", [POD_READER], builtin=True)
    relabeled = _global_role_obj("admin", [POD_READER], builtin=True)
    relabeled["metadata"]["labels"] = {"team": "core"}
    changed = _global_role_obj("admin", [POD_READER, POD_READER], builtin=True)

    allowed = _admit(validator, make_request(relabeled, operation="UPDATE", old_obj=old))
    denied = _admit(validator, make_request(changed, operation="UPDATE", old_obj=old))

    assert allowed.allowed is True
    assert denied.allowed is False
    assert "updates to builtIn GlobalRoles" in denied.result.message


def test_global_role_builtin_undeclared_fields_are_immutable(global_role_validator):
    """Every field except newUserDefault is compared, not only the ones the model knows."""
    validator = global_role_validator([ADMIN], [ADMIN])
    old = _global_role_obj("admin", [POD_READER], builtin=True)
    old["description"] = "Administrators"
    default_changed = {**old, "newUserDefault": True}
    described = {**old, "description": "Everyone"}

    allowed = _admit(validator, make_request(default_changed, operation="UPDATE", old_obj=old))
    denied = _admit(validator, make_request(described, operation="UPDATE", old_obj=old))

    assert allowed.allowed is True
    assert denied.allowed is False
    assert "updates to builtIn GlobalRoles" in denied.result.message


def test_global_role_cannot_become_builtin(global_role_validator):
    validator = global_role_validator([ADMIN], [ADMIN])

    response = _admit(
        validator,
        make_request(_global_role_obj("gr", builtin=True), operation="UPDATE", old_obj=_global_role_obj("gr")),
    )

    assert response.result.code == 400


@pytest.mark.parametrize(
    "inherited, message",
    [
        (["missing"], "unable to find all roleTemplates"),
        (["project-member"], "non-cluster context"),
        (["locked-template"], "unable to use locked roleTemplate"),
    ],
)
def test_global_role_invalid_inherited_cluster_roles(global_role_validator, inherited, message):
    validator = global_role_validator([ADMIN], [ADMIN])

    response = _admit(validator, make_request(_global_role_obj("gr", inherited=inherited)))

    assert response.allowed is False
    assert response.result.code == 400
    assert message in response.result.message


def test_global_role_keeps_previously_locked_template(global_role_validator):
    """A locked template inherited before the update is left alone."""
    validator = global_role_validator([ADMIN], [ADMIN])
    old = _global_role_obj("gr", inherited=["locked-template"])
    new = _global_role_obj("gr", [POD_READER], inherited=["locked-template"])

    response = _admit(validator, make_request(new, operation="UPDATE", old_obj=old))

    assert response.allowed is True


def test_global_role_invalid_rules(global_role_validator):
    validator = global_role_validator([ADMIN], [ADMIN])
    rules = [{"verbs": ["get"], "apiGroups": [""], "resources": []}]

    response = _admit(validator, make_request(_global_role_obj("gr", rules)))

    assert response.result.code == 400
    assert "globalrole.rules[0].resources: Required value" in response.result.message


def test_global_role_namespaced_rules_cannot_use_urls(global_role_validator):
    validator = global_role_validator([ADMIN], [ADMIN])
    obj = _global_role_obj("gr", namespacedRules={"ns-1": [{"verbs": ["get"], "nonResourceURLs": ["/metrics"]}]})

    response = _admit(validator, make_request(obj))

    assert response.result.code == 400
    assert "namespaced rules cannot apply to non-resource URLs" in response.result.message


def test_global_role_cluster_escalation(global_role_validator):
    """Inherited cluster rules must be held on the clusters."""
    validator = global_role_validator(cluster_rules=[], rules=[ADMIN])

    response = _admit(validator, make_request(_global_role_obj("gr", inherited=["read-pods"])))

    assert response.allowed is False
    assert response.result.code == 403


def test_global_role_global_escalation(global_role_validator):
    validator = global_role_validator(cluster_rules=[ADMIN], rules=[])

    response = _admit(validator, make_request(_global_role_obj("gr", [POD_READER])))

    assert response.allowed is False
    assert response.result.code == 403


def test_global_role_escalate_verb(global_role_validator):
    sar = FakeSubjectAccessReviewer(allowed_verbs=[ESCALATE_VERB])
    validator = global_role_validator(sar=sar)

    response = _admit(validator, make_request(_global_role_obj("gr", [POD_READER], inherited=["read-pods"])))

    assert response.allowed is True
    assert len(sar.calls) == 1
    assert sar.calls[0]["name"] == "gr"


# GlobalRoleBinding


@pytest.fixture
def grb_validator(global_roles, global_role_resolver):
    global_roles.replace(
        [
            global_role("pods", [rule(["get", "list"], [""], ["pods"])], inherited=["read-pods"]),
            global_role("locked", inherited=["locked-template"]),
            global_role("dangling", inherited=["missing"]),
            global_role("namespaced", namespaced_rules={"ns-1": [rule(["get"], [""], ["secrets"])]}),
        ]
    )

    def build(held_rules=(), sar=None, namespaced_resolver=None):
        held = StaticRuleResolver(list(held_rules))
        return GlobalRoleBindingValidator(
            global_role_resolver,
            namespaced_resolver or held,
            held,
            held,
            held,
            sar or FakeSubjectAccessReviewer(),
        )

    return build


def _grb_obj(role, user="bob", group=""):
    return {
        "metadata": {"name": "grb"},
        "userName": user,
        "groupPrincipalName": group,
        "globalRoleName": role,
    }


def test_grb_allowed_when_rules_held(grb_validator):
    response = _admit(grb_validator([ADMIN]), make_request(_grb_obj("pods")))

    assert response.allowed is True


def test_grb_unknown_global_role(grb_validator):
    response = _admit(grb_validator([ADMIN]), make_request(_grb_obj("nope")))

    assert response.result.code == 400
    assert response.result.message == 'globalrolebindings.globalRoleName: Not found: "nope"'


@pytest.mark.parametrize("user, group", [("bob", "local://devs"), ("", "")])
def test_grb_needs_exactly_one_subject(grb_validator, user, group):
    response = _admit(grb_validator([ADMIN]), make_request(_grb_obj("pods", user=user, group=group)))

    assert response.allowed is False
    assert response.result.code == 400


def test_grb_locked_role_template(grb_validator):
    response = _admit(grb_validator([ADMIN]), make_request(_grb_obj("locked")))

    assert response.result.code == 400
    assert "locked-template which is locked" in response.result.message


def test_grb_missing_role_template_on_create(grb_validator):
    response = _admit(grb_validator([ADMIN]), make_request(_grb_obj("dangling")))

    assert response.result.code == 400
    assert "unable to find all roleTemplates" in response.result.message


def test_grb_missing_role_template_on_update(grb_validator):
    obj = _grb_obj("dangling")

    response = _admit(grb_validator([ADMIN]), make_request(obj, operation="UPDATE", old_obj=obj))

    assert response.result.code == 400
    assert "at least one roleTemplate was not found" in response.result.message


def test_grb_fields_are_immutable(grb_validator):
    request = make_request(_grb_obj("pods", user="carol"), operation="UPDATE", old_obj=_grb_obj("pods"))

    response = _admit(grb_validator([ADMIN]), request)

    assert response.result.code == 400
    assert response.result.message == 'globalrolebindings.userName: Invalid value: "carol": field is immutable'


def test_grb_escalation(grb_validator):
    """Binding a role whose rules the requester lacks is forbidden."""
    response = _admit(grb_validator([]), make_request(_grb_obj("pods")))

    assert response.allowed is False
    assert response.result.code == 403
    assert response.result.message.startswith("errors due to escalation: ")


def test_grb_bind_verb(grb_validator):
    sar = FakeSubjectAccessReviewer(allowed_verbs=[BIND_VERB])

    response = _admit(grb_validator([], sar=sar), make_request(_grb_obj("pods")))

    assert response.allowed is True
    assert len(sar.calls) == 1
    assert sar.calls[0]["verb"] == BIND_VERB


def test_grb_namespaced_rules_checked_in_namespace(grb_validator):
    namespaced = StaticRuleResolver([ADMIN])

    response = _admit(grb_validator([ADMIN], namespaced_resolver=namespaced), make_request(_grb_obj("namespaced")))

    assert response.allowed is True
    assert "ns-1" in namespaced.namespaces


def test_grb_being_deleted_is_allowed(grb_validator):
    obj = _grb_obj("nope")
    obj["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    response = _admit(grb_validator(), make_request(obj, operation="UPDATE", old_obj=obj))

    assert response.allowed is True


# Common helpers


def test_field_error_messages():
    assert str(FieldError.invalid("a.b", "x", "bad")) == 'a.b: Invalid value: "x": bad'
    assert str(FieldError.forbidden("a", "no")) == "a: Forbidden: no"
    assert str(FieldError.required("a.c")) == "a.c: Required value"
    assert str(FieldError.not_supported("a.ctx", "project", ["cluster"])) == (
        'a.ctx: Unsupported value: "project": supported values: "cluster"'
    )


def test_validate_rules_collects_every_error():
    rules = [rule([], [""], ["pods"]), rule(["get"], ["apps"], ["deployments"]), rule(["get"], [], [])]

    message = validate_rules(rules, False, "rules")

    assert message.splitlines() == [
        "rules[0].verbs: Required value: verbs must contain at least one value",
        "rules[2].apiGroups: Required value: resource rules must supply at least one api group",
        "rules[2].resources: Required value: resource rules must supply at least one resource",
    ]
    assert validate_rules([rule(["get"], urls=["/healthz"])], False, "rules") is None
