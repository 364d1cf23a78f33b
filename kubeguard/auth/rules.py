"""
Coverage checks between RBAC policy rules.

A requested rule is broken into sub-rules holding a single verb, group,
resource, resource name or URL each. The rule is covered when every sub-rule
is covered by at least one grantor rule.
"""

from typing import Iterable, List

from kubeguard.models import PolicyRule

ALL = "*"


def breakdown(rule: PolicyRule) -> List[PolicyRule]:
    """Split a rule into single-valued sub-rules."""
    subrules = []
    for group in rule.api_groups:
        for resource in rule.resources:
            for verb in rule.verbs:
                if rule.resource_names:
                    for name in rule.resource_names:
                        subrules.append(
                            PolicyRule(
                                api_groups=[group], resources=[resource], verbs=[verb], resource_names=[name]
                            )
                        )
                else:
                    subrules.append(PolicyRule(api_groups=[group], resources=[resource], verbs=[verb]))

    for url in rule.non_resource_urls:
        for verb in rule.verbs:
            subrules.append(PolicyRule(non_resource_urls=[url], verbs=[verb]))

    return subrules


def _has_all(owned: List[str], requested: List[str]) -> bool:
    return set(requested).issubset(owned)


def _resource_covers(owned: List[str], requested: str) -> bool:
    if ALL in owned or requested in owned:
        return True
    if "/" in requested:
        subresource = requested.split("/", 1)[1]
        return f"{ALL}/{subresource}" in owned
    return False


def _url_covers(owned: List[str], requested: str) -> bool:
    for url in owned:
        if url == ALL or url == requested:
            return True
        if url.endswith(ALL) and requested.startswith(url[:-1]):
            return True
    return False


def rule_covers(owner: PolicyRule, subrule: PolicyRule) -> bool:
    """True if a single grantor rule covers a single-valued sub-rule."""
    verbs_match = ALL in owner.verbs or _has_all(owner.verbs, subrule.verbs)
    groups_match = ALL in owner.api_groups or _has_all(owner.api_groups, subrule.api_groups)
    resources_match = all(_resource_covers(owner.resources, r) for r in subrule.resources)
    urls_match = all(_url_covers(owner.non_resource_urls, u) for u in subrule.non_resource_urls)

    # an owner without resource names grants every name, but a named owner
    # cannot cover an unnamed request
    if subrule.resource_names:
        names_match = not owner.resource_names or _has_all(owner.resource_names, subrule.resource_names)
    else:
        names_match = not owner.resource_names

    return verbs_match and groups_match and resources_match and names_match and urls_match


def _subrule_covered(grantor_rules: List[PolicyRule], subrule: PolicyRule) -> bool:
    return any(rule_covers(owner, subrule) for owner in grantor_rules)


def covers(grantor_rules: Iterable[PolicyRule], requested: PolicyRule) -> bool:
    """True if the grantor rules together grant everything the requested rule does."""
    owners = list(grantor_rules)
    return all(_subrule_covered(owners, subrule) for subrule in breakdown(requested))


def uncovered_rules(grantor_rules: Iterable[PolicyRule], requested_rules: Iterable[PolicyRule]) -> List[PolicyRule]:
    """Sub-rules of the requested rules that no grantor rule covers, without duplicates."""
    owners = list(grantor_rules)
    missing: List[PolicyRule] = []
    seen = set()
    for requested in requested_rules:
        for subrule in breakdown(requested):
            if _subrule_covered(owners, subrule) or subrule.key() in seen:
                continue
            seen.add(subrule.key())
            missing.append(subrule)
    return missing


def covers_all(grantor_rules: Iterable[PolicyRule], requested_rules: Iterable[PolicyRule]) -> bool:
    return not uncovered_rules(grantor_rules, requested_rules)


def dedupe_rules(rules: Iterable[PolicyRule]) -> List[PolicyRule]:
    """Union of rules: each distinct rule once, first-seen order kept."""
    result: List[PolicyRule] = []
    seen = set()
    for rule in rules:
        key = rule.key()
        if key in seen:
            continue
        seen.add(key)
        result.append(rule)
    return result
