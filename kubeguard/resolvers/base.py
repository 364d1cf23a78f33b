"""
Shared types for resolving the rules a user holds.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from kubeguard.admission.review import UserInfo
from kubeguard.models import PolicyRule

LOCAL_CLUSTER = "local"


def user_key(username: str, namespace: str) -> str:
    return f"user:{username}-{namespace}"


def group_key(group: str, namespace: str) -> str:
    return f"group:{group}-{namespace}"


@dataclass
class RuleResolution:
    """
    Rules gathered for a user. Errors do not discard rules that were
    resolved successfully; they only mean the picture may be incomplete.
    """

    rules: List[PolicyRule] = field(default_factory=list)
    errors: List[Exception] = field(default_factory=list)

    def add(self, rules: Optional[Iterable[PolicyRule]] = None, error: Optional[Exception] = None):
        if error is not None:
            self.errors.append(error)
        if rules:
            self.rules.extend(rules)

    def merge(self, other: "RuleResolution"):
        self.rules.extend(other.rules)
        self.errors.extend(other.errors)

    def error_message(self) -> str:
        if not self.errors:
            return ""
        if len(self.errors) == 1:
            return str(self.errors[0])
        return "[" + ", ".join(str(e) for e in self.errors) + "]"


class RuleResolver(ABC):
    """Source of the rules granted to a user within a namespace."""

    @abstractmethod
    def rules_for(self, user: UserInfo, namespace: str) -> RuleResolution:
        raise NotImplementedError()


class AggregateRuleResolver(RuleResolver):
    """Union of the rules every wrapped resolver returns."""

    def __init__(self, *resolvers: RuleResolver):
        self.resolvers = list(resolvers)

    def rules_for(self, user: UserInfo, namespace: str) -> RuleResolution:
        result = RuleResolution()
        for resolver in self.resolvers:
            result.merge(resolver.rules_for(user, namespace))
        return result
