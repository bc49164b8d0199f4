"""Ordered safety rules that protect mail from cleanup."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from .constants import LEGAL_KEYWORDS, PROTECTED_LABELS, RECENT_EMAIL_DAYS, VIP_DOMAINS
from .models import EmailRecord

logger = logging.getLogger(__name__)


@dataclass
class SafetyConfig:
    vip_domains: list[str] = field(default_factory=lambda: list(VIP_DOMAINS))
    legal_keywords: list[str] = field(default_factory=lambda: list(LEGAL_KEYWORDS))
    protected_labels: list[str] = field(default_factory=lambda: list(PROTECTED_LABELS))
    recent_days: int = RECENT_EMAIL_DAYS


@dataclass(frozen=True)
class SafetyContext:
    """Per-evaluation inputs shared by every rule."""

    now: datetime
    preserve_important: bool = True


@dataclass(frozen=True)
class SafetyVerdict:
    rule: str
    reason: str


class SafetyRule:
    """A single protection check.

    ``check`` returns a verdict when the message must be kept, None otherwise.
    Rules with ``requires_preserve_important`` only run for policies that set
    ``preserve_important``.
    """

    name = "rule"
    requires_preserve_important = False

    def applies(self, context: SafetyContext) -> bool:
        return context.preserve_important or not self.requires_preserve_important

    def check(self, email: EmailRecord, context: SafetyContext) -> SafetyVerdict | None:
        raise NotImplementedError

    def _protect(self, reason: str) -> SafetyVerdict:
        return SafetyVerdict(rule=self.name, reason=reason)


class HighImportanceRule(SafetyRule):
    name = "high_importance"

    def check(self, email, context):
        if email.category == "high" or email.importance_level == "high":
            return self._protect("high importance email")
        return None


class RecentEmailRule(SafetyRule):
    name = "recent_email"

    def __init__(self, recent_days: int = RECENT_EMAIL_DAYS) -> None:
        self.recent_days = recent_days

    def check(self, email, context):
        if email.date is None:
            return None
        age_days = (context.now - email.date).total_seconds() / 86400
        if age_days < self.recent_days:
            return self._protect(f"received within the last {self.recent_days} days")
        return None


class VipDomainRule(SafetyRule):
    name = "vip_domain"
    requires_preserve_important = True

    def __init__(self, domains: list[str]) -> None:
        self.domains = [d.lower() for d in domains]

    def check(self, email, context):
        sender = email.sender.lower().strip().rstrip(">")
        domain = sender.rsplit("@", 1)[-1] if "@" in sender else ""
        for vip in self.domains:
            if domain == vip or domain.endswith("." + vip):
                return self._protect(f"sender domain {domain} is a VIP domain")
        return None


class AttachmentRule(SafetyRule):
    name = "attachments"
    requires_preserve_important = True

    def check(self, email, context):
        if email.has_attachments:
            return self._protect("email has attachments")
        return None


class LegalKeywordRule(SafetyRule):
    name = "legal_keywords"
    requires_preserve_important = True

    def __init__(self, keywords: list[str]) -> None:
        self.keywords = [k.lower() for k in keywords]

    def check(self, email, context):
        text = f"{email.subject} {email.snippet}".lower()
        for keyword in self.keywords:
            if keyword in text:
                return self._protect(f"contains legal/compliance keyword '{keyword}'")
        return None


class ProtectedLabelRule(SafetyRule):
    name = "protected_labels"
    requires_preserve_important = True

    def __init__(self, labels: list[str]) -> None:
        self.labels = {label.upper() for label in labels}

    def check(self, email, context):
        for label in email.labels:
            if label.upper() in self.labels:
                return self._protect(f"has protected label {label}")
        return None


class SafetyChain:
    """Runs rules in order and stops at the first one that protects a message."""

    def __init__(self, rules: list[SafetyRule] | None = None) -> None:
        self.rules: list[SafetyRule] = list(rules or [])
        self.protections: Counter[str] = Counter()

    @classmethod
    def from_config(cls, config: SafetyConfig) -> SafetyChain:
        return cls(
            [
                HighImportanceRule(),
                RecentEmailRule(config.recent_days),
                VipDomainRule(config.vip_domains),
                AttachmentRule(),
                LegalKeywordRule(config.legal_keywords),
                ProtectedLabelRule(config.protected_labels),
            ]
        )

    def add_rule(self, rule: SafetyRule, index: int | None = None) -> None:
        if index is None:
            self.rules.append(rule)
        else:
            self.rules.insert(index, rule)

    def check(self, email: EmailRecord, context: SafetyContext) -> SafetyVerdict | None:
        for rule in self.rules:
            if not rule.applies(context):
                continue
            verdict = rule.check(email, context)
            if verdict is not None:
                self.protections[verdict.rule] += 1
                logger.debug("Email %s protected by %s: %s", email.id, verdict.rule, verdict.reason)
                return verdict
        return None

    def get_metrics(self) -> dict:
        return {
            "rules": [rule.name for rule in self.rules],
            "protections_by_rule": dict(self.protections),
            "total_protections": sum(self.protections.values()),
        }
