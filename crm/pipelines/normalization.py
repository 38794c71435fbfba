"""Identity normalization for contact fields.

Turns free-form email and phone values into comparable keys. Provider
specific mailbox behaviour lives in ``MAILBOX_RULES`` so new alias-insensitive
providers can be registered without touching ``canonical_email``.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r'[^0-9]')


@dataclass(frozen=True)
class MailboxRule:
    """How a mail provider treats variations of the same mailbox.

    Attributes:
        strip_plus_tag: Drop everything from the first ``+`` in the local part
        strip_dots: Remove all ``.`` characters from the local part
        canonical_domain: Domain to rewrite to (e.g. googlemail.com -> gmail.com)
    """
    strip_plus_tag: bool = False
    strip_dots: bool = False
    canonical_domain: str | None = None

    def apply(self, local: str, domain: str) -> tuple[str, str]:
        if self.strip_plus_tag:
            local = local.split('+', 1)[0]
        if self.strip_dots:
            local = local.replace('.', '')
        return local, self.canonical_domain or domain


GMAIL_RULE = MailboxRule(strip_plus_tag=True, strip_dots=True, canonical_domain="gmail.com")

MAILBOX_RULES: dict[str, MailboxRule] = {
    "gmail.com": GMAIL_RULE,
    "googlemail.com": GMAIL_RULE,
}


def register_mailbox_rule(domain: str, rule: MailboxRule) -> None:
    """Register (or replace) the mailbox rule for a domain."""
    domain = domain.strip().lower()
    if not domain:
        raise ValueError("domain must not be empty")
    MAILBOX_RULES[domain] = rule
    logger.debug(f"Registered mailbox rule for {domain}: {rule}")


def canonical_email(raw: str | None, rules: dict[str, MailboxRule] | None = None) -> str:
    """Canonical email key used for duplicate grouping.

    Trims and lower-cases the address. When the domain has a mailbox rule
    the local part is rewritten by it; other domains keep their local part.

    Examples:
        >>> canonical_email("Foo.Bar+promo@GMAIL.com")
        'foobar@gmail.com'
        >>> canonical_email("A.B@Example.com")
        'a.b@example.com'
    """
    if not raw:
        return ""

    lowered = raw.strip().lower()
    local, sep, domain = lowered.rpartition('@')
    if not sep or not local or not domain:
        return lowered

    rule = (MAILBOX_RULES if rules is None else rules).get(domain)
    if rule is None:
        return lowered

    local, domain = rule.apply(local, domain)
    if not local:
        # "+tag@gmail.com": no mailbox name left
        return lowered
    return f"{local}@{domain}"


def canonical_phone(raw: str | None) -> str:
    """Digits-only phone key. No country-code folding is attempted."""
    if not raw:
        return ""
    return _NON_DIGITS.sub('', raw)
