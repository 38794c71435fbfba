"""Tests for email/phone identity normalization."""

from __future__ import annotations

import pytest

from crm.pipelines.normalization import (
    GMAIL_RULE,
    MAILBOX_RULES,
    MailboxRule,
    canonical_email,
    canonical_phone,
    register_mailbox_rule,
)

pytestmark = pytest.mark.unit


class TestCanonicalEmail:
    def test_gmail_dots_and_plus_tag_removed(self):
        assert canonical_email("Foo.Bar+promo@GMAIL.com") == "foobar@gmail.com"

    def test_googlemail_rewritten_to_gmail(self):
        assert canonical_email("j.doe+loans@googlemail.com") == "jdoe@gmail.com"

    def test_other_domains_only_case_and_trim(self):
        assert canonical_email("A@Example.com") == "a@example.com"
        assert canonical_email("  First.Last+tag@Lender.ca ") == "first.last+tag@lender.ca"

    def test_trailing_dot_local_part_matches_plain(self):
        assert canonical_email("X.@gmail.com") == canonical_email("x@gmail.com") == "x@gmail.com"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_inputs_give_empty_key(self, raw):
        assert canonical_email(raw) == ""

    @pytest.mark.parametrize("raw", ["not-an-email", "@gmail.com", "user@", "+only@gmail.com"])
    def test_malformed_values_are_lowercased_not_rejected(self, raw):
        assert canonical_email(raw) == raw.strip().lower()

    @pytest.mark.parametrize(
        "raw",
        [
            "Foo.Bar+promo@GMAIL.com",
            "A@Example.com",
            "a.b.c+x+y@googlemail.com",
            "weird@@gmail.com",
            "+only@gmail.com",
            "",
            None,
        ],
    )
    def test_idempotent(self, raw):
        once = canonical_email(raw)
        assert canonical_email(once) == once

    def test_explicit_rule_table_overrides_default(self):
        rules = {"example.com": MailboxRule(strip_plus_tag=True)}
        assert canonical_email("bob+crm@example.com", rules=rules) == "bob@example.com"
        # gmail is not in the supplied table
        assert canonical_email("b.ob@gmail.com", rules=rules) == "b.ob@gmail.com"


class TestRegisterMailboxRule:
    def test_registered_domain_uses_rule(self, monkeypatch):
        monkeypatch.setattr(
            "crm.pipelines.normalization.MAILBOX_RULES", dict(MAILBOX_RULES)
        )
        register_mailbox_rule("Proton.ME", MailboxRule(strip_plus_tag=True))
        assert canonical_email("alice+bank@proton.me") == "alice@proton.me"

    def test_gmail_rule_can_be_shared(self, monkeypatch):
        monkeypatch.setattr(
            "crm.pipelines.normalization.MAILBOX_RULES", dict(MAILBOX_RULES)
        )
        register_mailbox_rule("corp-gmail.test", GMAIL_RULE)
        assert canonical_email("a.b+c@corp-gmail.test") == "ab@gmail.com"

    def test_empty_domain_rejected(self):
        with pytest.raises(ValueError):
            register_mailbox_rule("  ", GMAIL_RULE)


class TestCanonicalPhone:
    def test_punctuation_removed(self):
        assert canonical_phone("(555) 123-4567") == "5551234567"

    def test_country_code_kept_as_digits(self):
        assert canonical_phone("+1 (555) 123-4567") == "15551234567"
        # No country-code folding: these do not collide
        assert canonical_phone("+1 555 123 4567") != canonical_phone("555-123-4567")

    def test_extension_digits_kept(self):
        assert canonical_phone("555.123.4567 ext. 89") == "555123456789"

    @pytest.mark.parametrize("raw", [None, "", "n/a"])
    def test_no_digits_gives_empty_key(self, raw):
        assert canonical_phone(raw) == ""

    def test_idempotent(self):
        once = canonical_phone("+44 (0)20 7946-0958")
        assert canonical_phone(once) == once
