"""Tests for connection lifecycle rules and keyword categorization."""

from decimal import Decimal

import pytest

from backend.app.bank_integration.categorization import KeywordCategorizer
from backend.app.bank_integration.state import (
    ConnectionPhase, InvalidTransitionError, can_sync, can_transition, ensure_transition, phase_for_status
)


class TestConnectionPhase:

    @pytest.mark.parametrize("current, target", [
        (ConnectionPhase.DISCONNECTED, ConnectionPhase.PENDING),
        (ConnectionPhase.PENDING, ConnectionPhase.ACTIVE),
        (ConnectionPhase.ACTIVE, ConnectionPhase.REFRESHING),
        (ConnectionPhase.REFRESHING, ConnectionPhase.EXPIRED),
        (ConnectionPhase.ERROR, ConnectionPhase.ACTIVE),
        (ConnectionPhase.EXPIRED, ConnectionPhase.PENDING),
        (ConnectionPhase.REVOKED, ConnectionPhase.DISCONNECTED),
        (ConnectionPhase.EXPIRED, ConnectionPhase.REVOKED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)
        assert ensure_transition(current, target) is target

    @pytest.mark.parametrize("current, target", [
        (ConnectionPhase.DISCONNECTED, ConnectionPhase.ACTIVE),
        (ConnectionPhase.EXPIRED, ConnectionPhase.ACTIVE),
        (ConnectionPhase.REVOKED, ConnectionPhase.REFRESHING),
        (ConnectionPhase.EXPIRED, ConnectionPhase.ERROR),
        (ConnectionPhase.REVOKED, ConnectionPhase.ACTIVE),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError):
            ensure_transition(current, target)

    def test_phase_for_status(self):
        assert phase_for_status(None) is ConnectionPhase.DISCONNECTED
        assert phase_for_status("expired") is ConnectionPhase.EXPIRED
        with pytest.raises(ValueError):
            phase_for_status("bogus")

    @pytest.mark.parametrize("status, expected", [
        ("active", True),
        ("error", True),
        ("expired", False),
        ("revoked", False),
        (None, False),
    ])
    def test_can_sync(self, status, expected):
        assert can_sync(status) is expected


class TestKeywordCategorizer:

    @pytest.mark.parametrize("description, category", [
        ("TESCO SUPERMARKET 123", "food"),
        ("Uber *Trip", "transport"),
        ("British Gas direct debit", "bills"),
        ("AMAZON MARKETPLACE", "shopping"),
        ("Spotify Premium", "entertainment"),
        ("Boots Pharmacy", "health"),
        ("ACME LTD SALARY", "income"),
        ("Mystery vendor", "other"),
        ("", "other"),
    ])
    def test_default_rules(self, description, category):
        assert KeywordCategorizer()(description, Decimal("-1")) == category

    def test_custom_rules(self):
        categorizer = KeywordCategorizer(rules=[("coffee", ["Pret", "Costa"])], default="misc")

        assert categorizer("PRET A MANGER", Decimal("-3")) == "coffee"
        assert categorizer("Greggs", Decimal("-3")) == "misc"
