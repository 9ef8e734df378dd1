"""Shared test doubles."""

from tests.fixtures.ledger import OPERATOR, FakeLedger

__all__ = ["FakeLedger", "OPERATOR"]
