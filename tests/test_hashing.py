"""
Tests for canonical JSON and SHA256 audit seals.

Copyright (c) 2026 Andreas Wagner. All rights reserved.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from cryptotax.core.hashing import (
    calculate_sha256,
    canonical_json_dumps,
    create_audit_entry,
    verify_hash,
)
from cryptotax.tax.tax_events import TaxEventType


class TestCanonicalJson:
    """Deterministic serialization."""

    def test_docstring_example(self):
        result = canonical_json_dumps({"date": date(2024, 1, 15), "amount": Decimal("123.450")})

        assert result == '{"amount":"123.45","date":"2024-01-15"}'

    def test_trailing_zeros_do_not_change_hash(self):
        assert calculate_sha256({"x": Decimal("1.50")}) == calculate_sha256({"x": Decimal("1.5")})

    def test_large_values_not_in_exponent_form(self):
        assert canonical_json_dumps(Decimal("1E+3")) == '"1000"'

    def test_key_order_is_irrelevant(self):
        assert calculate_sha256({"a": 1, "b": 2}) == calculate_sha256({"b": 2, "a": 1})

    def test_enums_and_datetimes(self):
        moment = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert canonical_json_dumps([TaxEventType.DISPOSAL, moment]) == (
            '["DISPOSAL","2024-01-01T00:00:00+00:00"]'
        )

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            canonical_json_dumps({"x": object()})


class TestHashSeal:
    """calculate_sha256 / verify_hash / create_audit_entry."""

    def test_prefix_and_length(self):
        digest = calculate_sha256({"report": "AU-2023-2024"})

        assert digest.startswith("sha256:")
        assert len(digest) == len("sha256:") + 64

    def test_verify(self):
        payload = {"taxable": Decimal("5500")}
        digest = calculate_sha256(payload)

        assert verify_hash(payload, digest)
        assert not verify_hash({"taxable": Decimal("5501")}, digest)

    def test_audit_entry(self):
        entry = create_audit_entry("AU-2023-2024-abc", {"transactions": 3}, {"taxable": "5500"})

        assert entry["event_id"] == "AU-2023-2024-abc"
        assert entry["calculation_hash"].startswith("sha256:")
        assert entry["inputs"] == {"transactions": 3}
        assert entry["outputs"] == {"taxable": "5500"}
