"""Tests for canonical hashing, item digests and idempotency keys."""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from revenue_settlement.core.hashing import (
    canonical_json,
    compute_digest,
    idempotency_key,
    item_fingerprint,
    items_digest,
)
from revenue_settlement.services.distribution_engine import allocate
from tests.conftest import scenario_records


class TestCanonicalJson:

    def test_sorted_keys(self):
        assert canonical_json({"z": 1, "a": 2, "m": 3}) == '{"a":2,"m":3,"z":1}'

    def test_no_whitespace(self):
        assert " " not in canonical_json({"key": "value", "list": [1, 2]})

    def test_decimal_keeps_scale(self):
        """10.00 and 10 are different amounts on a credit note."""
        assert canonical_json({"v": Decimal("10.00")}) == '{"v":"10.00"}'
        assert canonical_json({"v": Decimal("10")}) == '{"v":"10"}'

    def test_dates_and_uuids(self):
        uid = uuid.UUID("12345678-1234-5678-1234-567812345678")
        result = canonical_json({
            "d": date(2026, 3, 1),
            "t": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
            "u": uid,
        })
        assert '"d":"2026-03-01"' in result
        assert "2026-03-01T12:00:00+00:00" in result
        assert str(uid) in result

    def test_unserializable_raises(self):
        with pytest.raises(TypeError):
            canonical_json({"x": object()})


class TestDigest:

    def test_sha256_hex(self):
        h = compute_digest({"test": True})
        assert len(h) == 64
        assert all(c in "0123456789abcdef" for c in h)

    def test_salt_changes_digest(self):
        assert compute_digest({"a": 1}) != compute_digest({"a": 1}, salt="x")

    def test_items_digest_is_order_sensitive(self):
        items = allocate(scenario_records(), Decimal("50000"), "PROPORTIONAL")
        assert items_digest(items) != items_digest(list(reversed(items)))

    def test_fingerprint_ignores_reporting_fields(self):
        item = allocate(scenario_records(), Decimal("50000"), "SMOOTHED", smoothing_factor=Decimal("0.5"))[0]
        assert set(item_fingerprint(item)) == {
            "recipient_entity_id",
            "turbine_id",
            "production_share_kwh",
            "production_share_pct",
            "revenue_share_eur",
            "distribution_key",
        }


class TestIdempotencyKey:

    def test_stable_for_same_item(self):
        sid = uuid.uuid4()
        a = allocate(scenario_records(), Decimal("50000"), "PROPORTIONAL")[0]
        b = allocate(scenario_records(), Decimal("50000"), "PROPORTIONAL")[0]
        assert idempotency_key(sid, a) == idempotency_key(sid, b)

    def test_format(self):
        sid = uuid.uuid4()
        item = allocate(scenario_records(), Decimal("50000"), "PROPORTIONAL")[0]
        key = idempotency_key(sid, item)
        assert key.startswith(f"settlement-{sid}-")
        assert len(key.rsplit("-", 1)[1]) == 32

    def test_differs_per_settlement_and_amount(self):
        sid = uuid.uuid4()
        item = allocate(scenario_records(), Decimal("50000"), "PROPORTIONAL")[0]
        other = allocate(scenario_records(), Decimal("50000.10"), "PROPORTIONAL")[0]
        assert idempotency_key(sid, item) != idempotency_key(uuid.uuid4(), item)
        assert idempotency_key(sid, item) != idempotency_key(sid, other)
