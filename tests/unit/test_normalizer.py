"""Tests for FMS payload normalization."""
import pytest

from fmssync.providers.normalizer import normalize_tenant, normalize_tenants, normalize_unit, normalize_units
from fmssync.sync.errors import MalformedResponse


class TestNormalizeTenant:
    def test_camel_case(self):
        tenant = normalize_tenant({
            "id": "T-1", "firstName": "Jane", "lastName": "Doe",
            "email": "jane@example.com", "phone": 5550101, "unitIds": ["U-1", 2],
        })
        assert tenant.external_id == "T-1"
        assert tenant.full_name == "Jane Doe"
        assert tenant.phone == "5550101"
        assert tenant.unit_ids == ["U-1", "2"]
        assert tenant.status == "active"

    def test_snake_case(self):
        tenant = normalize_tenant({"external_id": "T-2", "first_name": "Wei", "unit_ids": []})
        assert tenant.external_id == "T-2"
        assert tenant.first_name == "Wei"

    def test_non_dict_is_malformed(self):
        with pytest.raises(MalformedResponse) as exc_info:
            normalize_tenant(["not", "a", "dict"])
        assert exc_info.value.raw_payload == ["not", "a", "dict"]

    def test_unit_list_must_be_array(self):
        with pytest.raises(MalformedResponse):
            normalize_tenant({"id": "T-1", "unitIds": "U-1"})


class TestNormalizeUnit:
    def test_fields(self):
        unit = normalize_unit({
            "id": "U-1", "unitNumber": "B12", "unitType": "climate", "size": "10x15",
            "status": "occupied", "tenantId": "T-1", "monthlyRate": "189.50",
        })
        assert unit.unit_number == "B12"
        assert unit.monthly_rate == 189.5
        assert unit.tenant_id == "T-1"

    def test_missing_unit_number_is_malformed(self):
        with pytest.raises(MalformedResponse):
            normalize_unit({"id": "U-1"})

    def test_bad_rate_is_malformed(self):
        with pytest.raises(MalformedResponse):
            normalize_unit({"id": "U-1", "unitNumber": "A1", "rate": "cheap"})

    def test_defaults(self):
        unit = normalize_unit({"number": 7})
        assert unit.unit_number == "7"
        assert unit.external_id is None
        assert unit.status == "available"


class TestLists:
    def test_bare_list_and_wrapped_list(self):
        assert len(normalize_units([{"unitNumber": "A1"}])) == 1
        assert len(normalize_units({"units": [{"unitNumber": "A1"}, {"unitNumber": "A2"}]})) == 2

    def test_wrong_shape_is_malformed(self):
        with pytest.raises(MalformedResponse):
            normalize_tenants("nope")
        with pytest.raises(MalformedResponse):
            normalize_tenants({"data": [{"id": "T-1"}]})
        with pytest.raises(MalformedResponse):
            normalize_units({"units": None})
