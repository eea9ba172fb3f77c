"""
FMS payload normalizer.

Converts raw tenant/unit dicts from any provider into ExternalTenant and
ExternalUnit records. Vendors disagree on key casing, so both camelCase
("externalId", "unitNumber") and snake_case ("external_id", "unit_number")
are accepted, as well as the short forms "id", "units", "type" and "rate".

No I/O here: providers fetch, this module only reshapes.
"""
from typing import Any, Dict, List, Optional

from fmssync.providers.base import ExternalTenant, ExternalUnit
from fmssync.sync.errors import MalformedResponse


def _pick(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def normalize_tenant(raw: Any) -> ExternalTenant:
    """Normalize one raw tenant dict. Raises MalformedResponse on a non-dict."""
    if not isinstance(raw, dict):
        raise MalformedResponse("tenant record is not an object", raw_payload=raw)

    unit_ids = _pick(raw, "unitIds", "unit_ids", "units") or []
    if not isinstance(unit_ids, list):
        raise MalformedResponse("tenant unit list is not an array", raw_payload=raw)

    return ExternalTenant(
        external_id=_str_or_none(_pick(raw, "externalId", "external_id", "id")),
        first_name=_pick(raw, "firstName", "first_name"),
        last_name=_pick(raw, "lastName", "last_name"),
        email=_pick(raw, "email"),
        phone=_str_or_none(_pick(raw, "phone")),
        unit_ids=[str(u) for u in unit_ids],
        status=_pick(raw, "status") or "active",
    )


def normalize_unit(raw: Any) -> ExternalUnit:
    """Normalize one raw unit dict. A unit without a unit number is malformed."""
    if not isinstance(raw, dict):
        raise MalformedResponse("unit record is not an object", raw_payload=raw)

    unit_number = _pick(raw, "unitNumber", "unit_number", "number")
    if unit_number is None:
        raise MalformedResponse("unit record has no unit number", raw_payload=raw)

    rate = _pick(raw, "monthlyRate", "monthly_rate", "rate")
    try:
        monthly_rate = float(rate) if rate is not None else None
    except (TypeError, ValueError):
        raise MalformedResponse(f"unit {unit_number} has a non-numeric rate", raw_payload=raw)

    return ExternalUnit(
        external_id=_str_or_none(_pick(raw, "externalId", "external_id", "id")),
        unit_number=str(unit_number),
        unit_type=_pick(raw, "unitType", "unit_type", "type"),
        size=_str_or_none(_pick(raw, "size")),
        status=_pick(raw, "status") or "available",
        tenant_id=_str_or_none(_pick(raw, "tenantId", "tenant_id")),
        monthly_rate=monthly_rate,
    )


def _extract_list(payload: Any, key: str) -> List[Any]:
    """Accept either a bare list or {"<key>": [...]}. Anything else is malformed."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get(key), list):
        return payload[key]
    raise MalformedResponse(f"expected a list of {key}", raw_payload=payload)


def normalize_tenants(payload: Any) -> List[ExternalTenant]:
    return [normalize_tenant(raw) for raw in _extract_list(payload, "tenants")]


def normalize_units(payload: Any) -> List[ExternalUnit]:
    return [normalize_unit(raw) for raw in _extract_list(payload, "units")]

