"""
Declarative policy documents.

A document is YAML or JSON with one record per policy::

    version: 1
    policies:
      - id: invoices-deny-employee
        category: invoices
        effect: deny
        roles: [employee]
        actions: [read]
        priority: 100
        condition:
          time_window: {start: "08:00", end: "18:00", days: [0, 1, 2, 3, 4]}
          max_amount: 5000
          ip_allow_list: ["10.0.0.0/8"]
          attributes:
            - {field: department, operator: equals, value: finance}

Loading, validating and registering a dumped document reproduces the same
lookups as the store it came from.
"""

import json
from datetime import datetime, time as dt_time, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml

from shared.logging import get_logger
from ..errors import PolicyFormatError
from .models import (
    AttributeCondition, ConditionOperator, ConflictReport, Policy, PolicyCondition, PolicyEffect,
    RoleLevel, TimeWindow
)
from .store import PolicyStore, check_policy

DOCUMENT_VERSION = 1

logger = get_logger("policy.loader")


def _parse_time(value: Any, field: str) -> dt_time:
    if isinstance(value, dt_time):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        # YAML 1.1 reads unquoted 18:00 as sexagesimal minutes and 18:00:00 as seconds
        seconds = value if value >= 24 * 60 else value * 60
        return dt_time(hour=(seconds // 3600) % 24, minute=(seconds // 60) % 60, second=seconds % 60)
    try:
        return dt_time.fromisoformat(str(value))
    except ValueError as e:
        raise PolicyFormatError(f"Invalid time for {field}: {value!r}") from e


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as e:
            raise PolicyFormatError(f"Invalid expires_at: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _attribute_value(value: Any) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


def _string_list(value: Any, field: str, policy_id: Any) -> List[str]:
    """Accept a list of scalars or a single string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or any(isinstance(item, (dict, list)) for item in value):
        raise PolicyFormatError(f"{field} must be a list or a string", details={"policy_id": policy_id})
    return [str(item) for item in value]


def condition_from_dict(data: Optional[Dict[str, Any]], policy_id: Any = None) -> Optional[PolicyCondition]:
    if not data:
        return None
    if not isinstance(data, dict):
        raise PolicyFormatError("condition must be a mapping", details={"policy_id": policy_id})

    window = None
    if data.get("time_window"):
        raw = data["time_window"]
        if not isinstance(raw, dict):
            raise PolicyFormatError("time_window must be a mapping", details={"policy_id": policy_id})
        days = raw.get("days")
        if days is not None:
            if not isinstance(days, list):
                raise PolicyFormatError("time_window.days must be a list", details={"policy_id": policy_id})
            try:
                days = frozenset(int(day) for day in days)
            except (TypeError, ValueError) as e:
                raise PolicyFormatError(
                    f"Invalid time_window.days: {raw.get('days')!r}",
                    details={"policy_id": policy_id}
                ) from e
        window = TimeWindow(
            start=_parse_time(raw.get("start"), "time_window.start"),
            end=_parse_time(raw.get("end"), "time_window.end"),
            days=days
        )

    raw_attributes = data.get("attributes") or []
    if not isinstance(raw_attributes, list):
        raise PolicyFormatError("attributes must be a list", details={"policy_id": policy_id})
    attributes = []
    for raw in raw_attributes:
        try:
            attributes.append(AttributeCondition(
                field=raw["field"],
                operator=ConditionOperator(raw["operator"]),
                value=_attribute_value(raw.get("value"))
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise PolicyFormatError(
                f"Invalid attribute condition: {raw!r}",
                details={"policy_id": policy_id}
            ) from e

    max_amount = data.get("max_amount")
    if max_amount is not None:
        try:
            if isinstance(max_amount, bool):
                raise ValueError(max_amount)
            max_amount = float(max_amount)
        except (TypeError, ValueError) as e:
            raise PolicyFormatError(
                f"Invalid max_amount: {data.get('max_amount')!r}",
                details={"policy_id": policy_id}
            ) from e

    return PolicyCondition(
        time_window=window,
        max_amount=max_amount,
        ip_allow_list=tuple(_string_list(data.get("ip_allow_list"), "ip_allow_list", policy_id)),
        attributes=tuple(attributes)
    )


def condition_to_dict(condition: Optional[PolicyCondition]) -> Optional[Dict[str, Any]]:
    if condition is None:
        return None
    data: Dict[str, Any] = {}
    if condition.time_window is not None:
        window = condition.time_window
        data["time_window"] = {
            "start": window.start.isoformat(),
            "end": window.end.isoformat(),
            "days": sorted(window.days) if window.days is not None else None
        }
    if condition.max_amount is not None:
        data["max_amount"] = condition.max_amount
    if condition.ip_allow_list:
        data["ip_allow_list"] = list(condition.ip_allow_list)
    if condition.attributes:
        data["attributes"] = [
            {
                "field": a.field,
                "operator": a.operator.value,
                "value": list(a.value) if isinstance(a.value, tuple) else a.value
            }
            for a in condition.attributes
        ]
    return data


def policy_from_dict(data: Dict[str, Any]) -> Policy:
    """Build a Policy from one document record."""
    if not isinstance(data, dict):
        raise PolicyFormatError("policy record must be a mapping")
    try:
        policy_id = data["id"]
        category = data["category"]
        effect = PolicyEffect(str(data["effect"]).lower())
    except KeyError as e:
        raise PolicyFormatError(f"Policy record missing field {e.args[0]!r}", details={"record": data}) from e
    except ValueError as e:
        raise PolicyFormatError(
            f"Invalid effect {data.get('effect')!r}; expected allow or deny",
            details={"policy_id": data.get("id")}
        ) from e

    roles_field = data.get("roles")
    if roles_field in (None, "any", "*"):
        roles_field = ()
    else:
        roles_field = _string_list(roles_field, "roles", policy_id)
    try:
        roles = frozenset(RoleLevel(role.lower()) for role in roles_field)
    except ValueError as e:
        raise PolicyFormatError(str(e), details={"policy_id": policy_id}) from e

    priority = data.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise PolicyFormatError("priority must be an integer", details={"policy_id": policy_id})

    return Policy(
        policy_id=str(policy_id),
        category=str(category),
        effect=effect,
        roles=roles,
        actions=frozenset(_string_list(data.get("actions"), "actions", policy_id)),
        condition=condition_from_dict(data.get("condition"), policy_id),
        priority=priority,
        name=data.get("name"),
        description=data.get("description"),
        tenant_id=data.get("tenant_id"),
        enabled=bool(data.get("enabled", True)),
        expires_at=_parse_datetime(data.get("expires_at"))
    )


def policy_to_dict(policy: Policy) -> Dict[str, Any]:
    """Serialize a Policy as one document record."""
    return {
        "id": policy.policy_id,
        "category": policy.category,
        "effect": policy.effect.value,
        "roles": sorted(role.value for role in policy.roles),
        "actions": sorted(policy.actions),
        "priority": policy.priority,
        "name": policy.name,
        "description": policy.description,
        "tenant_id": policy.tenant_id,
        "enabled": policy.enabled,
        "expires_at": policy.expires_at.isoformat() if policy.expires_at else None,
        "condition": condition_to_dict(policy.condition)
    }


def _format_for(path: Path) -> str:
    return "json" if path.suffix.lower() == ".json" else "yaml"


def loads_policies(text: str, fmt: str = "yaml") -> List[Policy]:
    """Parse a policy document."""
    try:
        document = json.loads(text) if fmt == "json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PolicyFormatError(f"Unparseable policy document: {e}") from e

    if document is None:
        return []
    if isinstance(document, list):
        records = document
    elif isinstance(document, dict):
        version = document.get("version", DOCUMENT_VERSION)
        if version != DOCUMENT_VERSION:
            raise PolicyFormatError(f"Unsupported policy document version: {version!r}")
        records = document.get("policies") or []
    else:
        raise PolicyFormatError("Policy document must be a mapping or a list")

    return [policy_from_dict(record) for record in records]


def dumps_policies(policies: Iterable[Policy], fmt: str = "yaml") -> str:
    document = {
        "version": DOCUMENT_VERSION,
        "policies": [policy_to_dict(policy) for policy in policies]
    }
    if fmt == "json":
        return json.dumps(document, indent=2, sort_keys=True)
    return yaml.safe_dump(document, sort_keys=False)


def load_policies(path: Union[str, Path]) -> List[Policy]:
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PolicyFormatError(f"Cannot read policy file {path}: {e}") from e
    policies = loads_policies(text, _format_for(path))
    logger.info("Policies loaded", path=str(path), total=len(policies))
    return policies


def dump_policies(policies: Iterable[Policy], path: Union[str, Path]) -> None:
    path = Path(path)
    path.write_text(dumps_policies(policies, _format_for(path)), encoding="utf-8")


def load_into_store(store: PolicyStore, policies: Iterable[Policy], replace: bool = False) -> List[ConflictReport]:
    """Validate every policy, register them all, and return detected conflicts.

    With ``replace`` the store's current set is swapped atomically; otherwise
    policies are added one by one and the first invalid or duplicate one raises.
    """
    policies = list(policies)
    for policy in policies:
        check_policy(policy)

    if replace:
        store.replace_all(policies)
    else:
        for policy in policies:
            store.register(policy)

    conflicts = store.validate()
    for conflict in conflicts:
        logger.warning("Policy conflict", policy_ids=list(conflict.policy_ids), category=conflict.category)
    return conflicts
