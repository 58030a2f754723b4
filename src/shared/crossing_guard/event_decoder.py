"""
Decoder for SetIamPolicy Cloud Audit Log entries.

Turns the JSON LogEntry routed by a log sink into a PolicyChangeEvent.
The post-change bindings come from protoPayload.response; the pre-change
bindings are reconstructed by reversing protoPayload.serviceData.policyDelta.

Reference:
- https://cloud.google.com/logging/docs/reference/audit/auditlog/rest/Shared.Types/AuditLog
- https://cloud.google.com/iam/docs/audit-logging
"""

import json
from typing import Any, Dict, List, Tuple, Union

from .errors import DecodeError
from .models import Binding, NodeKind, OrgNode, PolicyChangeEvent, Principal

SET_IAM_POLICY = "setiampolicy"

# LogEntry resource.type -> label holding the resource id
RESOURCE_LABELS = {
    "project": ("project_id", NodeKind.PROJECT),
    "folder": ("folder_id", NodeKind.FOLDER),
    "organization": ("organization_id", NodeKind.ORGANIZATION),
}


def decode_event(raw: Union[bytes, str, Dict[str, Any]]) -> PolicyChangeEvent:
    """
    Decode a SetIamPolicy audit log entry.

    Args:
        raw: LogEntry as bytes, text or an already parsed mapping

    Returns:
        PolicyChangeEvent for the origin resource

    Raises:
        DecodeError: If the entry is malformed or describes nothing to act on
    """
    entry = _load(raw)
    try:
        return _decode(entry, raw)
    except DecodeError:
        raise
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise DecodeError(f"Malformed SetIamPolicy entry: {type(e).__name__}: {e}", _preview(raw)) from e


def _decode(entry: Dict[str, Any], raw: Any) -> PolicyChangeEvent:
    proto_payload = entry.get("protoPayload")
    if not isinstance(proto_payload, dict):
        raise DecodeError("Log entry has no protoPayload", _preview(raw))

    method_name = proto_payload.get("methodName")
    if not isinstance(method_name, str) or not method_name.lower().endswith(SET_IAM_POLICY):
        raise DecodeError(f"Not a SetIamPolicy entry: {method_name or 'missing methodName'}", _preview(raw))

    status = proto_payload.get("status") or {}
    if not isinstance(status, dict):
        raise DecodeError(f"Unreadable call status: {status!r}", _preview(raw))
    status_code = status.get("code", 0)
    if status_code:
        raise DecodeError(f"SetIamPolicy call failed with status {status_code}, policy unchanged", _preview(raw))

    resource = _resource(entry, proto_payload, raw)

    response = proto_payload.get("response")
    if not isinstance(response, dict):
        raise DecodeError("SetIamPolicy entry has no response policy", _preview(raw))

    bindings_after = tuple(Binding.from_dict(b) for b in response.get("bindings", []))
    deltas = (
        (proto_payload.get("serviceData") or {})
        .get("policyDelta", {})
        .get("bindingDeltas", [])
    )
    bindings_before = _reverse_deltas(bindings_after, deltas)

    return PolicyChangeEvent(
        resource=resource,
        bindings_after=bindings_after,
        bindings_before=bindings_before,
        etag=response.get("etag"),
        actor=(proto_payload.get("authenticationInfo") or {}).get("principalEmail"),
        insert_id=entry.get("insertId"),
        timestamp=entry.get("timestamp"),
    )


def _load(raw: Union[bytes, str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        entry = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecodeError(f"Log entry is not valid JSON: {e}", _preview(raw)) from e
    if not isinstance(entry, dict):
        raise DecodeError("Log entry is not a JSON object", _preview(raw))
    return entry


def _resource(entry: Dict[str, Any], proto_payload: Dict[str, Any], raw: Any) -> OrgNode:
    resource = entry.get("resource") or {}
    if not isinstance(resource, dict):
        raise DecodeError(f"Unreadable monitored resource: {resource!r}", _preview(raw))
    resource_type = resource.get("type")
    if not isinstance(resource_type, str) or resource_type not in RESOURCE_LABELS:
        raise DecodeError(f"Unsupported resource type: {resource_type or 'missing'}", _preview(raw))

    label, kind = RESOURCE_LABELS[resource_type]
    labels = resource.get("labels") or {}
    if not isinstance(labels, dict):
        raise DecodeError(f"Unreadable resource labels: {labels!r}", _preview(raw))
    resource_id = labels.get(label)
    if resource_id:
        return OrgNode(id=f"{kind.collection}/{resource_id}", kind=kind)

    resource_name = proto_payload.get("resourceName")
    if not isinstance(resource_name, str):
        raise DecodeError(f"Cannot determine {resource_type} id: no resourceName", _preview(raw))
    try:
        node = OrgNode.from_resource_name(resource_name)
    except ValueError as e:
        raise DecodeError(f"Cannot determine {resource_type} id: {e}", _preview(raw)) from e
    if node.kind != kind:
        raise DecodeError(f"resourceName {resource_name} does not match resource type {resource_type}", _preview(raw))
    return node


def _reverse_deltas(bindings_after: Tuple[Binding, ...], deltas: List[Dict[str, Any]]) -> Tuple[Binding, ...]:
    """Undo ADD and REMOVE binding deltas to recover the pre-change bindings."""
    if not deltas:
        return bindings_after

    members: Dict[Tuple[str, str], List[Principal]] = {}
    order: List[Binding] = []
    for binding in bindings_after:
        members[binding.key] = list(binding.members)
        order.append(binding)

    for delta in deltas:
        target = Binding(role=delta["role"], condition=delta.get("condition"))
        principal = Principal.parse(delta["member"])
        if target.key not in members:
            members[target.key] = []
            order.append(target)
        current = members[target.key]
        action = delta.get("action", "").upper()
        if action == "ADD" and principal in current:
            current.remove(principal)
        elif action == "REMOVE" and principal not in current:
            current.append(principal)

    return tuple(
        Binding(role=b.role, members=tuple(members[b.key]), condition=b.condition)
        for b in order
        if members[b.key]
    )


def _preview(raw: Any) -> str:
    if isinstance(raw, bytes):
        return raw[:500].decode("utf-8", errors="replace")
    if isinstance(raw, dict):
        return json.dumps(raw)[:500]
    return str(raw)[:500]
