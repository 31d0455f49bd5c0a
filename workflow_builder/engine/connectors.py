"""Connector manifests: which external account a node kind needs.

The engine never stores or checks credentials. It only answers "which
connector does this graph (or this proposed patch) require?" so the caller
can prompt the user to connect before a run. Lookups read the node kind and
nothing else.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from workflow_builder.engine.graph_model import WorkflowNode
from workflow_builder.engine.patch_ir import AddNode, PatchOp, walk_ops

_TELEGRAM_KINDS = (
    "action.telegram.sendMessage",
    "action.telegram.sendPhoto",
    "action.telegram.sendDocument",
    "action.telegram.sendLocation",
    "action.telegram.sendPoll",
    "action.telegram.editMessage",
    "action.telegram.deleteMessage",
    "action.telegram.sendVideo",
    "action.telegram.sendAudio",
    "action.telegram.sendSticker",
    "action.telegram.sendVenue",
    "action.telegram.sendContact",
    "action.telegram.getUpdates",
)

_SHEETS_KINDS = (
    "trigger.sheets.newRow",
    "trigger.sheets.update",
    "action.sheets.appendRow",
    "action.sheets.readRows",
    "action.sheets.updateCell",
    "action.sheets.clearRange",
)


@dataclass(frozen=True)
class ConnectorManifest:
    """One connectable provider.

    id:          Stable provider ID ("telegram", "sheets_oauth", ...).
    name:        Display name.
    auth_type:   "api_key" | "oauth2" | "service_account" | "webhook".
    node_kinds:  Kinds that cannot run without this connection.
    """

    id: str
    name: str
    auth_type: str
    node_kinds: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "auth_type": self.auth_type,
            "node_kinds": list(self.node_kinds),
        }


CONNECTOR_MANIFESTS: tuple[ConnectorManifest, ...] = (
    ConnectorManifest("telegram", "Telegram", "api_key", _TELEGRAM_KINDS),
    ConnectorManifest("sheets_oauth", "Google Sheets", "oauth2", _SHEETS_KINDS),
    ConnectorManifest(
        "sheets_service_account", "Google Sheets (Service Account)",
        "service_account", _SHEETS_KINDS,
    ),
    ConnectorManifest(
        "facebook", "Facebook", "api_key",
        ("trigger.facebook.comment", "action.facebook.reply", "action.facebook.dm"),
    ),
    ConnectorManifest("email", "Email (SMTP)", "api_key", ("action.email.send",)),
    ConnectorManifest("webhook", "Webhook", "webhook", ("trigger.webhook.inbound",)),
)


def get_manifest(connector_id: str) -> ConnectorManifest | None:
    return next((m for m in CONNECTOR_MANIFESTS if m.id == connector_id), None)


def providers_for_kind(kind: str) -> list[ConnectorManifest]:
    """Every manifest able to serve `kind`, in declaration order."""
    return [m for m in CONNECTOR_MANIFESTS if kind in m.node_kinds]


def connector_for_kind(kind: str) -> ConnectorManifest | None:
    """Preferred manifest for `kind`: OAuth first, then the first declared.

    Returns None for kinds that need no external account.
    """
    providers = providers_for_kind(kind)
    if not providers:
        return None
    return next((m for m in providers if m.auth_type == "oauth2"), providers[0])


def _unique_connectors(kinds: Iterable[str]) -> list[ConnectorManifest]:
    seen: dict[str, ConnectorManifest] = {}
    for kind in kinds:
        manifest = connector_for_kind(kind)
        if manifest is not None:
            seen.setdefault(manifest.id, manifest)
    return list(seen.values())


def connections_required(nodes: Iterable[WorkflowNode]) -> list[ConnectorManifest]:
    """Connectors the graph needs, de-duplicated, in node order."""
    return _unique_connectors(n.kind for n in nodes)


def connections_for_patch(patch: PatchOp) -> list[ConnectorManifest]:
    """Connectors the nodes added by `patch` (BULK included) will need."""
    return _unique_connectors(op.kind for _, op in walk_ops(patch) if isinstance(op, AddNode))
