"""Intent planner contract and the two shipped planners.

IntentPlanner.plan(PlannerRequest) turns one chat message into at most one
PatchOp. Returning None means "no confident interpretation": the caller tells
the user nothing changed, it is not an error.

  RuleBasedPlanner — keyword rules; no network, always available.
  LLMPlanner       — asks a ReasoningEngine for a forced `update_workflow`
                     tool call, normalises the ops it returns and falls back
                     to RuleBasedPlanner on errors or unusable output.

A planner only proposes. WorkflowStore.submit_intent() runs
check_planner_patch() and the applier before anything is committed.
"""

from __future__ import annotations

import copy
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from workflow_builder.engine.graph_model import NODE_KINDS, Role, WorkflowNode, role_for_kind
from workflow_builder.engine.patch_ir import (
    AddEdge,
    AddNode,
    Bulk,
    PatchIRValidationError,
    PatchOp,
    RemoveNode,
    Rewire,
    SetName,
    UpdateNode,
    load_json_payload,
    op_from_dict,
    walk_ops,
)
from workflow_builder.reasoning import (
    EngineResponse,
    Message,
    ReasoningEngine,
    ReasoningSettings,
    ToolDef,
    create_engine,
)

logger = logging.getLogger("workflow_builder.engine.planner")


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


@dataclass
class PlannerRequest:
    """Everything a planner may look at.

    text:    The raw user message.
    summary: summarize_graph() output for the committed graph.
    nodes:   Live node list, so ids can be matched exactly.
    """

    text: str
    summary: str = ""
    nodes: list[WorkflowNode] = field(default_factory=list)


@dataclass
class PlannerStats:
    """Counters from the most recent plan() call."""

    input_tokens: int = 0
    output_tokens: int = 0
    fallback_used: bool = False


class IntentPlanner(ABC):
    """Natural-language intent → Patch IR."""

    name: str = "planner"

    def __init__(self) -> None:
        self.stats = PlannerStats()

    @abstractmethod
    async def plan(self, request: PlannerRequest) -> PatchOp | None:
        """Return one patch for request.text, or None when unsure."""
        ...


def check_planner_patch(patch: PatchOp, nodes: list[WorkflowNode]) -> list[str]:
    """Reject REMOVE_NODE ops (BULK included) aimed at nodes that do not exist.

    Planners work from a summary that may be stale; deleting a node the user
    cannot see is never acceptable, so this runs before the applier.
    """
    known = {n.id for n in nodes}
    issues: list[str] = []
    for path, op in walk_ops(patch):
        if isinstance(op, RemoveNode) and op.id not in known:
            prefix = f"{path} REMOVE_NODE" if path else "REMOVE_NODE"
            issues.append(f"{prefix}: planner targeted unknown node '{op.id}'")
    return issues


# ---------------------------------------------------------------------------
# Node matching
# ---------------------------------------------------------------------------

_STOP_WORDS = frozenset({
    "remove", "delete", "the", "node", "step", "action", "trigger", "and",
    "please", "that", "this", "from", "workflow",
})


def _kind_words(kind: str) -> set[str]:
    # "action.sheets.appendRow" -> {"action", "sheets", "appendrow", "append", "row"}
    words: set[str] = set()
    for part in kind.split("."):
        words.add(part.lower())
        words.update(w.lower() for w in re.findall(r"[A-Z]?[a-z0-9]+", part))
    return words


def _keywords(phrase: str) -> list[str]:
    words = re.findall(r"[a-z0-9_]+", phrase.lower())
    return list(dict.fromkeys(w for w in words if len(w) > 1 and w not in _STOP_WORDS))


def find_node_by_intent(nodes: list[WorkflowNode], phrase: str) -> WorkflowNode | None:
    """Resolve a free-text reference ("the sheets step", "a1") to one node.

    Exact id, then exact label, then the best keyword score over label words
    and kind segments (whole-word hits count double). Ties go to the earlier
    node. None when nothing scores.
    """
    target = phrase.strip().lower()
    if not target:
        return None
    for n in nodes:
        if n.id.lower() == target:
            return n
    for n in nodes:
        if n.label.lower() == target:
            return n

    keywords = _keywords(target)
    best: WorkflowNode | None = None
    best_score = 0
    for n in nodes:
        label = n.label.lower()
        label_words = set(re.findall(r"[a-z0-9]+", label))
        kind = n.kind.lower()
        kind_words = _kind_words(n.kind)
        score = 0
        for k in keywords:
            if k in label_words or k in kind_words or k == n.id.lower():
                score += 2
            elif len(k) > 2 and (k in label or k in kind):
                score += 1
        if score > best_score:
            best, best_score = n, score
    return best


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

_ID_PREFIX: dict[Role, str] = {
    Role.TRIGGER: "t",
    Role.LOGIC: "l",
    Role.AI: "ai",
    Role.ACTION: "a",
}


class _IdAllocator:
    """Hands out short node ids ("t1", "a2") not present in `taken`."""

    def __init__(self, taken: set[str]) -> None:
        self.taken = set(taken)

    def next_for(self, kind: str) -> str:
        prefix = _ID_PREFIX.get(role_for_kind(kind) or Role.ACTION, "n")
        n = 1
        while f"{prefix}{n}" in self.taken:
            n += 1
        node_id = f"{prefix}{n}"
        self.taken.add(node_id)
        return node_id


def _mentions(text: str, *words: str) -> bool:
    return any(re.search(rf"\b{re.escape(w)}s?\b", text) for w in words)


def cron_for(text: str) -> str:
    """Cron expression for phrases like "every day at 9am" or "hourly".

    "daily" → "0 0 * * *", "hourly" → "0 * * * *", "weekly" → "0 0 * * 0";
    an "Ham"/"H:MMpm" time sets minute and hour.
    """
    text = text.lower()
    minute, hour = 0, 0
    m = re.search(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", text)
    if m:
        hour = int(m.group(1)) % 12 + (12 if m.group(3) == "pm" else 0)
        minute = int(m.group(2) or 0)
    if _mentions(text, "hourly", "every hour", "each hour"):
        return f"{minute} * * * *"
    dow = "*"
    if _mentions(text, "monday"):
        dow = "1"
    elif _mentions(text, "weekly", "every week", "each week"):
        dow = "0"
    return f"{minute} {hour} * * {dow}"


def _quoted(text: str) -> str | None:
    m = re.search(r"[\"“]([^\"”]+)[\"”]", text)
    return m.group(1) if m else None


def _as_patch(ops: list[PatchOp]) -> PatchOp | None:
    if not ops:
        return None
    if len(ops) == 1:
        return ops[0]
    return Bulk(ops=ops)


# ---------------------------------------------------------------------------
# Rule-based planner
# ---------------------------------------------------------------------------

_CONFIRMATION = re.compile(
    r"^(yes|yeah|yep|ok|okay|sure|alright|correct|right|that's right|exactly|"
    r"thanks|thank you|great|perfect)[.!]*$"
)

_RENAME = re.compile(
    r"\b(?:rename(?:\s+(?:it|this|the\s+workflow|workflow))?\s+to|call\s+it|name\s+it)\s+"
    r"[\"“']?(.+?)[\"”']?\s*$",
    re.IGNORECASE,
)

_REMOVE = re.compile(r"\b(?:remove|delete|drop)\s+(.+)$", re.IGNORECASE)

_CHANGE = re.compile(
    r"\b(?:change|update|set)\s+(?:the\s+)?(.+?)\s+(?:to|with)\s+[\"“']?(.+?)[\"”']?\s*$",
    re.IGNORECASE,
)

# (keywords that must all appear as one of the alternatives, kind, config)
_ACTION_RULES: list[tuple[tuple[tuple[str, ...], ...], str, dict[str, Any]]] = [
    ((("facebook", "fb"), ("reply", "comment")), "action.facebook.reply", {}),
    ((("facebook", "fb"), ("dm", "direct message", "message")), "action.facebook.dm", {}),
    ((("sheet", "google", "spreadsheet", "save", "log"),), "action.sheets.appendRow", {}),
    ((("email", "mail", "remind", "reminder", "alert"),), "action.email.send", {}),
    ((("notify", "notification", "slack"),), "action.notify", {}),
    ((("telegram", "sms"),), "action.telegram.sendMessage", {}),
    ((("http", "api", "fetch", "collect", "get data"),), "action.http.request", {"method": "GET"}),
]

# Config key a "change X to Y" request sets, by kind
_SALIENT_KEYS: dict[str, str] = {
    "trigger.schedule": "cron",
    "trigger.scheduler.cron": "schedule",
    "trigger.webhook.inbound": "path",
    "trigger.facebook.comment": "match",
    "logic.filter": "expression",
    "logic.delay": "seconds",
    "ai.guard": "prompt",
    "ai.generate": "prompt",
    "action.notify": "destination",
    "action.email.send": "to",
    "action.http.request": "url",
    "action.facebook.reply": "replyTemplate",
    "action.facebook.dm": "message",
    "action.sheets.appendRow": "sheetName",
    "action.sheets.readRows": "sheetName",
    "action.telegram.sendMessage": "message",
}

_CRON_FIELDS = re.compile(r"^(\S+\s+){4}\S+$")


def _detect_actions(text: str) -> list[tuple[str, dict[str, Any]]]:
    found: list[tuple[str, dict[str, Any]]] = []
    for groups, kind, config in _ACTION_RULES:
        if all(_mentions(text, *alternatives) for alternatives in groups):
            found.append((kind, copy.deepcopy(config)))
    # A facebook reply already covers "comment"; do not add a DM for it too.
    kinds = [k for k, _ in found]
    if "action.facebook.reply" in kinds and "action.facebook.dm" in kinds and not _mentions(
        text, "dm", "direct message"
    ):
        found = [f for f in found if f[0] != "action.facebook.dm"]
    return found


def _detect_trigger(text: str) -> tuple[str, dict[str, Any]] | None:
    if _mentions(text, "facebook", "fb") and _mentions(text, "comment"):
        quoted = _quoted(text)
        return "trigger.facebook.comment", ({"match": {"contains": quoted}} if quoted else {})
    if _mentions(
        text, "schedule", "daily", "every", "hourly", "weekly", "morning", "monday"
    ) or re.search(r"\b\d{1,2}(:\d{2})?\s*(am|pm)\b", text):
        return "trigger.scheduler.cron", {"schedule": cron_for(text)}
    if _mentions(text, "webhook", "form", "submit"):
        return "trigger.webhook.inbound", {}
    if _mentions(text, "manual", "button", "on demand"):
        return "trigger.manual", {}
    return None


class RuleBasedPlanner(IntentPlanner):
    """Keyword planner for the common chat requests.

    On an empty graph it builds a trigger followed by a chain of actions.
    On an existing graph it handles rename, remove/delete, change ... to ...
    and add ... (appended after the last node and connected to it).
    """

    name = "rules"

    async def plan(self, request: PlannerRequest) -> PatchOp | None:
        self.stats = PlannerStats()
        return self.plan_sync(request)

    def plan_sync(self, request: PlannerRequest) -> PatchOp | None:
        text = " ".join(request.text.split())
        lower = text.lower()
        if not lower or _CONFIRMATION.match(lower):
            return None

        m = _RENAME.search(text)
        if m:
            return SetName(name=m.group(1).strip())

        if not request.nodes:
            return self._build_from_scratch(lower)

        if _REMOVE.search(text):
            return self._remove(text, request.nodes)
        m = _CHANGE.search(text)
        if m:
            return self._change(m.group(1), m.group(2), request.nodes)
        if _mentions(lower, "add", "append", "also", "then", "include"):
            return self._append(lower, request.nodes)
        return None

    def _build_from_scratch(self, lower: str) -> PatchOp | None:
        alloc = _IdAllocator(set())
        chain: list[AddNode] = []
        trigger = _detect_trigger(lower)
        if trigger is not None:
            kind, config = trigger
            chain.append(AddNode(id=alloc.next_for(kind), kind=kind, config=config))
        for kind, config in _detect_actions(lower):
            chain.append(AddNode(id=alloc.next_for(kind), kind=kind, config=config))
        if not chain:
            return None
        ops: list[PatchOp] = list(chain)
        ops.extend(
            AddEdge(source=a.id, target=b.id) for a, b in zip(chain, chain[1:])
        )
        return _as_patch(ops)

    def _remove(self, text: str, nodes: list[WorkflowNode]) -> PatchOp | None:
        target = _REMOVE.search(text).group(1)
        ops: list[PatchOp] = []
        for part in re.split(r"\s*(?:,|\band\b)\s*", target):
            part = re.sub(r"\b(?:the|node|step)\b", " ", part, flags=re.IGNORECASE).strip()
            if not part:
                continue
            node = find_node_by_intent(nodes, part)
            if node is None:
                logger.info("Rule planner: no node matches %r", part)
                continue
            if all(not (isinstance(o, RemoveNode) and o.id == node.id) for o in ops):
                ops.append(RemoveNode(id=node.id))
        return _as_patch(ops)

    def _change(self, what: str, value: str, nodes: list[WorkflowNode]) -> PatchOp | None:
        if what.lower().strip() in ("name", "workflow name", "title"):
            return SetName(name=value.strip())
        node = find_node_by_intent(nodes, what)
        if node is None:
            logger.info("Rule planner: no node matches %r", what)
            return None
        key = _SALIENT_KEYS.get(node.kind, "value")
        new_value: Any = value.strip()
        if key in ("schedule", "cron") and not _CRON_FIELDS.match(new_value):
            new_value = cron_for(new_value)
        elif key == "match":
            new_value = {"contains": new_value}
        elif key == "seconds" and new_value.isdigit():
            new_value = int(new_value)
        return UpdateNode(id=node.id, data={"config": {key: new_value}})

    def _append(self, lower: str, nodes: list[WorkflowNode]) -> PatchOp | None:
        actions = _detect_actions(lower)
        if not actions:
            return None
        alloc = _IdAllocator({n.id for n in nodes})
        ops: list[PatchOp] = []
        previous = nodes[-1].id
        for kind, config in actions:
            node_id = alloc.next_for(kind)
            ops.append(AddNode(id=node_id, kind=kind, config=config))
            ops.append(AddEdge(source=previous, target=node_id))
            previous = node_id
        return _as_patch(ops)


# ---------------------------------------------------------------------------
# LLM planner
# ---------------------------------------------------------------------------

UPDATE_WORKFLOW_TOOL = ToolDef(
    name="update_workflow",
    description="Apply the smallest set of changes that makes the workflow match the request.",
    parameters={
        "type": "object",
        "properties": {
            "ops": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "op": {
                            "type": "string",
                            "enum": [
                                "ADD_NODE", "UPDATE_NODE", "REMOVE_NODE", "ADD_EDGE",
                                "REMOVE_EDGE", "REWIRE", "SET_NAME", "BULK",
                            ],
                        },
                        "node": {
                            "type": "object",
                            "description": "ADD_NODE: {id, kind, label?, config?}",
                        },
                        "id": {"type": "string"},
                        "data": {"type": "object", "description": "UPDATE_NODE: {label?, config?}"},
                        "position": {"type": "object"},
                        "edge": {"type": "object", "description": "ADD_EDGE: {id?, source, target}"},
                        "from": {"type": "string"},
                        "to": {"type": "string"},
                        "edgeId": {"type": "string"},
                        "name": {"type": "string"},
                        "ops": {"type": "array", "items": {"type": "object"}},
                    },
                    "required": ["op"],
                },
            },
        },
        "required": ["ops"],
    },
)


def _kind_catalog() -> str:
    groups: dict[str, list[str]] = {}
    for kind in sorted(NODE_KINDS):
        groups.setdefault(kind.split(".", 1)[0], []).append(kind)
    return "\n".join(f"- {prefix}: {', '.join(kinds)}" for prefix, kinds in groups.items())


_SYSTEM_PROMPT = f"""You are a workflow planner. You receive a user request and a summary of the \
current workflow graph. Call update_workflow with the smallest list of ops that makes the graph \
match the request.

Node kinds:
{_kind_catalog()}

Rules:
- To remove or change a node use its exact id from the node list. Never invent ids for \
existing nodes.
- New nodes need a short unique id and a kind from the list above.
- Prefer UPDATE_NODE and REWIRE over removing and re-adding.
- Keep exactly one trigger and never remove the only trigger.
- Connect new steps so the flow stays linear unless the user asks for a branch.
- For action.http.request include a url and method in config when known.
"""


def _user_prompt(request: PlannerRequest) -> str:
    lines = [f"Current workflow:\n{request.summary or 'Empty workflow (no nodes)'}"]
    if request.nodes:
        lines.append("Nodes (use these exact ids):")
        lines.extend(
            f'  - id="{n.id}" kind={n.kind} role={n.role.value} label="{n.label}"'
            for n in request.nodes
        )
    lines.append(f"\nRequest: {request.text}")
    return "\n".join(lines)


def _extract_ops(response: EngineResponse) -> list[Any]:
    """Raw op dicts from the update_workflow call, or from a JSON text reply."""
    for tc in response.tool_calls:
        if tc.name == UPDATE_WORKFLOW_TOOL.name:
            ops = tc.arguments.get("ops") if isinstance(tc.arguments, dict) else None
            return ops if isinstance(ops, list) else []
    if response.content:
        try:
            raw = load_json_payload(response.content)
        except PatchIRValidationError:
            return []
        if isinstance(raw, dict):
            raw = raw.get("ops", [raw] if "op" in raw else [])
        return raw if isinstance(raw, list) else []
    return []


def _looks_like_kind(value: str) -> bool:
    return "." in value and role_for_kind(value) is not None


_PLATFORMS = (("facebook", "Facebook"), ("instagram", "Instagram"),
              ("twitter", "Twitter"), ("linkedin", "LinkedIn"))


def _reshape_add_node(raw: dict[str, Any], alloc: _IdAllocator, intent: str) -> dict[str, Any] | None:
    node = raw.get("node") if isinstance(raw.get("node"), dict) else raw
    data = node.get("data") if isinstance(node.get("data"), dict) else {}
    kind = str(node.get("kind") or data.get("kind") or "")
    node_id = str(node.get("id") or "")
    if not kind and _looks_like_kind(node_id):
        kind = node_id
    if not kind:
        logger.warning("LLM planner: dropping ADD_NODE without kind: %s", raw)
        return None
    if not node_id or node_id == kind or _looks_like_kind(node_id) or node_id in alloc.taken:
        node_id = alloc.next_for(kind)
    else:
        alloc.taken.add(node_id)

    config = node.get("config", data.get("config"))
    config = copy.deepcopy(config) if isinstance(config, dict) else {}
    if kind == "action.http.request" and not (config.get("platform") or config.get("service")):
        for word, platform in _PLATFORMS:
            if word in intent:
                config["platform"] = platform
                break

    reshaped: dict[str, Any] = {"id": node_id, "kind": kind, "config": config}
    label = node.get("label") or data.get("label")
    if label and label != "Untitled Node":
        reshaped["label"] = label
    if isinstance(node.get("position"), dict):
        reshaped["position"] = node["position"]
    return {"op": "ADD_NODE", "node": reshaped}


def normalize_llm_ops(
    raw_ops: list[Any], nodes: list[WorkflowNode], intent: str = ""
) -> PatchOp | None:
    """Turn loosely-shaped LLM ops into one valid-looking PatchOp.

    - ADD_NODE: kind recovered from a kind-valued id; missing, duplicate or
      kind-valued ids replaced by fresh short ids.
    - ADD_EDGE / REWIRE endpoints given as kinds are resolved to the node of
      that kind added in the same batch, else an existing node of that kind.
    - REMOVE_NODE / UPDATE_NODE ids that match no node are resolved by label
      and kind keywords, and dropped when nothing matches.
    Returns None when nothing usable is left.
    """
    intent = intent.lower()
    alloc = _IdAllocator({n.id for n in nodes})

    def parse(items: list[Any]) -> list[PatchOp]:
        ops: list[PatchOp] = []
        for item in items:
            if not isinstance(item, dict) or not item.get("op"):
                continue
            name = str(item["op"]).upper()
            if name == "ADD_NODE":
                item = _reshape_add_node(item, alloc, intent)
                if item is None:
                    continue
            elif name == "BULK":
                sub = parse(item.get("ops") or [])
                if sub:
                    ops.append(Bulk(ops=sub))
                continue
            try:
                ops.append(op_from_dict(item))
            except PatchIRValidationError as e:
                logger.warning("LLM planner: dropping malformed op %s: %s", item, e.errors)
        return ops

    ops = parse(raw_ops)

    added: dict[str, str] = {}
    for _, op in walk_ops(Bulk(ops=ops)):
        if isinstance(op, AddNode):
            added.setdefault(op.kind, op.id)
    known = {n.id for n in nodes} | {
        op.id for _, op in walk_ops(Bulk(ops=ops)) if isinstance(op, AddNode)
    }

    def resolve(ref: str) -> str:
        if ref in known or not ref:
            return ref
        if ref in added:
            return added[ref]
        existing = next((n for n in nodes if n.kind == ref), None)
        return existing.id if existing else ref

    def fix(op: PatchOp) -> PatchOp | None:
        if isinstance(op, AddEdge):
            op.source, op.target = resolve(op.source), resolve(op.target)
        elif isinstance(op, Rewire):
            op.from_node, op.to_node = resolve(op.from_node), resolve(op.to_node)
        elif isinstance(op, (RemoveNode, UpdateNode)) and op.id not in known:
            match = find_node_by_intent(nodes, op.id.replace("_", " "))
            if match is None:
                logger.warning("LLM planner: no node matches %r, dropping %s", op.id, op.op)
                return None
            op.id = match.id
        elif isinstance(op, Bulk):
            op.ops = [f for f in (fix(sub) for sub in op.ops) if f is not None]
            if not op.ops:
                return None
        return op

    fixed = [f for f in (fix(op) for op in ops) if f is not None]
    return _as_patch(fixed)


class LLMPlanner(IntentPlanner):
    """Planner backed by a ReasoningEngine with a forced update_workflow call."""

    name = "llm"

    def __init__(
        self,
        engine: ReasoningEngine,
        fallback: IntentPlanner | None = None,
        temperature: float = 0.3,
    ) -> None:
        super().__init__()
        self._engine = engine
        self._fallback = fallback or RuleBasedPlanner()
        self._temperature = temperature

    async def _fall_back(self, request: PlannerRequest) -> PatchOp | None:
        self.stats.fallback_used = True
        return await self._fallback.plan(request)

    async def plan(self, request: PlannerRequest) -> PatchOp | None:
        self.stats = PlannerStats()
        try:
            response = await self._engine.complete(
                messages=[Message(role="user", content=_user_prompt(request))],
                system=_SYSTEM_PROMPT,
                tools=[UPDATE_WORKFLOW_TOOL],
                temperature=self._temperature,
                tool_choice=UPDATE_WORKFLOW_TOOL.name,
            )
        except Exception as e:
            logger.warning(
                "Planner engine %s failed (%s: %s); using rule-based planner",
                self._engine.model_id, type(e).__name__, e,
            )
            return await self._fall_back(request)

        self.stats.input_tokens = response.input_tokens
        self.stats.output_tokens = response.output_tokens

        raw_ops = _extract_ops(response)
        patch = normalize_llm_ops(raw_ops, request.nodes, request.text) if raw_ops else None
        if patch is None:
            logger.warning(
                "Planner engine %s returned no usable ops; using rule-based planner",
                self._engine.model_id,
            )
            return await self._fall_back(request)
        return patch


def create_planner(settings: ReasoningSettings | None = None) -> IntentPlanner:
    """LLMPlanner when an engine is configured with credentials, else rules only."""
    settings = settings or ReasoningSettings()
    if settings.provider in ("rules", "rule", "none") or not settings.has_credentials:
        logger.info("Using rule-based planner (engine=%s)", settings.provider)
        return RuleBasedPlanner()
    return LLMPlanner(create_engine(settings), temperature=settings.temperature)
