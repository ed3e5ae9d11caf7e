"""
State preservation across hot reloads.

The live application owns its state; this module only decides which parts of
a captured snapshot survive a structural change. Node ids are stable,
'/'-separated paths ("app/list/item-3"), so a changed node takes its whole
subtree back to defaults.
"""

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from ..core.errors import StateApplyError

logger = logging.getLogger(__name__)

SEPARATOR = "/"


@dataclass(frozen=True)
class NodeState:
    type_tag: str
    value: Any
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"type_tag": self.type_tag, "value": self.value, "version": self.version}


@dataclass(frozen=True)
class StateSnapshot:
    nodes: Mapping[str, NodeState] = field(default_factory=dict)
    snapshot_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    taken_at: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "taken_at": self.taken_at,
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        nodes = {
            node_id: NodeState(
                type_tag=node["type_tag"],
                value=node.get("value"),
                version=node.get("version", 0),
            )
            for node_id, node in data.get("nodes", {}).items()
        }
        kwargs = {"nodes": nodes}
        if "snapshot_id" in data:
            kwargs["snapshot_id"] = data["snapshot_id"]
        if "taken_at" in data:
            kwargs["taken_at"] = data["taken_at"]
        return cls(**kwargs)


@dataclass(frozen=True)
class NodeSchema:
    type_tag: str
    default: Any = None


@dataclass(frozen=True)
class StateSchema:
    """The state shape the newly loaded program expects"""
    nodes: Mapping[str, NodeSchema] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))


@dataclass(frozen=True)
class StateDiff:
    preserved: Tuple[str, ...] = ()
    reset: Tuple[str, ...] = ()
    added: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, List[str]]:
        return {"preserved": list(self.preserved), "reset": list(self.reset), "added": list(self.added)}


class LiveApplication(Protocol):
    """Capability the running host application implements"""

    def capture(self) -> StateSnapshot:
        ...

    def load(self, program: Any) -> StateSchema:
        ...

    def apply(self, snapshot: StateSnapshot) -> None:
        ...


@dataclass
class ApplyReport:
    diff: StateDiff
    applied: StateSnapshot
    failed: Tuple[str, ...] = ()


def _ancestors(node_id: str) -> Iterable[str]:
    parts = node_id.split(SEPARATOR)
    for i in range(1, len(parts)):
        yield SEPARATOR.join(parts[:i])


def _in_subtree(node_id: str, roots: Set[str]) -> bool:
    return node_id in roots or any(a in roots for a in _ancestors(node_id))


class StateManager:
    def __init__(self, enabled: bool = True, max_history: int = 10):
        self.enabled = enabled
        self.last_report: Optional[ApplyReport] = None
        # Captured snapshots, oldest first
        self._history: Deque[StateSnapshot] = deque(maxlen=max_history)

    def capture(self, app: LiveApplication) -> StateSnapshot:
        """Ask the application for its state and keep it in the history"""
        snapshot = app.capture()
        self._history.append(snapshot)
        logger.debug(f"Captured state snapshot {snapshot.snapshot_id} with {len(snapshot)} node(s)")
        return snapshot

    def get_history(self) -> List[StateSnapshot]:
        return list(self._history)

    def get_latest_snapshot(self) -> Optional[StateSnapshot]:
        return self._history[-1] if self._history else None

    @staticmethod
    def compute_diff(snapshot: StateSnapshot, schema: StateSchema) -> StateDiff:
        """Classify every schema node as preserved, reset or added"""
        old = snapshot.nodes
        new = schema.nodes
        # Roots of structural change: added, removed or retyped nodes
        changed: Set[str] = set()
        for node_id, node_schema in new.items():
            if node_id not in old or old[node_id].type_tag != node_schema.type_tag:
                changed.add(node_id)
        changed.update(node_id for node_id in old if node_id not in new)

        preserved: List[str] = []
        reset: List[str] = []
        added: List[str] = []
        for node_id in new:
            if node_id not in old:
                added.append(node_id)
            elif _in_subtree(node_id, changed):
                reset.append(node_id)
            else:
                preserved.append(node_id)
        # Old nodes that vanished are reset too; the app drops them
        reset.extend(node_id for node_id in old if node_id not in new)
        return StateDiff(preserved=tuple(preserved), reset=tuple(reset), added=tuple(added))

    @staticmethod
    def build_snapshot(snapshot: StateSnapshot, schema: StateSchema, diff: StateDiff,
                       force_reset: Iterable[str] = ()) -> StateSnapshot:
        """Snapshot for the new schema: preserved values, defaults elsewhere"""
        forced = set(force_reset)
        keep = set(diff.preserved)
        nodes: Dict[str, NodeState] = {}
        for node_id, node_schema in schema.nodes.items():
            if node_id in keep and not _in_subtree(node_id, forced):
                nodes[node_id] = snapshot.nodes[node_id]
            else:
                nodes[node_id] = NodeState(type_tag=node_schema.type_tag, value=node_schema.default)
        return StateSnapshot(nodes=nodes)

    def reconcile(self, app: LiveApplication, snapshot: Optional[StateSnapshot],
                  schema: StateSchema) -> ApplyReport:
        """Diff the captured snapshot against the new schema and apply it"""
        if not self.enabled or snapshot is None:
            diff = StateDiff(reset=tuple(schema.nodes))
            defaults = self.build_snapshot(StateSnapshot(), schema, diff)
            return self._apply(app, defaults, diff, snapshot or StateSnapshot(), schema)

        diff = self.compute_diff(snapshot, schema)
        if diff.reset:
            logger.info(f"Structural change: {len(diff.reset)} state node(s) reset to defaults")
        target = self.build_snapshot(snapshot, schema, diff)
        return self._apply(app, target, diff, snapshot, schema)

    def _apply(self, app: LiveApplication, target: StateSnapshot, diff: StateDiff,
               snapshot: StateSnapshot, schema: StateSchema) -> ApplyReport:
        try:
            app.apply(target)
        except StateApplyError as e:
            failed = tuple(e.node_ids) or tuple(schema.nodes)
            logger.warning(f"State apply failed for {len(failed)} node(s), resetting to defaults: {e}")
            target = self.build_snapshot(snapshot, schema, diff, force_reset=failed)
            diff = self._demote(diff, failed)
            try:
                app.apply(target)
            except StateApplyError as retry_error:
                logger.warning(f"Applying defaults also failed; application keeps its own state: {retry_error}")
            report = ApplyReport(diff=diff, applied=target, failed=failed)
        else:
            report = ApplyReport(diff=diff, applied=target)
        self.last_report = report
        return report

    @staticmethod
    def _demote(diff: StateDiff, failed: Iterable[str]) -> StateDiff:
        roots = set(failed)
        demoted = [n for n in diff.preserved if _in_subtree(n, roots)]
        return StateDiff(
            preserved=tuple(n for n in diff.preserved if n not in demoted),
            reset=diff.reset + tuple(demoted),
            added=diff.added,
        )
