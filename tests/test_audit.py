"""Tests for the event recorder."""

import json

from swarmplane.audit import NORMAL, WARNING, EventRecorder
from swarmplane.models import Cluster, ObjectMeta


def test_events_in_memory(clock):
    recorder = EventRecorder(clock=clock)
    demo = Cluster(metadata=ObjectMeta(name="demo"))
    recorder.normal(demo, "AgentCreated", "demo-coder-1")
    recorder.warning(demo, "InsufficientAgents", "1/3 ready")

    assert recorder.reasons("Cluster", "demo") == ["AgentCreated", "InsufficientAgents"]
    assert [e.type for e in recorder.for_object("Cluster", "demo")] == [NORMAL, WARNING]
    assert recorder.for_object("Cluster", "other") == []


def test_events_appended_to_jsonl(tmp_path, clock):
    path = tmp_path / "logs" / "events.jsonl"
    with EventRecorder(path=path, clock=clock) as recorder:
        recorder.normal(Cluster(metadata=ObjectMeta(name="demo")), "ScaledUp", "3 -> 5")

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["kind"] == "Cluster"
    assert entry["reason"] == "ScaledUp"
    assert entry["timestamp"] == clock().isoformat()
    assert recorder.file_handle is None
