"""Tests for the daemon: dispatch tiers, capacity, cooldowns, lifecycle."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import threading
from unittest import mock

import pytest

from chiefofstaff.core import agents as agents_mod
from chiefofstaff.core.activity import ActivityStore, Target
from chiefofstaff.core.agents import AgentRegistry
from chiefofstaff.core.daemon import Daemon, Ticker
from chiefofstaff.core.events import EventBus, EventType
from chiefofstaff.core.health import ProcessInfo
from chiefofstaff.core.state import StateStore
from chiefofstaff.core.task_store import SYSTEM, USER, TaskStore


class FakeProbe:
    def __init__(self, processes=None, error=None):
        self.processes = processes or []
        self.error = error
        self.calls = 0

    def list_processes(self):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.processes)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def ready(bus):
    seen = []
    bus.subscribe(EventType.TASK_READY, seen.append)
    return seen


@pytest.fixture
def state_store(tmp_path):
    return StateStore(str(tmp_path / "cos" / "state.json"))


@pytest.fixture
def task_store(tmp_path, bus):
    return TaskStore(str(tmp_path / "TASKS.md"), str(tmp_path / "COS-TASKS.md"), bus)


@pytest.fixture
def registry(state_store, tmp_path, bus):
    return AgentRegistry(state_store, str(tmp_path / "cos" / "agents"), bus)


@pytest.fixture
def activity(tmp_path):
    return ActivityStore(str(tmp_path / "cos" / "app-activity.json"))


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def targets():
    return []


@pytest.fixture
def daemon(state_store, task_store, registry, activity, bus, probe, targets):
    d = Daemon(state_store, task_store, registry, activity, bus, probe=probe, targets=targets)
    yield d
    if d.running:
        d.stop()


def _ids(ready):
    return [p["task"]["id"] for p in ready]


# ── Evaluation ───────────────────────────────────────────────

class TestEvaluate:
    def test_user_tasks_before_system_tasks(self, daemon, task_store, ready):
        task_store.add_task({"id": "s1", "description": "System one", "priority": "HIGH"}, scope=SYSTEM)
        task_store.add_task({"id": "u1", "description": "User one", "priority": "LOW"})
        task_store.add_task({"id": "u2", "description": "User two", "priority": "LOW"})
        result = daemon.evaluate()
        assert result["dispatched"] == ["task-u1", "task-u2", "sys-s1"]
        assert _ids(ready) == ["task-u1", "task-u2", "sys-s1"]
        assert [p["scope"] for p in ready] == [USER, USER, SYSTEM]

    def test_user_queue_in_priority_order(self, daemon, task_store, ready):
        task_store.add_task({"id": "a", "description": "Low", "priority": "LOW"})
        task_store.add_task({"id": "b", "description": "Critical", "priority": "CRITICAL"})
        daemon.evaluate()
        assert _ids(ready)[:2] == ["task-b", "task-a"]

    def test_system_tasks_awaiting_approval_are_skipped(self, daemon, task_store, ready):
        task_store.add_task({"id": "s1", "description": "Needs a human", "approvalRequired": True}, scope=SYSTEM)
        assert daemon.evaluate()["dispatched"] == []
        assert ready == []

    def test_critical_auto_fix_first_among_system_tasks(self, daemon, state_store, task_store):
        daemon.update_config({"maxConcurrentAgents": 1})
        task_store.add_task({"id": "s1", "description": "Tidy", "priority": "LOW"}, scope=SYSTEM)
        task_store.add_task({"id": "s2", "description": "Server down", "priority": "CRITICAL"}, scope=SYSTEM)
        assert daemon.evaluate()["dispatched"] == ["sys-s2"]

    def test_never_exceeds_capacity(self, daemon, task_store, registry, ready):
        daemon.update_config({"maxConcurrentAgents": 2})
        for i in range(5):
            task_store.add_task({"id": f"t{i}", "description": f"Task {i}"})
        assert daemon.evaluate()["dispatched"] == ["task-t0", "task-t1"]

        # dispatched but not yet picked up: the slots stay taken
        assert daemon.evaluate()["atCapacity"] is True

        registry.register("agent-0", "task-t0")
        registry.register("agent-1", "task-t1")
        assert daemon.evaluate()["atCapacity"] is True

        registry.complete("agent-0", success=True)
        result = daemon.evaluate()
        assert len(result["dispatched"]) == 1
        assert "task-t1" not in result["dispatched"]
        assert len(ready) == 3

    def test_reserved_or_running_task_not_dispatched_twice(self, daemon, task_store, registry, ready):
        task_store.add_task({"id": "t1", "description": "Only task"})
        daemon.evaluate()
        registry.register("agent-1", "task-t1")
        daemon.evaluate()
        assert _ids(ready) == ["task-t1"]

    def test_target_on_cooldown_skipped(self, daemon, task_store, activity, ready):
        activity.mark_work_started("portal")
        task_store.add_task({"id": "t1", "description": "Portal work", "app": "portal"})
        task_store.add_task({"id": "t2", "description": "Api work", "app": "api"})
        assert daemon.evaluate()["dispatched"] == ["task-t2"]

    def test_one_task_per_target_per_tick(self, daemon, task_store, activity, ready):
        task_store.add_task({"id": "t1", "description": "First", "app": "portal"})
        task_store.add_task({"id": "t2", "description": "Second", "app": "portal"})
        assert daemon.evaluate()["dispatched"] == ["task-t1"]
        assert activity.is_on_cooldown("portal", 3600000)
        assert daemon.evaluate()["dispatched"] == []

    def test_paused_skips(self, daemon, task_store, ready):
        task_store.add_task({"id": "t1", "description": "x"})
        daemon.pause("testing")
        assert daemon.evaluate() == {"skipped": "paused", "dispatched": []}
        assert ready == []

    def test_evaluation_event_and_stats(self, daemon, bus, state_store):
        seen = []
        bus.subscribe(EventType.EVALUATION, seen.append)
        daemon.evaluate()
        assert seen[-1]["message"] == "No tasks ready"
        assert seen[-1]["idleReview"] is False
        assert state_store.read().stats.last_evaluation is not None


class TestIdleReview:
    @pytest.fixture
    def targets(self):
        return [Target(id="portal", name="Portal", repo_path="/srv/portal"), Target(id="api", name="Api")]

    def test_generated_when_nothing_else(self, daemon, task_store, activity, ready, state_store):
        result = daemon.evaluate()
        assert result["idleReview"] is True
        tasks = task_store.load(SYSTEM).tasks
        assert len(tasks) == 1
        task = tasks[0]
        assert task.id.startswith("sys-idle-review-portal-")
        assert task.priority == "LOW"
        assert task.description.startswith("[Idle Review] Improvement sweep for Portal")
        assert task.metadata["app"] == "portal"
        assert task.metadata["reviewtype"] == "idle"
        assert task.metadata["repopath"] == "/srv/portal"
        assert _ids(ready) == [task.id]
        assert activity.total_reviews == 1
        assert state_store.read().stats.last_idle_review is not None

    def test_cooling_target_not_reviewed_again(self, daemon, task_store):
        daemon.update_config({"maxConcurrentAgents": 1})
        daemon.evaluate()
        assert daemon.evaluate()["atCapacity"] is True
        assert len(task_store.load(SYSTEM).tasks) == 1

    def test_next_target_when_first_cooling(self, daemon, task_store, activity):
        activity.mark_work_started("portal")
        daemon.evaluate()
        assert task_store.load(SYSTEM).tasks[0].metadata["app"] == "api"

    def test_not_generated_when_real_work_exists(self, daemon, task_store):
        task_store.add_task({"id": "t1", "description": "Real work"})
        assert daemon.evaluate()["idleReview"] is False
        assert task_store.load(SYSTEM).tasks == []

    def test_disabled(self, daemon, task_store):
        daemon.update_config({"idleReviewEnabled": False})
        assert daemon.evaluate()["idleReview"] is False
        assert task_store.load(SYSTEM).tasks == []

    def test_priority_from_config(self, daemon, task_store):
        daemon.update_config({"idleReviewPriority": "medium"})
        daemon.evaluate()
        assert task_store.load(SYSTEM).tasks[0].priority == "MEDIUM"


# ── Reconciliation ───────────────────────────────────────────

class TestReconciliation:
    def test_orphaned_tasks_reset(self, daemon, task_store, registry):
        orphan = task_store.add_task({"id": "t1", "description": "Orphan"})
        owned = task_store.add_task({"id": "t2", "description": "Owned"})
        sys_orphan = task_store.add_task({"id": "s1", "description": "System orphan"}, scope=SYSTEM)
        for task, scope in ((orphan, USER), (owned, USER), (sys_orphan, SYSTEM)):
            task_store.set_status(task.id, "in_progress", scope)
        registry.register("agent-2", owned.id)
        result = daemon.reset_orphaned_tasks()
        assert sorted(result["reset"]) == ["sys-s1", "task-t1"]
        assert result["count"] == 2
        assert task_store.find_task("task-t2")[1].status == "in_progress"
        assert task_store.find_task("task-t1")[1].status == "pending"

    def test_start_cleans_zombies_before_orphans(self, daemon, task_store, registry, state_store, ready):
        daemon.update_config({"idleReviewEnabled": False})
        task = task_store.add_task({"id": "t1", "description": "Was running"})
        task_store.set_status(task.id, "in_progress")
        registry.register("agent-1", task.id, pid=999999)
        with mock.patch.object(agents_mod, "is_pid_alive", return_value=False):
            assert daemon.start() == {"success": True}
        agent = state_store.read().agents["agent-1"]
        assert agent.status == "completed"
        assert agent.result.error == "orphaned (restart)"
        assert task_store.find_task("task-t1")[1].status == "pending"
        # the first evaluation runs during start and picks the task back up
        assert _ids(ready) == ["task-t1"]

    def test_restart_releases_target_held_by_dead_agent(self, tmp_path, state_store, task_store, registry, bus, ready):
        activity_path = tmp_path / "restart-activity.json"
        two_hours_ago = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat()
        activity_path.write_text(json.dumps({
            "apps": {"portal": {"lastReviewedAt": two_hours_ago, "activeAgentId": "agent-dead"}},
        }), encoding="utf-8")
        activity = ActivityStore(str(activity_path))
        daemon = Daemon(state_store, task_store, registry, activity, bus, probe=FakeProbe())
        daemon.update_config({"idleReviewEnabled": False})
        task = task_store.add_task({"id": "t1", "description": "Was running", "app": "portal"})
        task_store.set_status(task.id, "in_progress")
        registry.register("agent-dead", task.id, pid=999999)
        try:
            with mock.patch.object(agents_mod, "is_pid_alive", return_value=False):
                assert daemon.start() == {"success": True}
            assert activity.get("portal").active_agent_id is None
            assert _ids(ready) == ["task-t1"]
        finally:
            daemon.stop()
        assert ActivityStore(str(activity_path)).get("portal").active_agent_id is None

    def test_release_stale_targets_without_agent_record(self, daemon, activity):
        activity.mark_work_started("portal", "agent-gone")
        activity.mark_work_started("api", "agent-live")
        daemon.registry.register("agent-live", "task-1")
        assert daemon.release_stale_targets() == {"released": ["portal"], "count": 1}
        assert activity.get("api").active_agent_id == "agent-live"

    def test_zombie_cleanup_releases_target(self, daemon, activity, registry):
        activity.mark_work_started("portal", "agent-1")
        registry.register("agent-1", "task-1", pid=999999)
        with mock.patch.object(agents_mod, "is_pid_alive", return_value=False):
            assert registry.cleanup_zombies()["cleaned"] == ["agent-1"]
        assert activity.get("portal").active_agent_id is None

    def test_completion_releases_target(self, daemon, activity, registry):
        activity.mark_work_started("portal", "agent-1")
        registry.register("agent-1", "task-1")
        registry.complete("agent-1", success=False, error="boom")
        assert activity.get("portal").active_agent_id is None


# ── Lifecycle ────────────────────────────────────────────────

class TestLifecycle:
    def test_start_stop(self, daemon, bus, state_store):
        statuses = []
        bus.subscribe(EventType.STATUS, statuses.append)
        assert daemon.start() == {"success": True}
        assert daemon.running is True
        assert state_store.read().running is True
        assert daemon.start() == {"success": False, "error": "Already running"}
        assert daemon.stop() == {"success": True}
        assert daemon.running is False
        assert state_store.read().running is False
        assert daemon.stop() == {"success": False, "error": "Not running"}
        assert statuses == [{"running": True, "paused": False}, {"running": False}]

    def test_restart_after_stop(self, daemon):
        daemon.start()
        daemon.stop()
        assert daemon.start() == {"success": True}

    def test_pause_resume_results(self, daemon, bus, state_store):
        events = []
        bus.subscribe(EventType.STATUS_PAUSED, events.append)
        bus.subscribe(EventType.STATUS_RESUMED, events.append)
        assert daemon.resume() == {"success": False, "error": "Not paused"}
        result = daemon.pause("deploy")
        assert result["success"] is True
        assert daemon.pause() == {"success": False, "error": "Already paused"}
        state = state_store.read()
        assert state.paused is True
        assert state.pause_reason == "deploy"
        assert events[0]["reason"] == "deploy"
        assert daemon.resume() == {"success": True}
        state = state_store.read()
        assert state.paused is False
        assert state.paused_at is None
        assert state.pause_reason is None
        assert len(events) == 2

    def test_status(self, daemon, registry):
        registry.register("agent-1", "task-1")
        registry.append_output("agent-1", "noise")
        status = daemon.status()
        assert status["running"] is False
        assert status["paused"] is False
        assert status["config"]["maxConcurrentAgents"] == 3
        assert [a["id"] for a in status["activeAgents"]] == ["agent-1"]
        assert "output" not in status["activeAgents"][0]

    def test_new_task_dispatched_immediately(self, daemon, task_store, bus):
        got = threading.Event()
        bus.subscribe(EventType.TASK_READY, lambda p: got.set())
        daemon.update_config({"idleReviewEnabled": False})
        daemon.start()
        task_store.add_task({"id": "t1", "description": "Urgent"})
        assert got.wait(5), "task was not dispatched after being added"

    def test_paused_daemon_dispatches_after_resume(self, daemon, task_store, bus):
        got = threading.Event()
        bus.subscribe(EventType.TASK_READY, lambda p: got.set())
        daemon.update_config({"idleReviewEnabled": False, "evaluationIntervalMs": 50})
        daemon.start()
        daemon.pause("maintenance")
        task_store.add_task({"id": "t1", "description": "Waits for resume"})
        assert not got.wait(0.3)
        daemon.resume()
        assert got.wait(5), "task was not dispatched after resume"


class TestTicker:
    def test_trigger_runs_immediately(self):
        ran = threading.Event()
        ticker = Ticker("test", 60, ran.set)
        ticker.start()
        try:
            ticker.trigger()
            assert ran.wait(5)
        finally:
            ticker.stop()
        assert ticker.is_running is False

    def test_failing_tick_keeps_loop_alive(self):
        calls = []
        done = threading.Event()

        def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            done.set()

        ticker = Ticker("test", 0.01, tick)
        ticker.start()
        try:
            assert done.wait(5)
        finally:
            ticker.stop()


# ── Health & config ──────────────────────────────────────────

class TestHealth:
    def test_errored_process_raises_critical(self, daemon, probe, bus, state_store):
        probe.processes = [ProcessInfo("api", "online"), ProcessInfo("worker", "errored")]
        critical = []
        bus.subscribe(EventType.HEALTH_CRITICAL, critical.append)
        result = daemon.run_health_check()
        assert result["metrics"]["processCount"] == 2
        assert result["metrics"]["activeAgents"] == 0
        assert [i["type"] for i in result["issues"]] == ["error"]
        assert len(critical) == 1
        status = daemon.get_health_status()
        assert status["lastCheck"] is not None
        assert status["issues"] == result["issues"]

    def test_warnings_are_not_critical(self, daemon, probe, bus):
        daemon.update_config({"maxTotalProcesses": 1})
        probe.processes = [ProcessInfo("a", "online"), ProcessInfo("b", "online")]
        critical = []
        bus.subscribe(EventType.HEALTH_CRITICAL, critical.append)
        result = daemon.run_health_check()
        assert [i["category"] for i in result["issues"]] == ["processes"]
        assert critical == []

    def test_probe_failure_is_not_fatal(self, daemon, probe, bus):
        probe.error = RuntimeError("pm2 exploded")
        checks = []
        bus.subscribe(EventType.HEALTH_CHECK, checks.append)
        result = daemon.run_health_check()
        assert result["issues"] == []
        assert result["metrics"]["processCount"] == 0
        assert len(checks) == 1

    def test_issues_replaced_each_check(self, daemon, probe, state_store):
        probe.processes = [ProcessInfo("worker", "errored")]
        daemon.run_health_check()
        probe.processes = []
        daemon.run_health_check()
        assert state_store.read().stats.health_issues == []


class TestConfig:
    def test_update_config_merges_and_publishes(self, daemon, bus):
        changed = []
        bus.subscribe(EventType.CONFIG_CHANGED, changed.append)
        result = daemon.update_config({"maxConcurrentAgents": 5})
        assert result["maxConcurrentAgents"] == 5
        assert result["evaluationIntervalMs"] == 60000
        assert daemon.get_config()["maxConcurrentAgents"] == 5
        assert changed == [result]

    def test_update_config_retimes_tickers(self, daemon):
        daemon.update_config({"idleReviewEnabled": False})
        daemon.start()
        daemon.update_config({"evaluationIntervalMs": 5000})
        assert daemon._eval_ticker.interval_s == 5.0
