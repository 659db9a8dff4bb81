"""Tests for per-target activity and cooldowns."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest

from chiefofstaff.core.activity import ActivityStore, Target, TargetActivity, load_targets

HOUR_MS = 3600000


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "app-activity.json")


@pytest.fixture
def activity(store_path):
    return ActivityStore(store_path)


TARGETS = [Target(id="alpha", name="Alpha"), Target(id="beta", name="Beta"), Target(id="gamma", name="Gamma")]


class TestCooldown:
    def test_unknown_target_not_on_cooldown(self, activity):
        assert activity.is_on_cooldown("alpha", HOUR_MS) is False

    def test_work_started_starts_cooldown(self, activity):
        activity.mark_work_started("alpha", "agent-1")
        assert activity.is_on_cooldown("alpha", HOUR_MS) is True
        assert activity.get("alpha").active_agent_id == "agent-1"

    def test_window_expires(self, activity):
        activity.mark_work_started("alpha")
        later = datetime.now(timezone.utc) + timedelta(hours=2)
        assert activity.is_on_cooldown("alpha", HOUR_MS, now=later) is False

    def test_active_agent_keeps_target_busy(self):
        entry = TargetActivity(active_agent_id="agent-1")
        assert entry.on_cooldown(HOUR_MS, datetime.now(timezone.utc)) is True

    def test_start_cooldown_on_completion(self, activity):
        activity.mark_work_started("alpha", "agent-1")
        entry = activity.start_cooldown("alpha", HOUR_MS)
        assert entry.active_agent_id is None
        assert entry.cooldown_until > datetime.now(timezone.utc)
        assert entry.last_task_completed_at is not None

    def test_clear_cooldown(self, activity):
        activity.start_cooldown("alpha", HOUR_MS)
        activity.clear_cooldown("alpha")
        assert activity.is_on_cooldown("alpha", HOUR_MS) is False

    def test_release_agent(self, activity, store_path):
        activity.mark_work_started("alpha", "agent-1")
        activity.mark_work_started("beta", "agent-2")
        assert activity.release_agent("agent-1") == ["alpha"]
        assert activity.release_agent("agent-1") == []
        assert ActivityStore(store_path).get("alpha").active_agent_id is None
        assert activity.get("beta").active_agent_id == "agent-2"

    def test_release_inactive_agents(self, activity):
        activity.mark_work_started("alpha", "agent-1")
        activity.mark_work_started("beta", "agent-2")
        activity.mark_work_started("gamma")
        assert activity.release_inactive_agents(["agent-2"]) == ["alpha"]
        assert activity.get("beta").active_agent_id == "agent-2"
        assert activity.is_on_cooldown("alpha", 0) is False

    def test_persisted(self, activity, store_path):
        activity.mark_work_started("alpha", "agent-1")
        activity.mark_review_completed("alpha", issues_found=2, issues_fixed=1)
        activity.mark_idle_review_started()
        reloaded = ActivityStore(store_path)
        entry = reloaded.get("alpha")
        assert entry.review_count == 1
        assert entry.issues_found == 2
        assert entry.issues_fixed == 1
        assert entry.active_agent_id is None
        assert reloaded.total_reviews == 1
        assert reloaded.last_idle_review_at is not None
        with open(store_path, encoding="utf-8") as f:
            raw = json.load(f)
        assert "lastReviewedAt" in raw["apps"]["alpha"]


class TestReviewSelection:
    def test_never_reviewed_first_in_list_order(self, activity):
        assert activity.next_for_review(TARGETS, HOUR_MS).id == "alpha"

    def test_skips_cooling_targets(self, activity):
        activity.mark_work_started("alpha")
        activity.mark_work_started("beta")
        assert activity.next_for_review(TARGETS, HOUR_MS).id == "gamma"

    def test_least_recently_reviewed(self, activity):
        activity.mark_work_started("alpha")
        activity.mark_work_started("beta")
        activity.mark_work_started("gamma")
        # zero-length window: nobody is cooling, alpha was reviewed longest ago
        assert activity.next_for_review(TARGETS, 0).id == "alpha"

    def test_none_when_all_cooling(self, activity):
        for target in TARGETS:
            activity.mark_work_started(target.id)
        assert activity.next_for_review(TARGETS, HOUR_MS) is None

    def test_next_cooldown_expiry(self, activity):
        assert activity.next_cooldown_expiry(TARGETS, HOUR_MS) is None
        activity.mark_work_started("alpha")
        remaining = activity.next_cooldown_expiry(TARGETS, HOUR_MS)
        assert 0 < remaining <= 3600


class TestLoadTargets:
    def test_missing_file(self, tmp_path):
        assert load_targets(str(tmp_path / "apps.json")) == []

    def test_apps_wrapper_and_list(self, tmp_path):
        path = tmp_path / "apps.json"
        path.write_text(json.dumps({"apps": [
            {"id": "portal", "name": "Portal", "repoPath": "/srv/portal"},
            {"name": "no id"},
        ]}), encoding="utf-8")
        targets = load_targets(str(path))
        assert targets == [Target(id="portal", name="Portal", repo_path="/srv/portal")]
        path.write_text(json.dumps([{"id": "api"}]), encoding="utf-8")
        assert load_targets(str(path)) == [Target(id="api", name="api", repo_path="")]

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "apps.json"
        path.write_text("{nope", encoding="utf-8")
        assert load_targets(str(path)) == []
