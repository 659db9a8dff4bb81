"""Tests for the process probe and health threshold checks."""
from __future__ import annotations

import json
import subprocess
from unittest import mock

from chiefofstaff.core import health
from chiefofstaff.core.health import Pm2Probe, ProcessInfo, check_processes, parse_pm2_jlist
from chiefofstaff.core.state import DaemonConfig

MB = 1024 * 1024


def _jlist(*procs):
    return json.dumps([
        {"name": name, "pm2_env": {"status": status}, "monit": {"memory": mem_mb * MB}}
        for name, status, mem_mb in procs
    ])


class TestParse:
    def test_parse_jlist(self):
        procs = parse_pm2_jlist(_jlist(("api", "online", 120), ("worker", "errored", 0)))
        assert [p.name for p in procs] == ["api", "worker"]
        assert procs[0].status == "online"
        assert procs[0].memory_mb == 120
        assert procs[1].status == "errored"

    def test_missing_fields(self):
        procs = parse_pm2_jlist('[{"name": "bare"}, "junk"]')
        assert procs == [ProcessInfo(name="bare", status="unknown", memory_bytes=0)]

    def test_invalid_json(self):
        assert parse_pm2_jlist("not json") == []
        assert parse_pm2_jlist('{"name": "x"}') == []
        assert parse_pm2_jlist("") == []


class TestProbe:
    def test_successful_run(self):
        completed = subprocess.CompletedProcess(["pm2", "jlist"], 0, stdout=_jlist(("api", "online", 1)), stderr="")
        with mock.patch.object(health.subprocess, "run", return_value=completed) as run:
            procs = Pm2Probe().list_processes()
        assert run.call_args[0][0] == ["pm2", "jlist"]
        assert [p.name for p in procs] == ["api"]

    def test_missing_binary(self):
        with mock.patch.object(health.subprocess, "run", side_effect=FileNotFoundError("pm2")):
            assert Pm2Probe().list_processes() == []

    def test_timeout(self):
        with mock.patch.object(health.subprocess, "run",
                               side_effect=subprocess.TimeoutExpired(["pm2"], 30)):
            assert Pm2Probe().list_processes() == []

    def test_nonzero_exit(self):
        completed = subprocess.CompletedProcess(["pm2", "jlist"], 1, stdout="", stderr="daemon not running")
        with mock.patch.object(health.subprocess, "run", return_value=completed):
            assert Pm2Probe().list_processes() == []


class TestCheckProcesses:
    def test_healthy(self):
        metrics, issues = check_processes([ProcessInfo("api", "online", 100 * MB)], DaemonConfig())
        assert issues == []
        assert metrics["processCount"] == 1
        assert metrics["erroredCount"] == 0
        assert metrics["processes"] == [{"name": "api", "status": "online", "memoryMb": 100}]

    def test_too_many_processes_is_warning(self):
        cfg = DaemonConfig(max_total_processes=2)
        procs = [ProcessInfo(f"p{i}", "online") for i in range(3)]
        _, issues = check_processes(procs, cfg)
        assert [(i.type, i.category) for i in issues] == [("warning", "processes")]

    def test_errored_process_is_error(self):
        procs = [ProcessInfo("api", "online"), ProcessInfo("worker", "errored"), ProcessInfo("cron", "errored")]
        metrics, issues = check_processes(procs, DaemonConfig())
        assert metrics["erroredCount"] == 2
        assert len(issues) == 1
        assert issues[0].type == "error"
        assert "worker" in issues[0].message and "cron" in issues[0].message

    def test_high_memory_warning_per_process(self):
        cfg = DaemonConfig(max_process_memory_mb=512)
        procs = [ProcessInfo("a", "online", 600 * MB), ProcessInfo("b", "online", 700 * MB),
                 ProcessInfo("c", "online", 512 * MB)]
        metrics, issues = check_processes(procs, cfg)
        assert metrics["highMemoryCount"] == 2
        assert [i.category for i in issues] == ["memory", "memory"]
        assert all(i.type == "warning" for i in issues)

    def test_no_processes(self):
        metrics, issues = check_processes([], DaemonConfig())
        assert metrics["processCount"] == 0
        assert issues == []
