# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for runner.py module."""

import asyncio
import logging
import subprocess
from pathlib import Path

import pytest

from conveyor.runner import CommandResult, CommandRunner, expand_path


class TestSubstituteVariables:
    """{placeholder} substitution in command templates."""

    def test_simple(self):
        runner = CommandRunner()
        result = runner.substitute_variables("docker pull {image}", {"image": "web:abc"})
        assert result == "docker pull web:abc"

    def test_repeated_placeholder(self):
        runner = CommandRunner()
        result = runner.substitute_variables("{host}:{host}", {"host": "h1"})
        assert result == "h1:h1"

    def test_non_string_values(self):
        runner = CommandRunner()
        result = runner.substitute_variables("retry {n} dry={flag}", {"n": 3, "flag": False})
        assert result == "retry 3 dry=False"

    def test_missing_variable_warns(self, caplog):
        runner = CommandRunner()
        with caplog.at_level(logging.WARNING):
            result = runner.substitute_variables("deploy {image} to {host}", {"image": "web"})

        assert result == "deploy web to {host}"
        assert "Unsubstituted variables" in caplog.text
        assert "host" in caplog.text

    def test_escaped_braces(self):
        """Double braces survive as literal braces, e.g. docker --format templates."""
        runner = CommandRunner()
        result = runner.substitute_variables(
            "docker inspect --format '{{{{.Id}}}}' {image}", {"image": "web"}
        )
        assert result == "docker inspect --format '{{.Id}}' web"

    def test_escape_without_variables(self):
        runner = CommandRunner()
        assert runner.substitute_variables("echo {{stage_id}}", {"stage_id": "x"}) == "echo {stage_id}"


class TestRun:
    """Blocking execution."""

    def test_dry_run(self, caplog):
        runner = CommandRunner(dry_run=True)
        with caplog.at_level(logging.INFO):
            result = runner.run("docker push {ref}", {"ref": "web:1"})

        assert result is None
        assert "[DRY RUN]" in caplog.text
        assert "docker push web:1" in caplog.text

    def test_success(self, caplog):
        runner = CommandRunner()
        with caplog.at_level(logging.INFO):
            result = runner.run("echo {msg}", {"msg": "shipped"})

        assert result.returncode == 0
        assert result.stdout.strip() == "shipped"
        assert "Executing: echo shipped" in caplog.text

    def test_failure_raises(self):
        with pytest.raises(subprocess.CalledProcessError) as exc:
            CommandRunner().run("echo nope >&2; exit 4")
        assert exc.value.returncode == 4

    def test_failure_without_check(self):
        result = CommandRunner().run("exit 4", check=False)
        assert result.returncode == 4

    def test_timeout(self):
        with pytest.raises(subprocess.TimeoutExpired):
            CommandRunner().run("sleep 5", timeout=0.2)

    def test_long_command_truncated_in_log(self, caplog):
        command = "echo " + "x" * 200
        with caplog.at_level(logging.INFO):
            CommandRunner().run(command)
        assert "x" * 95 + "..." in caplog.text


class TestRunAsync:
    """Event-loop execution used by shell.run stages."""

    def test_success(self):
        result = asyncio.run(CommandRunner().run_async("echo {x}", {"x": "async"}))
        assert isinstance(result, CommandResult)
        assert result.ok
        assert result.stdout.strip() == "async"

    def test_failure_does_not_raise(self, caplog):
        with caplog.at_level(logging.ERROR):
            result = asyncio.run(CommandRunner().run_async("echo bad >&2; exit 2"))
        assert not result.ok
        assert result.returncode == 2
        assert "bad" in result.stderr
        assert "exit code 2" in caplog.text

    def test_dry_run(self):
        assert asyncio.run(CommandRunner(dry_run=True).run_async("rm -rf /tmp/x")) is None

    def test_cancel_kills_process(self, tmp_path):
        marker = tmp_path / "marker"

        async def scenario():
            task = asyncio.create_task(CommandRunner().run_async(f"sleep 0.5 && touch {marker}"))
            await asyncio.sleep(0.1)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await asyncio.sleep(0.8)

        asyncio.run(scenario())
        assert not marker.exists()


class TestExpandPath:
    """Home expansion."""

    def test_tilde(self):
        path = expand_path("~/.conveyor/runs")
        assert path.is_absolute()
        assert str(path).startswith(str(Path.home()))

    def test_relative_becomes_absolute(self):
        assert expand_path("pipelines/ship.yaml").is_absolute()
