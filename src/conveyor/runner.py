"""
Command runner for Conveyor.

Executes shell commands with variable substitution and error handling.
run() blocks; run_async() runs under asyncio and kills the process when
its task is cancelled.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import asyncio
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class CommandResult:
    """Outcome of an async command."""
    command: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Executes shell commands with variable substitution."""

    def __init__(self, dry_run: bool = False, verbose: bool = False):
        """
        Initialize command runner.

        Args:
            dry_run: If True, only show what would be executed
            verbose: Enable verbose logging
        """
        self.dry_run = dry_run
        self.verbose = verbose
        self.logger = logging.getLogger(__name__)

    def substitute_variables(self, command: str, variables: Dict[str, Any]) -> str:
        """
        Substitute variables in command string.

        Supports escaping with double braces: {{text}} becomes {text}

        Args:
            command: Command template with {variable} placeholders
            variables: Dict of variable name -> value

        Returns:
            Command with variables substituted

        Example:
            >>> substitute_variables("docker pull {image}", {"image": "web:latest"})
            'docker pull web:latest'
            >>> substitute_variables("echo {{literal}}", {})
            'echo {literal}'
        """
        # First, temporarily replace escaped braces {{...}} with a placeholder
        escape_open = "\x00ESCAPED_OPEN\x00"
        escape_close = "\x00ESCAPED_CLOSE\x00"
        result = command.replace("{{", escape_open).replace("}}", escape_close)

        for key, value in variables.items():
            placeholder = f"{{{key}}}"
            if placeholder in result:
                result = result.replace(placeholder, str(value))
                self.logger.debug(f"Substituted {{{key}}} -> {value}")

        # Check for unsubstituted variables (but ignore our placeholders)
        remaining = re.findall(r'\{(\w+)\}', result)
        if remaining:
            self.logger.warning(f"Unsubstituted variables: {remaining}")

        result = result.replace(escape_open, "{").replace(escape_close, "}")

        return result

    def _log_command(self, command: str) -> None:
        if len(command) > 100:
            self.logger.info(f"Executing: {command[:100]}...")
        else:
            self.logger.info(f"Executing: {command}")

    def run(
        self,
        command: str,
        variables: Optional[Dict[str, Any]] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[subprocess.CompletedProcess]:
        """
        Execute a shell command with variable substitution.

        Args:
            command: Command to execute (may contain {variable} placeholders)
            variables: Dict of variables to substitute
            check: Raise exception on non-zero exit code
            timeout: Kill the command after this many seconds

        Returns:
            CompletedProcess if executed, None if dry_run

        Raises:
            subprocess.CalledProcessError: If command fails and check=True
            subprocess.TimeoutExpired: If the command exceeds timeout
        """
        final_command = self.substitute_variables(command, variables or {})

        if self.dry_run:
            self.logger.info("[DRY RUN] Would execute:")
            self.logger.info(f"  {final_command}")
            return None

        self._log_command(final_command)

        try:
            result = subprocess.run(
                final_command,
                shell=True,
                check=check,
                capture_output=True,
                text=True,
                timeout=timeout,
            )

            if self.verbose and result.stdout:
                self.logger.debug(f"STDOUT:\n{result.stdout}")
            if result.stderr:
                self.logger.warning(f"STDERR:\n{result.stderr}")

            return result

        except subprocess.CalledProcessError as e:
            self.logger.error(f"Command failed with exit code {e.returncode}")
            if e.stdout:
                self.logger.error(f"STDOUT:\n{e.stdout}")
            if e.stderr:
                self.logger.error(f"STDERR:\n{e.stderr}")
            raise

    async def run_async(
        self,
        command: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Optional[CommandResult]:
        """
        Execute a shell command without blocking the event loop.

        The subprocess is killed if the awaiting task is cancelled.

        Returns:
            CommandResult if executed, None if dry_run
        """
        final_command = self.substitute_variables(command, variables or {})

        if self.dry_run:
            self.logger.info(f"[DRY RUN] Would execute: {final_command}")
            return None

        self._log_command(final_command)

        process = await asyncio.create_subprocess_shell(
            final_command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                self.logger.warning(f"Killing cancelled command (pid {process.pid})")
                process.kill()
                await process.wait()
            raise

        result = CommandResult(
            command=final_command,
            returncode=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if self.verbose and result.stdout:
            self.logger.debug(f"STDOUT:\n{result.stdout}")
        if not result.ok:
            self.logger.error(f"Command failed with exit code {result.returncode}")
            if result.stderr:
                self.logger.error(f"STDERR:\n{result.stderr}")
        return result

def expand_path(path: str) -> Path:
    """
    Expand user home directory in path.

    Args:
        path: Path string potentially containing ~

    Returns:
        Expanded Path object

    Example:
        >>> expand_path("~/.conveyor/runs")
        Path("/home/user/.conveyor/runs")
    """
    return Path(path).expanduser().resolve()
