"""
Local Checks.

Runs the project's own verification script against the working tree
before a fix is published, so a fix that breaks the build never reaches
a pull request.

Discovery order:
1. ``autofix.check_command`` from configuration
2. ``verify.sh`` in the repository root
3. package.json scripts: verify, precommit, pre-commit, then test (+ lint)
4. ``tox.ini`` (when tox is installed)
5. Makefile ``verify:`` or ``test:`` targets (when make is installed)
"""

import json
import os
import shlex
import shutil
from dataclasses import dataclass, field
from typing import List, Optional

import structlog

from ci_autofix.integrations.command_runner import CommandRunner

logger = structlog.get_logger()

# Kept from a failing run for the report
ERROR_TAIL_LINES = 20

NPM_PLACEHOLDER_TEST = "no test specified"


@dataclass
class LocalCheckResult:
    success: bool
    commands: List[str] = field(default_factory=list)
    output: str = ""
    errors: List[str] = field(default_factory=list)


class LocalChecks:
    """Discovers and runs the repository's verification commands."""

    def __init__(
        self,
        runner: CommandRunner,
        workdir: str = ".",
        command: Optional[str] = None,
        which=shutil.which,
    ):
        """
        Initialize local checks.

        Args:
            runner: Runs commands in the working tree with a timeout
            workdir: Repository root
            command: Configured check command; skips discovery when set
            which: Executable lookup, injectable for tests
        """
        self.runner = runner
        self.workdir = workdir
        self.command = command
        self._which = which

    def discover(self) -> List[List[str]]:
        """Commands to run, in order. Empty when the project has none."""
        if self.command:
            return [shlex.split(self.command)]

        if os.path.exists(self._path("verify.sh")):
            return [["bash", "verify.sh"]]

        scripts = self._package_scripts()
        for name in ("verify", "precommit", "pre-commit"):
            if name in scripts:
                return [["npm", "run", name]]
        test_script = scripts.get("test", "")
        if test_script and NPM_PLACEHOLDER_TEST not in test_script:
            commands = [["npm", "test"]]
            if "lint" in scripts:
                commands.append(["npm", "run", "lint"])
            return commands

        if os.path.exists(self._path("tox.ini")) and self._which("tox"):
            return [["tox"]]

        target = self._make_target()
        if target and self._which("make"):
            return [["make", target]]

        return []

    def run(self) -> LocalCheckResult:
        """Run every discovered command; stops at the first failure."""
        commands = self.discover()
        if not commands:
            logger.info("local_checks_not_found", workdir=self.workdir)
            return LocalCheckResult(success=True)

        ran = []
        output = []
        for args in commands:
            ran.append(shlex.join(args))
            result = self.runner.run(args)
            output.append(result.stdout + result.stderr)

            if not result.ok:
                combined = "\n".join(output)
                logger.warning(
                    "local_checks_failed",
                    command=ran[-1],
                    returncode=result.returncode,
                    timed_out=result.timed_out,
                )
                return LocalCheckResult(
                    success=False,
                    commands=ran,
                    output=combined,
                    errors=self._tail(combined) or [result.stderr or f"exit code {result.returncode}"],
                )

        logger.info("local_checks_passed", commands=ran)
        return LocalCheckResult(success=True, commands=ran, output="\n".join(output))

    def _path(self, name: str) -> str:
        return os.path.join(self.workdir, name)

    def _package_scripts(self) -> dict:
        path = self._path("package.json")
        if not os.path.exists(path):
            return {}
        try:
            with open(path) as f:
                return json.load(f).get("scripts") or {}
        except (OSError, ValueError) as e:
            logger.warning("package_json_unreadable", error=str(e))
            return {}

    def _make_target(self) -> Optional[str]:
        path = self._path("Makefile")
        if not os.path.exists(path):
            return None
        with open(path) as f:
            lines = f.read().splitlines()
        for target in ("verify", "test"):
            if any(line.startswith(f"{target}:") for line in lines):
                return target
        return None

    @staticmethod
    def _tail(output: str) -> List[str]:
        lines = [line for line in output.splitlines() if line.strip()]
        return lines[-ERROR_TAIL_LINES:]
