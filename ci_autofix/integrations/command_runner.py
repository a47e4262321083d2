"""
Runs external fix tools in the working tree.
"""

import subprocess
import time
from dataclasses import dataclass
from typing import List, Optional

import structlog

logger = structlog.get_logger()


@dataclass
class CommandResult:
    """Outcome of one external command."""
    args: List[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    not_found: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Executes commands with a hard timeout; the child is killed on expiry."""

    def __init__(self, workdir: str = ".", timeout: float = 300.0):
        self.workdir = workdir
        self.timeout = timeout

    def run(self, args: List[str]) -> CommandResult:
        start_time = time.time()
        logger.info("running_command", command=" ".join(args), cwd=self.workdir)
        try:
            proc = subprocess.run(
                args,
                cwd=self.workdir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            logger.warning("command_not_found", command=args[0], error=str(e))
            return CommandResult(args=args, returncode=None, stderr=str(e), not_found=True)
        except subprocess.TimeoutExpired as e:
            logger.warning("command_timed_out", command=args[0], timeout=self.timeout)
            return CommandResult(
                args=args,
                returncode=None,
                stdout=e.stdout if isinstance(e.stdout, str) else "",
                stderr=f"timed out after {self.timeout}s",
                duration=time.time() - start_time,
                timed_out=True,
            )

        duration = time.time() - start_time
        logger.info(
            "command_finished",
            command=args[0],
            returncode=proc.returncode,
            duration=duration,
        )
        return CommandResult(
            args=args,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
            duration=duration,
        )
