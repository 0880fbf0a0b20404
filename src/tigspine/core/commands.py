"""External command execution.

``CommandRunner`` is the only place that spawns processes. Everything the
provisioner does to the host (package managers, ``systemctl``, the
container runtime, the compose tool) goes through ``run()``, which makes
the whole orchestrator testable with a recording fake.

Architecture Decisions:
    - argv lists only, never ``shell=True``. The one command that needs a
      shell (``su - user -c ...``) passes the inner command as a single
      argument.
    - ``check=True`` converts a non-zero exit into ``CommandError`` carrying
      argv, exit code and the tail of stderr. Callers probing state pass
      ``check=False`` and read ``returncode`` themselves.
    - Timeouts raise ``CommandError`` too, so callers handle a single type.

Related Modules:
    - :mod:`tigspine.provision.runtime` — package installation, group setup
    - :mod:`tigspine.provision.compose` — compose lifecycle commands

Tags:
    subprocess, commands, external-process
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from tigspine.core.errors import CommandError
from tigspine.core.logging import get_logger

logger = get_logger(__name__)

_STDERR_TAIL = 500


class CommandRunner:
    """Runs external commands with captured text output.

    Args:
        default_timeout: Seconds allowed per command when the caller does
            not pass ``timeout``.
    """

    def __init__(self, default_timeout: float | None = 900.0) -> None:
        self.default_timeout = default_timeout

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def run(
        self,
        args: list[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        cwd: Path | None = None,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``args`` and return the completed process.

        Raises:
            CommandError: The binary is missing, the command timed out, or
                it exited non-zero with ``check=True``.
        """
        timeout = timeout if timeout is not None else self.default_timeout
        logger.debug("Running command", command=" ".join(args), cwd=str(cwd or "."))
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=cwd,
                input=input,
            )
        except FileNotFoundError as exc:
            raise CommandError(
                f"Command not found: {args[0]}", argv=args, cause=exc
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandError(
                f"Command timed out after {timeout}s: {' '.join(args)}",
                argv=args,
                cause=exc,
            ) from exc

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()[-_STDERR_TAIL:]
            raise CommandError(
                f"Command failed with exit code {result.returncode}: {' '.join(args)}"
                + (f": {stderr}" if stderr else ""),
                argv=args,
                returncode=result.returncode,
                stderr=stderr,
            )
        return result


__all__ = ["CommandRunner"]
