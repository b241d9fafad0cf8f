"""Container runtime helpers for startup checks and orphan cleanup.

Docker (or any CLI with the same ``info``/``ps``/``stop`` surface, selected
by ``[container].runtime_cli``) is the only supported runtime.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass

from happyclaw.logger import logger

CONTAINER_PREFIX = "happyclaw-"


@dataclass(frozen=True)
class ContainerRuntime:
    cli: str = "docker"

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    def ensure_running(self) -> None:
        """Raise RuntimeError if the container daemon is unreachable."""
        try:
            subprocess.run([self.cli, "info"], capture_output=True, check=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise RuntimeError(
                f"{self.cli} is required but not running. "
                "Start the daemon (e.g. sudo systemctl start docker) and retry."
            ) from exc
        logger.debug("Container daemon is running", cli=self.cli)

    def list_running_containers(self, prefix: str = CONTAINER_PREFIX) -> list[str]:
        try:
            result = subprocess.run(
                [self.cli, "ps", "--filter", f"name={prefix}", "--format", "{{.Names}}"],
                capture_output=True,
                text=True,
                check=True,
            )
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            logger.warning("Failed to list containers", err=str(exc), cli=self.cli)
            return []
        # --filter name= is a substring match; enforce the prefix ourselves
        return [
            name
            for name in (line.strip() for line in result.stdout.splitlines())
            if name.startswith(prefix)
        ]

    def cleanup_orphans(self, prefix: str = CONTAINER_PREFIX) -> list[str]:
        """Stop containers left behind by a previous process. Returns stopped names."""
        stopped: list[str] = []
        for name in self.list_running_containers(prefix):
            try:
                subprocess.run(
                    [self.cli, "stop", name],
                    capture_output=True,
                    check=True,
                    timeout=30,
                )
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
                logger.warning("Failed to stop orphaned container", name=name, err=str(exc))
                continue
            stopped.append(name)
        if stopped:
            logger.info("Stopped orphaned containers", count=len(stopped), names=stopped)
        return stopped


_runtime: ContainerRuntime | None = None


def get_runtime() -> ContainerRuntime:
    """Lazy singleton built from ``[container].runtime_cli``."""
    global _runtime
    if _runtime is None:
        from happyclaw.config import get_settings

        _runtime = ContainerRuntime(cli=get_settings().container.runtime_cli)
    return _runtime
