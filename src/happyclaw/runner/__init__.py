"""Agent runner: executes one agent turn in a container or on the host.

Writes the request to the agent's stdin, decodes sentinel-framed results
from its stdout, manages the idle timeout, and classifies the exit.

This package is split into focused submodules:
  _serialization  JSON boundary crossing (ExecutionRequest <-> dict, frame parsing)
  _credentials    provider env rendering and the 0600 env file
  _session_prep   session settings.json and skill selection
  _mounts         mount planning and container arg construction
  _protocol       incremental sentinel frame parser, legacy last-frame parser
  _delivery       ordered consumer delivery with bounded settle
  _process        stdin write, output pumps, idle timeout, stop strategies
  _classify       exit classification into the final result
  _launcher       container and host launchers (host preflight)
  _logging        per-run log file writing
  _registry       live run registry for out-of-band stop
  _orchestrator   main entry point (run_agent)
"""

from happyclaw.runner._delivery import OnOutput
from happyclaw.runner._errors import InputWriteError, RunnerError, SetupError, SpawnError
from happyclaw.runner._launcher import ContainerLauncher, HostLauncher, get_launcher
from happyclaw.runner._orchestrator import OnProcess, resolve_timeout, run_agent
from happyclaw.runner._registry import RunRegistry, get_registry

__all__ = [
    "ContainerLauncher",
    "HostLauncher",
    "InputWriteError",
    "OnOutput",
    "OnProcess",
    "RunRegistry",
    "RunnerError",
    "SetupError",
    "SpawnError",
    "get_launcher",
    "get_registry",
    "resolve_timeout",
    "run_agent",
]
