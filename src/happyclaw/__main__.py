"""Entry point for `python -m happyclaw`.

Subcommands:
    happyclaw run       Run one agent turn and print the result as JSON
    happyclaw check     Verify the container runtime and host-mode preflight
    happyclaw cleanup   Stop orphaned happyclaw-* containers
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys


def _run(args: argparse.Namespace) -> int:
    from happyclaw.runner import run_agent
    from happyclaw.runner._serialization import _output_to_dict
    from happyclaw.types import AgentOutput, ExecutionRequest, WorkspaceConfig

    group = WorkspaceConfig(
        name=args.folder,
        folder=args.folder,
        execution_mode=args.mode,
        owner_id=args.owner,
        custom_cwd=args.cwd,
    )
    request = ExecutionRequest(
        prompt=args.prompt,
        group_folder=args.folder,
        chat_jid=f"cli:{args.folder}",
        is_home=args.home or args.admin,
        is_admin_home=args.admin,
        session_id=args.session,
        agent_id=args.agent_id,
    )

    async def print_frame(frame: AgentOutput) -> None:
        print(json.dumps(_output_to_dict(frame), ensure_ascii=False), flush=True)

    result = asyncio.run(run_agent(group, request, on_output=None if args.legacy else print_frame))
    print(json.dumps(_output_to_dict(result), ensure_ascii=False, indent=2))
    return 0 if result.status == "success" else 1


def _check() -> int:
    from happyclaw.runner import HostLauncher, SetupError
    from happyclaw.runtime import get_runtime

    ok = True
    runtime = get_runtime()
    try:
        runtime.ensure_running()
        print(f"container runtime: ok ({runtime.cli})")
    except RuntimeError as exc:
        ok = False
        print(f"container runtime: {exc}", file=sys.stderr)

    try:
        entry = HostLauncher().preflight()
        print(f"host agent: ok ({entry})")
    except SetupError as exc:
        ok = False
        print(f"host agent: {exc.user_message}", file=sys.stderr)
    return 0 if ok else 1


def _cleanup() -> int:
    from happyclaw.runtime import get_runtime

    stopped = get_runtime().cleanup_orphans()
    print(f"Stopped {len(stopped)} orphaned container(s)")
    for name in stopped:
        print(f"  {name}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="happyclaw",
        description="Run coding agent turns in containers or on the host",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one agent turn")
    run.add_argument("--folder", required=True, help="Workspace folder under groups/")
    run.add_argument("--prompt", required=True)
    run.add_argument("--mode", choices=("container", "host"), default="container")
    run.add_argument("--home", action="store_true", help="Run as the owner's home workspace")
    run.add_argument("--admin", action="store_true", help="Run as the admin home workspace")
    run.add_argument("--owner", default=None, help="Owner id (scopes the global memory dir)")
    run.add_argument("--cwd", default=None, help="Custom working directory (host mode)")
    run.add_argument("--session", default=None, help="Resume this session id")
    run.add_argument("--agent-id", default=None, help="Sub-agent id")
    run.add_argument(
        "--legacy", action="store_true", help="No streaming; parse the final frame after exit"
    )

    sub.add_parser("check", help="Verify container runtime and host-mode preflight")
    sub.add_parser("cleanup", help="Stop orphaned happyclaw-* containers")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    match args.command:
        case "run":
            code = _run(args)
        case "check":
            code = _check()
        case "cleanup":
            code = _cleanup()
        case _:
            code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
