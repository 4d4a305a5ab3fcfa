# src/mission_control/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs one command:
- serve: HTTP API + push channel + archive scheduler (uvicorn),
- create-user / create-agent / issue-token: provisioning,
- archive-once: a single archive pass, e.g. from cron.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from ..auth.credentials import new_token
from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..core.state import AppState
from ..errors import MissionControlError
from ..logging_setup import setup_logging
from ..tasks.board_service import slugify

logger = logging.getLogger(__name__)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mission-control",
        description="Kanban task lifecycle server for humans and agents",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    serve = subparsers.add_parser("serve", help="Run the HTTP/WebSocket server")
    serve.add_argument("--host", default=None, help="Bind address (default: MC_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: MC_PORT)")

    user = subparsers.add_parser("create-user", help="Create a human account")
    user.add_argument("--email", required=True)
    user.add_argument("--admin", action="store_true", help="Grant the admin flag")
    user.add_argument("--no-auto-mode", action="store_true", help="Disable agent auto mode")

    agent = subparsers.add_parser("create-agent", help="Register an agent")
    agent.add_argument("--name", required=True)
    agent.add_argument("--slug", default=None, help="Defaults to a slug of --name")
    agent.add_argument("--emoji", default="🤖")

    token = subparsers.add_parser("issue-token", help="Issue an API token (printed once)")
    owner = token.add_mutually_exclusive_group(required=True)
    owner.add_argument("--user-id", type=int)
    owner.add_argument("--agent-id", type=int)
    token.add_argument("--name", default=None, help="Label stored with the token")

    subparsers.add_parser("archive-once", help="Run a single archive pass and exit")

    return parser.parse_args(argv)


def _serve(state: AppState, args: argparse.Namespace) -> int:
    import uvicorn

    from ..api.app import create_app

    settings = state.settings
    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("Serving on http://%s:%s", host, port)
    # log_config=None keeps our handlers instead of uvicorn's defaults.
    uvicorn.run(create_app(state), host=host, port=port, log_config=None)
    return 0


def _create_user(state: AppState, args: argparse.Namespace) -> int:
    user = state.store.add_user(email=args.email, admin=args.admin, auto_mode=not args.no_auto_mode)
    print(f"user id={user.id} email={user.email} admin={user.admin}")
    return 0


def _create_agent(state: AppState, args: argparse.Namespace) -> int:
    agent = state.store.add_agent(name=args.name, slug=args.slug or slugify(args.name), emoji=args.emoji)
    print(f"agent id={agent.id} slug={agent.slug} uuid={agent.uuid}")
    return 0


def _issue_token(state: AppState, args: argparse.Namespace) -> int:
    token = new_token()
    state.store.add_api_token(token, user_id=args.user_id, agent_id=args.agent_id, name=args.name)
    print(token)
    return 0


def _archive_once(state: AppState, _args: argparse.Namespace) -> int:
    archived = asyncio.run(state.scheduler.tick())
    if archived is None:
        return 1
    print(f"archived {len(archived)} task(s)")
    return 0


_COMMANDS = {
    "serve": _serve,
    "create-user": _create_user,
    "create-agent": _create_agent,
    "issue-token": _issue_token,
    "archive-once": _archive_once,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    settings = get_settings()

    # choose console log level from settings.log_level
    console_level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s (%s)...", settings.app_name, args.command)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    try:
        return _COMMANDS[args.command](state, args)
    except MissionControlError as exc:
        logger.error("%s failed: %s", args.command, exc.detail)
        print(f"error: {exc.detail}", file=sys.stderr)
        return 2
    finally:
        state.store.close()


if __name__ == "__main__":
    sys.exit(main())
