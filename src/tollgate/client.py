"""Entry point: spawn the agent, run the ACP handshake, start the session."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Iterable

import asyncio.subprocess as aio_subprocess
from acp import PROTOCOL_VERSION
from acp.core import connect_to_agent
from acp.schema import ClientCapabilities, FileSystemCapability, Implementation

from tollgate import __version__
from tollgate.acp_client import ACPClient
from tollgate.backend import AcpBackend
from tollgate.config import ConfigError, LoadedConfig, init_config, load_cli_config, load_env_files
from tollgate.keys import KeyReader
from tollgate.log_utils import build_log_config, configure_logging, log_context, log_event
from tollgate.paths import log_dir, state_dir
from tollgate.renderer import TerminalRenderer
from tollgate.session import InteractiveSession
from tollgate.status_line import build_welcome_banner
from tollgate.store import AUDIT_FILE, AuditWriteError, AuditWriter, SessionStore

logger = logging.getLogger(__name__)

AGENT_LOG_FILE = "agent-stderr.log"


async def _open_session(conn: Any, store: SessionStore, cwd: Path, can_load: bool) -> tuple[str, bool]:
    """Resume the saved session for ``cwd`` when possible, else start a new one."""
    saved = store.load(cwd)
    if saved and can_load:
        try:
            await conn.load_session(cwd=str(cwd), session_id=saved, mcp_servers=[])
            return saved, True
        except Exception as exc:  # noqa: BLE001
            log_event(logger, "session.resume_failed", level=logging.WARNING, session_id=saved, error=str(exc))
    response = await conn.new_session(cwd=str(cwd), mcp_servers=[])
    return response.session_id, False


async def run_client(program: str, args: Iterable[str], loaded: LoadedConfig) -> int:
    config = loaded.config
    cwd = Path.cwd()
    program_path = Path(program)
    spawn_program = program
    spawn_args = list(args)

    if program_path.exists() and not os.access(program_path, os.X_OK):
        spawn_program = sys.executable
        spawn_args = [str(program_path), *spawn_args]

    store = SessionStore(state_dir())
    try:
        audit = AuditWriter(state_dir() / AUDIT_FILE)
    except AuditWriteError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    with (log_dir() / AGENT_LOG_FILE).open("ab") as agent_stderr:
        proc = await asyncio.create_subprocess_exec(
            spawn_program,
            *spawn_args,
            stdin=aio_subprocess.PIPE,
            stdout=aio_subprocess.PIPE,
            stderr=agent_stderr,
        )
        if proc.stdin is None or proc.stdout is None:
            print("Agent process does not expose stdio pipes", file=sys.stderr)
            return 1

        renderer = TerminalRenderer(sys.stdout, resize_debounce=config.resize_debounce)
        session = InteractiveSession(renderer, config=config, cwd=cwd, store=store, audit=audit)
        client_impl = ACPClient(session.on_backend_event, session)
        conn = connect_to_agent(client_impl, proc.stdin, proc.stdout)
        loop = asyncio.get_running_loop()

        try:
            init_resp = await conn.initialize(
                protocol_version=PROTOCOL_VERSION,
                client_capabilities=ClientCapabilities(
                    fs=FileSystemCapability(read_text_file=False, write_text_file=False),
                    terminal=False,
                ),
                client_info=Implementation(name="tollgate", title="tollgate", version=__version__),
            )
            if init_resp.protocol_version != PROTOCOL_VERSION:
                print(
                    f"Incompatible ACP protocol version from agent: {init_resp.protocol_version}",
                    file=sys.stderr,
                )
                return 1
            agent_caps = getattr(init_resp, "agent_capabilities", None)
            can_load = bool(getattr(agent_caps, "load_session", False))
            session_id, resumed = await _open_session(conn, store, cwd, can_load)
            store.save(cwd, session_id)
            session.attach_backend(
                AcpBackend(conn, session_id, cwd=str(cwd), can_load=can_load),
                commands=lambda: client_impl.available_commands,
            )

            with log_context(session_id=session_id):
                log_event(logger, "session.started", cwd=str(cwd), resumed=resumed, program=program)
                renderer.write_raw(
                    build_welcome_banner(version=__version__, cwd=str(cwd), session_id=session_id, resumed=resumed)
                )
                renderer.info(f"Audit log: {audit.path}")
                renderer.info(f"Session file: {store.path}")
                if loaded.exists:
                    renderer.info(f"Config: {loaded.path}")
                for warning in loaded.warnings:
                    renderer.log(f"warning: {warning}")
                renderer.log("Resuming session" if resumed else "Starting new session")

                loop.add_signal_handler(signal.SIGWINCH, renderer.on_resize)
                try:
                    await session.run(KeyReader(session.handle_key))
                finally:
                    loop.remove_signal_handler(signal.SIGWINCH)
            return 0
        except AuditWriteError as exc:
            print(f"Fatal: {exc}", file=sys.stderr)
            return 1
        finally:
            with contextlib.suppress(Exception):
                await conn.close()
            if proc.returncode is None:
                proc.terminate()
                with contextlib.suppress(ProcessLookupError):
                    await proc.wait()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tollgate",
        description="Interactive terminal for an ACP agent, with approval of every tool call.",
    )
    parser.add_argument("--version", action="version", version=f"tollgate {__version__}")
    parser.add_argument("--config", type=Path, help="Path to config.json (default: user config dir)")
    parser.add_argument("--init-config", action="store_true", help="Write the default config and exit")
    parser.add_argument("agent_program", nargs="?", help="Agent program to launch")
    parser.add_argument("agent_args", nargs=argparse.REMAINDER, help="Arguments for the agent")
    return parser


async def main(argv: list[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv[1:])

    load_env_files()
    configure_logging(build_log_config())

    if args.init_config:
        try:
            print(init_config(args.config))
        except ConfigError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        return 0

    if not args.agent_program:
        parser.error("agent_program is required")

    loaded = load_cli_config(args.config)
    return await run_client(args.agent_program, args.agent_args, loaded)


def run() -> None:
    """Console script entry point."""
    try:
        raise SystemExit(asyncio.run(main(sys.argv)))
    except KeyboardInterrupt:
        raise SystemExit(130)
