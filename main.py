#!/usr/bin/env python3
"""Command-line client for the generation pipeline.

Usage:
    python main.py generate --prompt "a pomodoro timer with a dark theme"
    python main.py generate --prompt "..." --project demo --out App.tsx
    python main.py heal --error "TypeError: x is undefined" --code App.tsx
    python main.py serve --port 5001
    python main.py stages
"""

import argparse
import logging
import os
import sys

from client.agent_loop import AgentLoop
from config.defaults import load_settings
from core.errors import PipelineError
from core.events import FileCompleteEvent, LogEvent, PlanEvent, StatusEvent
from core.stage_runner import STAGES, HttpStreamClient


def _print_event(state, event):
    """on_event hook: echo progress as it streams in."""
    if isinstance(event, StatusEvent):
        print(f"[{state.stage}] {event.message}")
    elif isinstance(event, LogEvent):
        print(f"  {event.message}")
    elif isinstance(event, PlanEvent):
        tier = event.complexity or "default"
        print(f"\nPlan ({tier} complexity, {len(event.files)} file(s)):")
        for entry in event.files:
            print(f"  {entry.get('path')} — {entry.get('description', '')}")
        print()
    elif isinstance(event, FileCompleteEvent):
        mark = "ok" if event.passed else f"kept with {event.category}"
        print(f"  done: {event.path} ({event.line_count} lines, {mark})")


def _read_file(path):
    if not path:
        return None
    with open(path) as f:
        return f.read()


def _make_loop(args, settings):
    transport = HttpStreamClient(
        base_url=args.server,
        token=settings["service_token"],
        timeout=settings["stage_timeout"],
    )
    loop = AgentLoop(transport, args.user, on_event=_print_event, app_path=settings["app_path"])
    loop.mount(args.project)
    return loop


def _finish(state, out_path):
    if state.error:
        hint = " (retryable)" if state.retryable else ""
        print(f"\nError{hint}: {state.error}")
        return 1
    if state.credits_used:
        print(f"\nCredits used: {state.credits_used}")
    if out_path and state.last_generated_code:
        with open(out_path, "w") as f:
            f.write(state.last_generated_code)
        print(f"Wrote {out_path}")
    elif state.last_generated_code:
        print("\n" + state.last_generated_code)
    return 0


def cmd_generate(args, settings):
    loop = _make_loop(args, settings)
    try:
        state = loop.start(
            args.prompt,
            current_code=_read_file(args.current_code),
            style_profile=args.style,
            skip_planning=args.skip_planning,
        )
    except KeyboardInterrupt:
        loop.cancel()
        print("\nCancelled.")
        return 130
    return _finish(state, args.out)


def cmd_heal(args, settings):
    loop = _make_loop(args, settings)
    failed_code = _read_file(args.code)
    loop.state.last_generated_code = failed_code
    code = loop.heal_code(args.error, failed_code)
    if code is None:
        return _finish(loop.state, None)
    return _finish(loop.state, args.out or args.code)


def cmd_serve(args, settings):
    from server import app

    print(f"Pipeline server running at http://localhost:{args.port}")
    app.run(debug=False, port=args.port, threaded=True)
    return 0


def cmd_stages(args, settings):
    print(f"Stage base URL: {settings['stage_base_url']}")
    for name in STAGES:
        print(f"  POST /stages/{name}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="vibe-pipeline",
        description="Streamed multi-stage code generation",
    )
    parser.add_argument("--verbose", action="store_true", help="Log pipeline internals")
    subparsers = parser.add_subparsers(dest="command")

    default_server = os.environ.get("VIBE_SERVER_URL", "http://127.0.0.1:5001")

    gen_parser = subparsers.add_parser("generate", help="Generate an app from a prompt")
    gen_parser.add_argument("--prompt", required=True, help="What to build")
    gen_parser.add_argument("--user", default="cli-user", help="User id to bill")
    gen_parser.add_argument("--project", help="Project id to persist into")
    gen_parser.add_argument("--style", help="Style profile text")
    gen_parser.add_argument("--current-code", help="Existing App.tsx to update")
    gen_parser.add_argument("--skip-planning", action="store_true",
                            help="Build a single file without the planner")
    gen_parser.add_argument("--out", help="Write the bundle to this file")
    gen_parser.add_argument("--server", default=default_server, help="Server base URL")

    heal_parser = subparsers.add_parser("heal", help="Fix code that crashed at runtime")
    heal_parser.add_argument("--error", required=True, help="Runtime error message")
    heal_parser.add_argument("--code", required=True, help="File holding the crashed code")
    heal_parser.add_argument("--user", default="cli-user", help="User id")
    heal_parser.add_argument("--project", help="Project id to persist into")
    heal_parser.add_argument("--out", help="Write the fix here (default: overwrite --code)")
    heal_parser.add_argument("--server", default=default_server, help="Server base URL")

    serve_parser = subparsers.add_parser("serve", help="Run the pipeline server")
    serve_parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 5001)))

    subparsers.add_parser("stages", help="List the stage endpoints")

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.INFO if args.verbose or args.command == "serve" else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings()
    commands = {
        "generate": cmd_generate,
        "heal": cmd_heal,
        "serve": cmd_serve,
        "stages": cmd_stages,
    }
    try:
        return commands[args.command](args, settings)
    except (OSError, PipelineError) as exc:
        print(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
