"""codewright CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import sys


def main() -> None:

    import importlib.metadata

    try:
        version = importlib.metadata.version("codewright")
    except importlib.metadata.PackageNotFoundError:
        version = "0.1.0"

    parser = argparse.ArgumentParser(
        prog="codewright",
        description="codewright: autonomous coding agent engine",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {version}")
    parser.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.codewright/config.json)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP/SSE API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.add_argument("--workspace", "-w", default=None, help="Workspace to open at startup")

    run_parser = subparsers.add_parser("run", help="Run one task against a workspace")
    run_parser.add_argument("task", help="Task description")
    run_parser.add_argument("--workspace", "-w", default=".", help="Project root (default: current directory)")
    run_parser.add_argument("--provider", default=None, help="ollama, openai or gemini")
    run_parser.add_argument("--model", default="", help="Model name override")
    run_parser.add_argument("--api-key", default="", help="API key for openai/gemini")
    run_parser.add_argument("--active-file", default=None, help="File currently open in the editor")
    run_parser.add_argument("--yes", "-y", action="store_true", help="Approve every run_command without asking")

    index_parser = subparsers.add_parser("index", help="Build or refresh the semantic index")
    index_parser.add_argument("--workspace", "-w", default=".", help="Project root")

    blast_parser = subparsers.add_parser("blast-radius", help="List files affected by changing a file")
    blast_parser.add_argument("path", help="File path, relative to the workspace")
    blast_parser.add_argument("--workspace", "-w", default=".", help="Project root")
    blast_parser.add_argument("--depth", type=int, default=None, help="Maximum import hops")

    search_parser = subparsers.add_parser("search", help="Semantic code search")
    search_parser.add_argument("query", help="Natural-language query")
    search_parser.add_argument("--workspace", "-w", default=".", help="Project root")
    search_parser.add_argument("--limit", type=int, default=None, help="Number of results")

    args = parser.parse_args()

    # Load the config singleton before anything else calls get_config()
    from codewright.engine.config import get_config
    get_config(args.config)

    from codewright.logger import setup_logging
    setup_logging()

    from codewright.engine.errors import NotFoundError

    handlers = {
        "run": _run_task,
        "index": _run_index,
        "blast-radius": _run_blast_radius,
        "search": _run_search,
    }
    if args.command == "serve":
        _run_serve(args)
    elif args.command in handlers:
        try:
            code = asyncio.run(handlers[args.command](args))
        except NotFoundError as e:
            print(str(e), file=sys.stderr)
            code = 1
        sys.exit(code)
    else:
        parser.print_help()


def _override_config(**overrides) -> None:
    """Replace fields of the loaded config singleton from CLI flags."""
    import dataclasses

    from codewright.engine import config as _cfg_module

    values = {k: v for k, v in overrides.items() if v is not None}
    if values:
        _cfg_module._config = dataclasses.replace(_cfg_module.get_config(), **values)


def _run_serve(args) -> None:
    _override_config(host=args.host, port=args.port, workspace_path=args.workspace)

    from codewright.engine.server import run_server
    run_server()


async def _open_workspace(path: str, with_index: bool):
    from codewright.engine.config import get_config
    from codewright.engine.embeddings import OllamaEmbedder
    from codewright.engine.workspace import Workspace

    cfg = get_config()
    embedder = OllamaEmbedder(cfg) if with_index and cfg.embedding_enabled else None
    workspace = Workspace(path, cfg, embedder)
    await workspace.open(index_in_background=False)
    return workspace


async def _run_task(args) -> int:
    from codewright.engine.agent import AgentLoop, ToolExecutor
    from codewright.engine.backend import ModelBackend, ProviderConfig
    from codewright.engine.commands import ApprovalGate, CommandRunner
    from codewright.engine.config import get_config
    from codewright.engine.errors import BackendError

    cfg = get_config()
    workspace = await _open_workspace(args.workspace, with_index=True)
    approvals = ApprovalGate(auto_approve=args.yes)
    executor = ToolExecutor(workspace, CommandRunner(cfg), approvals, cfg)
    backend = ModelBackend(cfg)
    agent = AgentLoop(backend, executor, workspace, cfg)

    async def ask_approval(command: str) -> None:
        answer = await asyncio.to_thread(input, f"  Allow command `{command}`? [y/N] ")
        approvals.resolve(answer.strip().lower() in ("y", "yes"))

    def on_step(step) -> None:
        if step.status == "awaiting_permission":
            asyncio.ensure_future(ask_approval(step.command or ""))
        elif step.status == "running":
            print(f"[{step.iteration}] {step.summary}", flush=True)
        elif step.status == "done" and step.result:
            first_line = step.result.splitlines()[0] if step.result.splitlines() else ""
            print(f"    -> {first_line[:120]}", flush=True)

    try:
        result = await agent.run_task(
            args.task,
            provider=args.provider,
            provider_config=ProviderConfig(api_key=args.api_key, model=args.model),
            on_event=on_step,
            active_file=args.active_file,
        )
    except BackendError as e:
        print(f"Model backend error: {e}", file=sys.stderr)
        return 2
    finally:
        await workspace.close()
        await backend.close()

    print()
    print(result.final_response)
    if not result.completed:
        print(f"\n(stopped after {result.iterations} iterations without a final answer)", file=sys.stderr)
        return 1
    return 0


async def _run_index(args) -> int:
    from codewright.engine.config import get_config
    from codewright.engine.embeddings import OllamaEmbedder
    from codewright.engine.errors import BackendError
    from codewright.engine.workspace import Workspace

    cfg = get_config()
    if not cfg.embedding_enabled:
        print("Embeddings are disabled (embedding_enabled = false).", file=sys.stderr)
        return 1
    workspace = Workspace(args.workspace, cfg, OllamaEmbedder(cfg))
    await asyncio.to_thread(workspace.index.store.load)
    try:
        report = await workspace.index.index_workspace()
    except BackendError as e:
        print(f"Embedding backend error: {e}", file=sys.stderr)
        return 2
    print(
        f"Indexed {report.files} files: {report.unchanged} unchanged, "
        f"{report.embedded} chunks embedded, {report.deleted} removed"
    )
    for path in report.errors:
        print(f"  syntax error, skipped: {path}")
    print(f"{len(workspace.index.store)} chunks stored at {workspace.index.store.path}")
    return 0


async def _run_blast_radius(args) -> int:
    from codewright.engine.config import get_config

    workspace = await _open_workspace(args.workspace, with_index=False)
    depth = args.depth if args.depth is not None else get_config().blast_radius_depth
    target = workspace.resolve(args.path)
    if workspace.graph.node(target) is None:
        print(f"Not a tracked source file: {args.path}", file=sys.stderr)
        return 1
    affected = workspace.graph.blast_radius(target, depth)
    if not affected:
        print(f"No files depend on {args.path}.")
    for path in affected:
        print(workspace.relative(path))
    return 0


async def _run_search(args) -> int:
    from codewright.engine.agent.formatters import format_search_results
    from codewright.engine.config import get_config
    from codewright.engine.errors import BackendError

    cfg = get_config()
    if not cfg.embedding_enabled:
        print("Embeddings are disabled (embedding_enabled = false).", file=sys.stderr)
        return 1
    workspace = await _open_workspace(args.workspace, with_index=True)
    try:
        results = await workspace.index.search(args.query, args.limit or cfg.semantic_search_limit)
    except BackendError as e:
        print(f"Embedding backend error: {e}", file=sys.stderr)
        return 2
    finally:
        await workspace.close()
    print(format_search_results(results))
    return 0


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
