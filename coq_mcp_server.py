#!/usr/bin/env python3
"""Coq MCP Server - exposes the proof tools for one .v file to MCP clients.

The server is bound to a single file and a cursor inside it. coq-lsp starts in
the background with the server; tools wait for it on first use.
"""

from typing import Optional

from fastmcp import FastMCP

from coq_editor import FileEditor
from coq_tools import ToolRegistry

mcp = FastMCP("coq", instructions="""Coq proof assistant for one bound .v file.
coq_set_cursor first, then coq_proof_state / coq_check_term to explore.
coq_check_term never changes the file.""")
_registry: Optional[ToolRegistry] = None
_editor: Optional[FileEditor] = None

NOT_BOUND = "ERROR: No Coq file bound. Start the server with --file."


def build_server(registry: ToolRegistry, editor: FileEditor) -> FastMCP:
    """Bind the module's tools to a registry and editor; returns the server."""
    global _registry, _editor
    _registry = registry
    _editor = editor
    return mcp


async def _run(name: str, args: Optional[dict] = None) -> str:
    if _registry is None:
        return NOT_BOUND
    return await _registry.execute(name, args or {})


@mcp.tool()
async def coq_proof_state() -> str:
    """Goals, hypotheses, messages and errors at the cursor."""
    return await _run("get_current_proof_state")


@mcp.tool()
async def coq_goal_structure() -> str:
    """Per-goal breakdown: type, hypothesis count and each hypothesis' names/type/definition."""
    return await _run("get_goal_structure")


@mcp.tool()
async def coq_proof_context(linesBefore: int = 20, includeTheorems: bool = True) -> str:
    """Source before the cursor plus the theorems declared in the file.

    Args:
        linesBefore: How many lines before the cursor to include
        includeTheorems: List up to 10 theorem signatures from the file
    """
    return await _run("get_proof_context", {"linesBefore": linesBefore, "includeTheorems": includeTheorems})


@mcp.tool()
async def coq_proof_script() -> str:
    """Name, statement and script of the proof containing the cursor."""
    return await _run("get_current_proof_script")


@mcp.tool()
async def coq_edit_history() -> str:
    """Accepted lhs -> rhs edits, oldest first."""
    return await _run("get_edit_history")


@mcp.tool()
async def coq_check_term(term: str) -> str:
    """Check a command (tactic, assert, ...) at the cursor without persisting it.

    Returns: 'valid' or 'error: <reason>'
    """
    return await _run("check_term_validity", {"term": term})


@mcp.tool()
async def coq_suggest_edit(hypothesisName: str, originalValue: str, suggestedValue: str,
                           reason: str = "") -> str:
    """Format a proposed hypothesis/goal rewrite for the user to review."""
    args = {"hypothesisName": hypothesisName, "originalValue": originalValue, "suggestedValue": suggestedValue}
    if reason:
        args["reason"] = reason
    return await _run("suggest_proof_state_edit", args)


@mcp.tool()
async def coq_set_cursor(line: int, character: int) -> str:
    """Move the cursor (1-based line and column)."""
    if _editor is None:
        return NOT_BOUND
    pos = _editor.set_cursor(line - 1, character - 1)
    return f"Cursor at line {pos.line + 1}, column {pos.character + 1} of {_editor.path.name}"


@mcp.tool()
async def coq_reload() -> str:
    """Re-read the bound file after external edits."""
    if _editor is None:
        return NOT_BOUND
    before = _editor.version
    _editor.reload()
    if _editor.version == before:
        return f"{_editor.path.name} unchanged (version {before})"
    return f"Reloaded {_editor.path.name} (version {_editor.version})"


if __name__ == "__main__":
    import argparse
    import asyncio
    import logging
    import sys
    from pathlib import Path

    from coq_assistant import Assistant, AssistantConfig
    from coq_edit_history import EditHistoryLedger
    from coq_lsp_client import COQ_LSP_PATH
    from coq_tools import create_proof_tools

    parser = argparse.ArgumentParser(description="Coq MCP Server")
    parser.add_argument("--file", required=True, help="Coq source file (.v) to bind")
    parser.add_argument("--coq-lsp", default=COQ_LSP_PATH, help="coq-lsp executable")
    parser.add_argument(
        "--transport",
        choices=["stdio", "http", "sse"],
        default="stdio",
        help="Transport protocol (default: stdio)",
    )
    parser.add_argument("--port", type=int, default=8000, help="Port for HTTP/SSE (default: 8000)")
    parser.add_argument("--host", default="127.0.0.1", help="Host for HTTP/SSE (default: 127.0.0.1)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            stream=sys.stderr,
        )
        logging.getLogger("mcp").setLevel(logging.DEBUG)

    async def serve():
        file = Path(args.file).resolve()
        editor = FileEditor(file)
        config = AssistantConfig(working_dir=str(file.parent), coq_lsp=args.coq_lsp)
        async with Assistant(config) as assistant:
            build_server(create_proof_tools(assistant.start(), editor, EditHistoryLedger()), editor)
            if args.transport == "stdio":
                await mcp.run_async()
            else:
                print(f"Coq MCP server starting on {args.host}:{args.port} ({args.transport})", file=sys.stderr)
                await mcp.run_async(transport=args.transport, host=args.host, port=args.port)

    asyncio.run(serve())
