"""coq-lsp subprocess management over JSON-RPC (LSP framing on stdio)."""

import asyncio
import itertools
import json
import logging
import os
import signal
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from coq_errors import ClientUnavailable, CoqLspError, ErrorKind, ProofAssistantError, QueryFailed
from coq_types import Diagnostic, GoalsWithMessages, Position, ProofGoal, QueryResult, pp_to_string

COQ_LSP_PATH = os.environ.get("COQ_LSP_PATH", "coq-lsp")

# Diagnostics are published once per version, after checking completes
INIT_OPTIONS = {"show_notices_as_diagnostics": False, "eager_diagnostics": False}

logger = logging.getLogger(__name__)


def uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme not in ("", "file"):
        raise ValueError(f"Unsupported document uri: {uri}")
    return Path(unquote(parsed.path))


def encode_message(payload: dict) -> bytes:
    """Frame a JSON-RPC payload with a Content-Length header."""
    body = json.dumps(payload).encode()
    return f"Content-Length: {len(body)}\r\n\r\n".encode() + body


async def read_message(reader: asyncio.StreamReader) -> Optional[dict]:
    """Read one framed message. Returns None on EOF."""
    length = None
    while True:
        line = await reader.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            break
        name, _, value = line.decode("ascii", errors="replace").partition(":")
        if name.strip().lower() == "content-length":
            length = int(value.strip())
    if length is None:
        raise CoqLspError("Missing Content-Length header")
    body = await reader.readexactly(length)
    return json.loads(body.decode())


def parse_goal_answer(answer: Any, command: Optional[str] = None) -> QueryResult:
    """Validate a ``proof/goals`` answer into a QueryResult.

    With a speculative ``command``, a reported error makes the whole result a
    failure; without one the error rides along with the goals.
    """
    if not isinstance(answer, dict):
        return QueryResult.failure(ErrorKind.QUERY_FAILED, "Failed to get goals")

    messages = []
    for msg in answer.get("messages") or []:
        if isinstance(msg, dict):
            messages.append(pp_to_string(msg.get("text", "")))
        else:
            messages.append(pp_to_string(msg))

    error = answer.get("error")
    error = pp_to_string(error) if error is not None else None
    if command is not None and error is not None:
        return QueryResult.failure(ErrorKind.QUERY_FAILED, error)

    config = answer.get("goals")
    if not isinstance(config, dict) or not isinstance(config.get("goals"), list):
        return QueryResult.failure(ErrorKind.QUERY_FAILED, error or "Failed to get goals")

    goals = tuple(ProofGoal.from_json(g) for g in config["goals"])
    return QueryResult.success(GoalsWithMessages(goals, tuple(messages), error))


class CoqLspClient:
    """Owns one coq-lsp process and its JSON-RPC channel."""

    def __init__(self, workdir: str, executable: str = COQ_LSP_PATH,
                 ready_timeout: float = 120, request_timeout: float = 60):
        self.workdir = Path(workdir)
        self.executable = executable
        self.ready_timeout = ready_timeout
        self.request_timeout = request_timeout
        self.process: Optional[asyncio.subprocess.Process] = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._diagnostic_waiters: dict[tuple[str, int], asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._channel_closed = False

    async def start(self) -> str:
        """Spawn coq-lsp and run the initialize handshake."""
        if self.is_running:
            return "coq-lsp already running"

        self.process = await asyncio.create_subprocess_exec(
            self.executable,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            cwd=self.workdir,
            start_new_session=True,  # New process group for clean kill
        )
        self._channel_closed = False
        self._reader_task = asyncio.create_task(self._read_loop())

        await self._request("initialize", {
            "processId": os.getpid(),
            "rootUri": self.workdir.resolve().as_uri(),
            "capabilities": {},
            "initializationOptions": INIT_OPTIONS,
        }, timeout=self.ready_timeout)
        await self._notify("initialized", {})
        return f"coq-lsp started (PID {self.process.pid})"

    @property
    def is_running(self) -> bool:
        return (
            self.process is not None
            and self.process.returncode is None
            and not self._channel_closed
        )

    # -------------------------------------------------------------------------
    # Checker operations
    # -------------------------------------------------------------------------

    async def open_document(self, uri: str, version: int, text: Optional[str] = None) -> list[Diagnostic]:
        """Open a document and wait until coq-lsp has checked it."""
        if text is None:
            text = uri_to_path(uri).read_text()
        key = (uri, version)
        waiter = asyncio.get_running_loop().create_future()
        self._diagnostic_waiters[key] = waiter
        try:
            await self._notify("textDocument/didOpen", {
                "textDocument": {"uri": uri, "languageId": "coq", "version": version, "text": text},
            })
            return await asyncio.wait_for(waiter, timeout=self.ready_timeout)
        except asyncio.TimeoutError:
            raise QueryFailed(
                f"coq-lsp did not report {uri} v{version} ready within {self.ready_timeout}s"
            ) from None
        finally:
            self._diagnostic_waiters.pop(key, None)

    async def close_document(self, uri: str) -> None:
        if self.is_running:
            await self._notify("textDocument/didClose", {"textDocument": {"uri": uri}})

    async def query_goals(self, position: Position, uri: str, version: int,
                          command: Optional[str] = None) -> QueryResult:
        params = {
            "textDocument": {"uri": uri, "version": version},
            "position": position.to_json(),
            "pp_format": "Pp",
        }
        if command is not None:
            params["command"] = command
        try:
            answer = await self._request("proof/goals", params)
        except ClientUnavailable as e:
            return QueryResult.failure(ErrorKind.CLIENT_UNAVAILABLE, e.message)
        except CoqLspError as e:
            return QueryResult.failure(ErrorKind.QUERY_FAILED, e.message)
        except asyncio.TimeoutError:
            return QueryResult.failure(ErrorKind.QUERY_FAILED, f"proof/goals timed out after {self.request_timeout}s")
        return parse_goal_answer(answer, command)

    # -------------------------------------------------------------------------
    # JSON-RPC plumbing
    # -------------------------------------------------------------------------

    async def _write(self, payload: dict) -> None:
        if not self.is_running:
            raise ClientUnavailable("coq-lsp is not running")
        async with self._write_lock:
            self.process.stdin.write(encode_message(payload))
            await self.process.stdin.drain()

    async def _notify(self, method: str, params: dict) -> None:
        logger.debug("--> %s", method)
        await self._write({"jsonrpc": "2.0", "method": method, "params": params})

    async def _request(self, method: str, params: dict, timeout: Optional[float] = None) -> Any:
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        logger.debug("--> %s (id=%d)", method, request_id)
        try:
            await self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            return await asyncio.wait_for(future, timeout=timeout or self.request_timeout)
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        try:
            while True:
                message = await read_message(self.process.stdout)
                if message is None:
                    break
                await self._dispatch(message)
        except (asyncio.IncompleteReadError, ProofAssistantError, ValueError, OSError) as e:
            logger.warning("coq-lsp channel broken: %s", e)
        finally:
            self._channel_closed = True
            self._fail_pending(ClientUnavailable("coq-lsp process died unexpectedly"))

    async def _dispatch(self, message: dict) -> None:
        if "id" in message and "method" not in message:
            future = self._pending.get(message["id"])
            if future is None or future.done():
                return
            if "error" in message:
                err = message["error"] or {}
                future.set_exception(CoqLspError(err.get("message", "unknown error"), err.get("code")))
            else:
                future.set_result(message.get("result"))
            return

        method = message.get("method")
        if "id" in message:
            # Server-to-client request (configuration, capability registration)
            await self._write({"jsonrpc": "2.0", "id": message["id"], "result": None})
        elif method == "textDocument/publishDiagnostics":
            self._on_diagnostics(message.get("params") or {})
        else:
            logger.debug("<-- %s (ignored)", method)

    def _on_diagnostics(self, params: dict) -> None:
        uri, version = params.get("uri"), params.get("version")
        diagnostics = [Diagnostic.from_json(d) for d in params.get("diagnostics", [])]
        waiter = self._diagnostic_waiters.get((uri, version))
        if waiter and not waiter.done():
            waiter.set_result(diagnostics)

    def _fail_pending(self, exc: Exception) -> None:
        for future in list(self._pending.values()) + list(self._diagnostic_waiters.values()):
            if not future.done():
                future.set_exception(exc)

    async def stop(self) -> None:
        """Shut down coq-lsp and wait for cleanup."""
        if self.process and self.process.returncode is None:
            try:
                if self.is_running:
                    await self._request("shutdown", {}, timeout=5)
                    await self._notify("exit", {})
                await asyncio.wait_for(self.process.wait(), timeout=5)
            except (asyncio.TimeoutError, ClientUnavailable, CoqLspError):
                try:
                    os.killpg(os.getpgid(self.process.pid), signal.SIGTERM)
                except (ProcessLookupError, PermissionError):
                    pass
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=5)
                except asyncio.TimeoutError:
                    self.process.kill()
                    await self.process.wait()
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self.process = None
        self._reader_task = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
