from __future__ import annotations

import ast
import asyncio
import json
import logging
import re
import shlex
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Awaitable, Callable
from typing import Any

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ValidationError

from .models import (
    TOOL_INPUT_MODELS,
    GetLibraryDocsInput,
    ListSymbolsInput,
    ReadFileInput,
    ResolveLibraryInput,
    ShareThoughtInput,
    TerminalCommandInput,
    ToolKind,
    ToolObservation,
)
from .sandbox import PathContainmentError, Sandbox, SandboxError, resolve_workspace_path

logger = logging.getLogger(__name__)

_CONTEXT7_BASE_URL = "https://context7.com/api/v1"
_CONTEXT7_TIMEOUT_SECONDS = 30
_CONTEXT7_MAX_RESULTS = 5
_BINARY_SNIFF_BYTES = 8_000

TOOL_DESCRIPTIONS: dict[ToolKind, str] = {
    ToolKind.TERMINAL_COMMAND: (
        "Execute a read-only shell command (rg, grep, find, ls, cat, head, git log, ...) in the repository root. "
        "A non-zero exit code is returned as data together with the output."
    ),
    ToolKind.READ_FILE: "Read the full contents of a file inside the repository.",
    ToolKind.RESOLVE_LIBRARY: "Resolve a library or package name to a documentation id for getLibraryDocs.",
    ToolKind.GET_LIBRARY_DOCS: "Fetch documentation for a library id returned by resolveLibrary.",
    ToolKind.LIST_SYMBOLS: (
        "List symbols defined in one file (scope=document) or find definitions of a symbol name across the "
        "repository (scope=codebase). Supports Python and TypeScript/JavaScript sources only."
    ),
    ToolKind.SHARE_THOUGHT: (
        "Share your current reasoning and any findings established so far. Findings are reported if the "
        "investigation runs out of steps before a final answer."
    ),
}

_BASH_LC_RE = re.compile(r"""^\s*(?:/usr)?(?:/bin/)?bash\s+-l?c\s+(['"])(?P<body>.*)\1\s*$""", re.DOTALL)
_COMMAND_SEPARATORS = frozenset({"|", "||", "&&", ";", "&", "(", ")", ";;", "|&"})
_ENV_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_MUTATING_PROGRAMS = frozenset(
    {
        "rm", "rmdir", "mv", "cp", "ln", "chmod", "chown", "chgrp", "mkdir", "touch", "truncate",
        "dd", "tee", "shred", "install", "patch", "kill", "pkill", "sudo", "su", "reboot", "shutdown",
    }
)
_MUTATING_GIT_SUBCOMMANDS = frozenset(
    {
        "add", "am", "apply", "checkout", "cherry-pick", "clean", "commit", "fetch", "gc", "init", "merge",
        "mv", "pull", "push", "rebase", "reset", "restore", "revert", "rm", "stash", "switch", "tag", "worktree",
    }
)
_PACKAGE_MANAGERS = frozenset({"npm", "pnpm", "yarn", "bun", "pip", "pip3", "poetry", "uv", "cargo", "go"})
_PACKAGE_MUTATIONS = frozenset({"install", "i", "add", "remove", "uninstall", "update", "upgrade", "ci", "get", "sync"})
_GIT_VALUE_OPTIONS = frozenset({"-C", "-c", "--git-dir", "--work-tree", "--namespace", "--config-env"})
# Options that consume the following word, per wrapper program.
_WRAPPER_VALUE_OPTIONS: dict[str, frozenset[str]] = {
    "xargs": frozenset({"-I", "-n", "-P", "-L", "-s", "-d", "-E", "-a", "--max-args", "--max-procs", "--delimiter"}),
    "env": frozenset({"-u", "-C", "--unset", "--chdir"}),
    "nice": frozenset({"-n", "--adjustment"}),
    "timeout": frozenset({"-s", "-k", "--signal", "--kill-after"}),
    "nohup": frozenset(),
    "command": frozenset(),
    "exec": frozenset({"-a"}),
    "stdbuf": frozenset({"-i", "-o", "-e"}),
}
# timeout takes its duration before the wrapped command.
_WRAPPER_POSITIONALS: dict[str, int] = {"timeout": 1}

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
_PYTHON_SUFFIXES = (".py", ".pyi")
_TYPESCRIPT_SUFFIXES = (".ts", ".tsx", ".mts", ".cts", ".js", ".jsx", ".mjs", ".cjs")
_TS_SYMBOL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("class", re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:abstract\s+)?class\s+([A-Za-z_$][\w$]*)")),
    ("function", re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:declare\s+)?(?:async\s+)?function\s*\*?\s*([A-Za-z_$][\w$]*)")),
    ("interface", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?interface\s+([A-Za-z_$][\w$]*)")),
    ("type", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?type\s+([A-Za-z_$][\w$]*)\s*(?:<[^=]*>)?\s*=")),
    ("enum", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?(?:const\s+)?enum\s+([A-Za-z_$][\w$]*)")),
    ("variable", re.compile(r"^\s*(?:export\s+)?(?:declare\s+)?(?:const|let|var)\s+([A-Za-z_$][\w$]*)")),
)


class ToolExecutionError(RuntimeError):
    """A tool could not produce an answer; reported to the model as an observation."""


class ReadOnlyCommandError(ToolExecutionError):
    """A terminal command would modify the repository or the sandbox."""


def strip_bash_lc_prefix(command: str) -> str:
    """Unwrap ``bash -lc '<cmd>'`` so the inner command is checked and executed directly."""
    match = _BASH_LC_RE.match(command)
    if match is None:
        return command.strip()
    return match.group("body").strip()


def _simple_commands(tokens: list[str]) -> list[list[str]]:
    commands: list[list[str]] = [[]]
    for token in tokens:
        if token in _COMMAND_SEPARATORS:
            commands.append([])
        else:
            commands[-1].append(token)
    return [command for command in commands if command]


def check_read_only_command(command: str) -> None:
    """Reject commands that write files or change repository state.

    The check is lexical: the command is tokenized with shell quoting rules,
    split on pipes and list operators, and every simple command's program is
    compared against known mutating programs. Output redirection is only
    allowed to ``/dev/null`` or another file descriptor.

    Raises:
        ReadOnlyCommandError: If the command is not read-only or cannot be tokenized.
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError as exc:
        raise ReadOnlyCommandError(f"Command could not be parsed: {exc}") from exc

    for index, token in enumerate(tokens):
        if ">" not in token or token.strip("<>&|;()") != "":
            continue
        target = tokens[index + 1] if index + 1 < len(tokens) else ""
        if target == "/dev/null" or (token.endswith("&") and target.isdigit()):
            continue
        raise ReadOnlyCommandError("Output redirection to files is not allowed; tools are read-only")

    for words in _simple_commands(tokens):
        _check_simple_command(words)


def _check_simple_command(words: list[str]) -> None:
    while words and _ENV_ASSIGNMENT_RE.match(words[0]):
        words = words[1:]
    if not words:
        return
    program = words[0].rsplit("/", 1)[-1]
    arguments = words[1:]
    if program in _WRAPPER_VALUE_OPTIONS:
        _check_simple_command(_wrapped_command(program, arguments))
        return
    if program in _MUTATING_PROGRAMS:
        raise ReadOnlyCommandError(f"'{program}' modifies files and is not allowed; tools are read-only")
    if program == "sed" and any(arg == "-i" or arg.startswith("-i") or arg.startswith("--in-place") for arg in arguments):
        raise ReadOnlyCommandError("In-place sed edits are not allowed; tools are read-only")
    if program == "find" and ("-delete" in arguments or _find_exec_mutates(arguments)):
        raise ReadOnlyCommandError("find actions that modify files are not allowed; tools are read-only")
    if program == "git":
        subcommand = _git_subcommand(arguments)
        if subcommand in _MUTATING_GIT_SUBCOMMANDS:
            raise ReadOnlyCommandError(f"'git {subcommand}' changes repository state and is not allowed")
    if program in _PACKAGE_MANAGERS:
        subcommand = next((arg for arg in arguments if not arg.startswith("-")), "")
        if subcommand in _PACKAGE_MUTATIONS:
            raise ReadOnlyCommandError(f"'{program} {subcommand}' changes the environment and is not allowed")


def _wrapped_command(program: str, arguments: list[str]) -> list[str]:
    """Return the command a wrapper such as ``xargs`` or ``timeout`` will run."""
    value_options = _WRAPPER_VALUE_OPTIONS[program]
    index = 0
    while index < len(arguments):
        arg = arguments[index]
        if arg == "--":
            index += 1
            break
        if program == "env" and _ENV_ASSIGNMENT_RE.match(arg):
            index += 1
            continue
        if not arg.startswith("-") or arg == "-":
            break
        index += 2 if arg in value_options else 1
    index += _WRAPPER_POSITIONALS.get(program, 0)
    return arguments[index:]


def _git_subcommand(arguments: list[str]) -> str:
    index = 0
    while index < len(arguments):
        arg = arguments[index]
        if arg in _GIT_VALUE_OPTIONS:
            index += 2
        elif arg.startswith("-"):
            index += 1
        else:
            return arg
    return ""


def _find_exec_mutates(arguments: list[str]) -> bool:
    for index, arg in enumerate(arguments):
        if arg in {"-exec", "-execdir", "-ok", "-okdir"} and index + 1 < len(arguments):
            if arguments[index + 1].rsplit("/", 1)[-1] in _MUTATING_PROGRAMS:
                return True
    return False


def _http_get(url: str, headers: dict[str, str]) -> str:
    """Send a GET request and return the response body as text.

    Raises:
        ToolExecutionError: If the request fails.
    """
    request = urllib.request.Request(url, method="GET", headers=headers)
    try:
        with urllib.request.urlopen(request, timeout=_CONTEXT7_TIMEOUT_SECONDS) as response:
            return response.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as exc:
        logger.warning("HTTP %d from %s", exc.code, url)
        raise ToolExecutionError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.warning("URL error reaching %s: %s", url, exc.reason)
        raise ToolExecutionError(f"Failed to reach {url}: {exc.reason}") from exc


def _http_get_json(url: str, headers: dict[str, str]) -> dict[str, Any]:
    body = _http_get(url, headers)
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ToolExecutionError(f"Invalid JSON response from {url}") from exc
    if not isinstance(parsed, dict):
        raise ToolExecutionError(f"Expected a JSON object from {url}")
    return parsed


def python_symbols(source: str, path: str) -> list[tuple[str, str, int]]:
    """Return ``(kind, qualified_name, line)`` for classes and functions in Python source.

    Raises:
        ToolExecutionError: If the source does not parse.
    """
    try:
        tree = ast.parse(source, filename=path)
    except SyntaxError as exc:
        raise ToolExecutionError(f"Could not parse {path}: {exc.msg} (line {exc.lineno})") from exc

    symbols: list[tuple[str, str, int]] = []

    def visit(nodes: list[ast.stmt], prefix: str, in_class: bool) -> None:
        for node in nodes:
            if isinstance(node, ast.ClassDef):
                symbols.append(("class", f"{prefix}{node.name}", node.lineno))
                visit(node.body, f"{prefix}{node.name}.", True)
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                symbols.append(("method" if in_class else "function", f"{prefix}{node.name}", node.lineno))
            elif isinstance(node, (ast.Assign, ast.AnnAssign)) and not prefix:
                targets = node.targets if isinstance(node, ast.Assign) else [node.target]
                for target in targets:
                    if isinstance(target, ast.Name):
                        symbols.append(("variable", target.id, node.lineno))

    visit(tree.body, "", False)
    return symbols


def typescript_symbols(source: str) -> list[tuple[str, str, int]]:
    symbols: list[tuple[str, str, int]] = []
    for line_number, line in enumerate(source.splitlines(), start=1):
        for kind, pattern in _TS_SYMBOL_PATTERNS:
            match = pattern.match(line)
            if match is not None:
                symbols.append((kind, match.group(1), line_number))
                break
    return symbols


def _symbol_language(path: str) -> str | None:
    lowered = path.lower()
    if lowered.endswith(_PYTHON_SUFFIXES):
        return "python"
    if lowered.endswith(_TYPESCRIPT_SUFFIXES):
        return "typescript"
    return None


class Toolbox:
    """Read-only tool adapters over one sandbox.

    Every ``ToolKind`` has exactly one handler and one input schema. Input
    validation failures, non-fatal sandbox errors and ``ToolExecutionError``
    become error observations; fatal sandbox errors propagate.
    """

    def __init__(
        self,
        sandbox: Sandbox,
        *,
        workspace_root: str = "workspace/repo",
        command_timeout: int = 120,
        observation_char_limit: int = 20_000,
        context7_base_url: str = _CONTEXT7_BASE_URL,
        context7_api_key: str | None = None,
        log: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.sandbox = sandbox
        self.workspace_root = workspace_root.rstrip("/")
        self.command_timeout = command_timeout
        self.observation_char_limit = observation_char_limit
        self.context7_base_url = context7_base_url.rstrip("/")
        self.context7_api_key = context7_api_key
        self.log = log if log is not None else logger
        self._handlers: dict[ToolKind, Callable[[Any], Awaitable[ToolObservation]]] = {
            ToolKind.TERMINAL_COMMAND: self.terminal_command,
            ToolKind.READ_FILE: self.read_file,
            ToolKind.RESOLVE_LIBRARY: self.resolve_library,
            ToolKind.GET_LIBRARY_DOCS: self.get_library_docs,
            ToolKind.LIST_SYMBOLS: self.list_symbols,
            ToolKind.SHARE_THOUGHT: self.share_thought,
        }
        missing = set(ToolKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"Toolbox is missing handlers for: {sorted(kind.value for kind in missing)}")

    async def dispatch(self, tool_name: str, arguments: dict[str, Any] | None) -> ToolObservation:
        """Validate and run one tool call, returning the observation for the model.

        Raises:
            SandboxError: If the sandbox failed in a way the model cannot recover from.
        """
        try:
            kind = ToolKind(tool_name)
        except ValueError:
            available = ", ".join(kind.value for kind in ToolKind)
            self.log.warning("Model requested unknown tool %r", tool_name)
            return ToolObservation(
                tool=None,
                content=f"Error: unknown tool '{tool_name}'. Available tools: {available}",
                is_error=True,
            )

        try:
            params = TOOL_INPUT_MODELS[kind].model_validate(arguments or {})
        except ValidationError as exc:
            self.log.warning("Invalid input for %s: %s", kind.value, exc)
            return ToolObservation(tool=kind, content=f"Error: invalid input for {kind.value}: {exc}", is_error=True)

        try:
            observation = await self._handlers[kind](params)
        except SandboxError as exc:
            if exc.fatal:
                raise
            return ToolObservation(tool=kind, content=f"Error: {exc}", is_error=True)
        except (ToolExecutionError, PathContainmentError) as exc:
            self.log.info("%s failed: %s", kind.value, exc)
            return ToolObservation(tool=kind, content=f"Error: {exc}", is_error=True)
        return self._clip(observation)

    def _clip(self, observation: ToolObservation) -> ToolObservation:
        content = observation.content
        if len(content) <= self.observation_char_limit:
            return observation
        dropped = len(content) - self.observation_char_limit
        return ToolObservation(
            tool=observation.tool,
            content=f"{content[: self.observation_char_limit]}\n... [truncated {dropped} characters]",
            is_error=observation.is_error,
            evidence=observation.evidence,
        )

    async def _run(self, command: str) -> tuple[int, str]:
        result = await self.sandbox.execute_command(command, cwd=self.workspace_root, timeout=self.command_timeout)
        return result.exit_code, result.output

    async def terminal_command(self, params: TerminalCommandInput) -> ToolObservation:
        command = strip_bash_lc_prefix(params.command)
        check_read_only_command(command)
        self.log.debug("terminalCommand (%s): %s", params.description, command)
        exit_code, output = await self._run(command)
        if exit_code != 0:
            return ToolObservation(
                tool=ToolKind.TERMINAL_COMMAND,
                content=json.dumps({"exitCode": exit_code, "output": output}),
            )
        return ToolObservation(tool=ToolKind.TERMINAL_COMMAND, content=output if output.strip() else "(no output)")

    async def _read_text(self, path: str) -> str:
        sandbox_path = resolve_workspace_path(path, self.workspace_root)
        data = await self.sandbox.download_file(sandbox_path)
        if b"\x00" in data[:_BINARY_SNIFF_BYTES]:
            raise ToolExecutionError(f"{path} is a binary file")
        return data.decode("utf-8", errors="replace")

    async def read_file(self, params: ReadFileInput) -> ToolObservation:
        return ToolObservation(tool=ToolKind.READ_FILE, content=await self._read_text(params.path))

    def _context7_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "X-Context7-Source": "storyeval"}
        if self.context7_api_key:
            headers["Authorization"] = f"Bearer {self.context7_api_key}"
        return headers

    async def resolve_library(self, params: ResolveLibraryInput) -> ToolObservation:
        query = urllib.parse.urlencode({"query": params.library_name})
        payload = await asyncio.to_thread(
            _http_get_json, f"{self.context7_base_url}/search?{query}", self._context7_headers()
        )
        results = payload.get("results")
        if not isinstance(results, list) or not results:
            return ToolObservation(
                tool=ToolKind.RESOLVE_LIBRARY,
                content=f"No documentation found for '{params.library_name}'.",
            )
        lines: list[str] = []
        for entry in results[:_CONTEXT7_MAX_RESULTS]:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            title = entry.get("title") or entry["id"]
            description = (entry.get("description") or "").strip()
            lines.append(f"- {entry['id']}: {title}" + (f" ({description})" if description else ""))
        if not lines:
            raise ToolExecutionError(f"Documentation search for '{params.library_name}' returned no usable ids")
        return ToolObservation(tool=ToolKind.RESOLVE_LIBRARY, content="\n".join(lines))

    async def get_library_docs(self, params: GetLibraryDocsInput) -> ToolObservation:
        library_id = "/" + params.library_id.strip().strip("/")
        query: dict[str, str] = {"tokens": str(params.tokens), "type": "txt"}
        if params.topic:
            query["topic"] = params.topic
        url = f"{self.context7_base_url}{urllib.parse.quote(library_id)}?{urllib.parse.urlencode(query)}"
        headers = {**self._context7_headers(), "Accept": "text/plain"}
        body = await asyncio.to_thread(_http_get, url, headers)
        if not body.strip():
            return ToolObservation(tool=ToolKind.GET_LIBRARY_DOCS, content=f"No documentation available for {library_id}.")
        return ToolObservation(tool=ToolKind.GET_LIBRARY_DOCS, content=body)

    async def list_symbols(self, params: ListSymbolsInput) -> ToolObservation:
        if params.scope == "document":
            return await self._document_symbols(params.path or "")
        return await self._codebase_symbols(params.query or "")

    async def _document_symbols(self, path: str) -> ToolObservation:
        language = _symbol_language(path)
        if language is None:
            return ToolObservation(
                tool=ToolKind.LIST_SYMBOLS,
                content=f"unsupported: symbol listing is only available for Python and TypeScript/JavaScript files, not '{path}'.",
            )
        source = await self._read_text(path)
        symbols = python_symbols(source, path) if language == "python" else typescript_symbols(source)
        if not symbols:
            return ToolObservation(tool=ToolKind.LIST_SYMBOLS, content=f"No symbols found in {path}.")
        lines = [f"{kind} {name} (line {line})" for kind, name, line in symbols]
        return ToolObservation(tool=ToolKind.LIST_SYMBOLS, content=f"{path}\n" + "\n".join(lines))

    async def _codebase_symbols(self, query: str) -> ToolObservation:
        if not _IDENTIFIER_RE.match(query):
            raise ToolExecutionError(f"query must be a single identifier, got: {query!r}")
        name = query.replace("$", r"\$")
        pattern = (
            rf"^\s*(export\s+)?(default\s+)?(declare\s+)?(abstract\s+)?(async\s+)?"
            rf"(def|class|function|interface|type|enum|const|let|var)\s+{name}"
        )
        includes = " ".join(f"--include='*{suffix}'" for suffix in _PYTHON_SUFFIXES + _TYPESCRIPT_SUFFIXES)
        command = (
            f"grep -rnE {includes} --exclude-dir=node_modules --exclude-dir=.git "
            f"--exclude-dir=dist --exclude-dir=build {shlex.quote(pattern)} ."
        )
        exit_code, output = await self._run(command)
        if exit_code == 1:
            return ToolObservation(tool=ToolKind.LIST_SYMBOLS, content=f"No definitions of '{query}' found.")
        if exit_code != 0:
            raise ToolExecutionError(f"Symbol search failed (exit {exit_code}): {output.strip()[:300]}")
        lines: list[str] = []
        for raw in output.splitlines():
            path, _, rest = raw.partition(":")
            line, _, text = rest.partition(":")
            lines.append(f"{path.removeprefix('./')}:{line} {text.strip()}")
        return ToolObservation(tool=ToolKind.LIST_SYMBOLS, content="\n".join(lines))

    async def share_thought(self, params: ShareThoughtInput) -> ToolObservation:
        self.log.info("Agent thought: %s", params.message)
        return ToolObservation(
            tool=ToolKind.SHARE_THOUGHT,
            content="Thought recorded." if not params.evidence else f"Thought recorded with {len(params.evidence)} finding(s).",
            evidence=tuple(params.evidence),
        )

    def as_langchain_tools(self) -> list[StructuredTool]:
        """Expose every tool kind as a LangChain tool for ``bind_tools``."""
        return [self._langchain_tool(kind) for kind in ToolKind]

    def _langchain_tool(self, kind: ToolKind) -> StructuredTool:
        async def _run_tool(**kwargs: Any) -> str:
            arguments = {
                key: value.model_dump() if isinstance(value, BaseModel) else value
                for key, value in kwargs.items()
            }
            observation = await self.dispatch(kind.value, arguments)
            return observation.content

        return StructuredTool.from_function(
            coroutine=_run_tool,
            name=kind.value,
            description=TOOL_DESCRIPTIONS[kind],
            args_schema=TOOL_INPUT_MODELS[kind],
        )
