"""Claude CLI executor -- runs one prompt through `claude -p`.

The prompt goes to stdin; the CLI answers with a JSON document on stdout
(`--output-format json`). Conversation continuity uses `--resume <id>`
with the session id the previous call reported.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Any

from parley.config import Settings
from parley.context.errors import ExecutionFailure
from parley.context.schemas import ExecutionOutcome

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"Session ID: ([a-f0-9-]+)", re.IGNORECASE)


def build_system_note(metadata: dict[str, Any] | None) -> str:
    """Appended system prompt: who is talking, which part, carried context."""
    metadata = metadata or {}
    user_name = metadata.get("user_name")
    if user_name:
        note = f"User: {user_name} via Synology Chat. Be concise but helpful."
    else:
        note = "User is interacting via Synology Chat. Be concise but helpful."

    part, total = metadata.get("part"), metadata.get("total")
    if part and total:
        note += (
            f"\n\nThis message is part {part} of {total} of a long input that was "
            "split for size. Handle each part in order."
        )

    preamble = metadata.get("context_preamble")
    if preamble:
        note += (
            "\n\nEarlier conversation history was compacted. Context carried over:\n\n"
            f"{preamble}"
        )
    return note


def parse_cli_output(stdout: str) -> tuple[str, str | None, bool]:
    """Return (result text, session id, is_error) from CLI stdout.

    Non-JSON output is returned stripped with no session id.
    """
    try:
        parsed = json.loads(stdout)
    except json.JSONDecodeError:
        return stdout.strip(), None, False
    if not isinstance(parsed, dict):
        return stdout.strip(), None, False
    result = parsed.get("result") or parsed.get("content") or stdout
    if not isinstance(result, str):
        result = json.dumps(result)
    return result, parsed.get("session_id"), bool(parsed.get("is_error"))


class ClaudeCliExecutor:
    """Executor backed by the claude CLI in non-interactive print mode."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def build_args(self, continuation_handle: str | None, metadata: dict[str, Any] | None) -> list[str]:
        args = [self._settings.claude_cli_path, "-p"]
        if continuation_handle:
            args += ["--resume", continuation_handle]
        args += ["--output-format", "json"]
        args += ["--allowedTools", self._settings.allowed_tools]
        args += ["--append-system-prompt", build_system_note(metadata)]
        return args

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["PAI_DIR"] = self._settings.claude_home
        env["CLAUDE_CODE_ENTRYPOINT"] = self._settings.cli_entrypoint
        return env

    async def invoke(
        self,
        text: str,
        continuation_handle: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ExecutionOutcome:
        args = self.build_args(continuation_handle, metadata)
        timeout = self._settings.executor_timeout

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
            )
        except OSError as e:
            raise ExecutionFailure(f"Failed to start {args[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(text.encode("utf-8")), timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("CLI execution timed out after %gs", timeout)
            return ExecutionOutcome(
                succeeded=False,
                failure=f"Execution timeout ({timeout:g} seconds)",
            )
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")

        handle = continuation_handle
        match = _SESSION_ID_RE.search(stderr_text)
        if match:
            handle = match.group(1)

        if proc.returncode != 0:
            logger.warning("CLI exited with code %s: %s", proc.returncode, stderr_text.strip()[:500])
            return ExecutionOutcome(
                succeeded=False,
                output=stdout_text,
                failure=stderr_text.strip() or f"Claude exited with code {proc.returncode}",
            )

        result, parsed_handle, is_error = parse_cli_output(stdout_text)
        handle = parsed_handle or handle
        if is_error:
            return ExecutionOutcome(
                succeeded=False, output=result, continuation_handle=handle, failure=result
            )
        return ExecutionOutcome(succeeded=True, output=result, continuation_handle=handle)
