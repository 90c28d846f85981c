"""Outgoing message formatting for Synology Chat.

Chat messages are capped at MAX_MESSAGE_LENGTH characters. Long replies
are packed paragraph by paragraph (line by line for oversized paragraphs)
and fenced code blocks are never split.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 3500

_CODE_BLOCK_RE = re.compile(r"```.*?```", re.DOTALL)
# NUL-delimited; literal "__CODE_BLOCK_n__" text in a reply is not a placeholder
_PLACEHOLDER_RE = re.compile(r"\x00CODE_BLOCK_(\d+)\x00")


def chunk_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Split a reply into chat-sized messages, with [i/n] prefixes when split."""
    code_blocks: list[str] = []

    def stash(match: re.Match[str]) -> str:
        code_blocks.append(match.group(0))
        return f"\x00CODE_BLOCK_{len(code_blocks) - 1}\x00"

    def restore(match: re.Match[str]) -> str:
        index = int(match.group(1))
        if index >= len(code_blocks):
            return match.group(0)
        block = code_blocks[index]
        if len(block) > max_length:
            logger.warning(
                "Code block %d is %d chars (exceeds %d limit but kept intact)",
                index, len(block), max_length,
            )
        return block

    with_placeholders = _CODE_BLOCK_RE.sub(stash, text)
    chunks = [_PLACEHOLDER_RE.sub(restore, c) for c in _pack(with_placeholders, max_length)]

    if len(chunks) > 1:
        return [f"[{i}/{len(chunks)}] {chunk}" for i, chunk in enumerate(chunks, start=1)]
    return chunks


def _pack(text: str, max_length: int) -> list[str]:
    if len(text) <= max_length:
        return [text]

    chunks: list[str] = []
    current = ""
    for para in text.split("\n\n"):
        if len(para) > max_length:
            if current:
                chunks.append(current.strip())
                current = ""
            for line in para.split("\n"):
                if len(current) + 1 + len(line) > max_length:
                    if current:
                        chunks.append(current.strip())
                    current = line
                else:
                    current = f"{current}\n{line}" if current else line
            continue

        if len(current) + 2 + len(para) > max_length:
            if current:
                chunks.append(current.strip())
            current = para
        else:
            current = f"{current}\n\n{para}" if current else para

    if current:
        chunks.append(current.strip())
    return chunks
