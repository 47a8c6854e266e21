from __future__ import annotations

from typing import Any

from foreman.backends.base import AgentBackend, JsonStreamDecoder, StreamDecoder

# `codex exec --json` event types that carry text meant for the reader.
_TEXT_ITEMS = {"agent_message", "error"}
_TEXT_MSGS = {"agent_message", "error", "stream_error"}


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", extra_args: list[str] | None = None) -> None:
        super().__init__(binary or "codex", extra_args)

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "exec", "--json", *self.extra_args, prompt]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            text = item.get("text") or item.get("message")
            return text if item.get("type") in _TEXT_ITEMS and isinstance(text, str) else ""

        # Older releases wrap every event in a "msg" object.
        msg = event.get("msg")
        if isinstance(msg, dict):
            text = msg.get("message")
            return text if msg.get("type") in _TEXT_MSGS and isinstance(text, str) else ""

        message = event.get("message")
        return message if isinstance(message, str) else ""

    def decoder(self) -> StreamDecoder:
        return JsonStreamDecoder(self._extract_content)
