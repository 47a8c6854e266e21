from __future__ import annotations

from typing import Any

from foreman.backends.base import AgentBackend, JsonStreamDecoder, StreamDecoder


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", extra_args: list[str] | None = None) -> None:
        super().__init__(binary or "claude", extra_args)

    def build_command(self, prompt: str) -> list[str]:
        return [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            *self.extra_args,
        ]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        event_type = event.get("type")
        if event_type == "result":
            # The final result repeats the assistant text; only errors are new.
            result = event.get("result")
            if event.get("is_error") and isinstance(result, str):
                return result
            return ""

        message = event.get("message")
        content: Any = message.get("content") if isinstance(message, dict) else event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type", "text") == "text":
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    def decoder(self) -> StreamDecoder:
        return JsonStreamDecoder(self._extract_content)
