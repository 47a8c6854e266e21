from __future__ import annotations

from foreman.backends.base import AgentBackend

PROMPT_PLACEHOLDER = "{prompt}"


class CommandBackend(AgentBackend):
    """Runs an arbitrary executor from an argv template.

    The template is a list such as ``["my-agent", "--task", "{prompt}"]``.
    Every ``{prompt}`` placeholder is replaced by the prompt; when the template
    has none, the prompt is appended as the final argument.
    """

    name = "command"

    def __init__(self, template: list[str], extra_args: list[str] | None = None) -> None:
        if not template:
            raise ValueError("Command backend requires a non-empty command template.")
        super().__init__(template[0], extra_args)
        self.template = list(template)

    def build_command(self, prompt: str) -> list[str]:
        if not any(PROMPT_PLACEHOLDER in part for part in self.template):
            return [*self.template, *self.extra_args, prompt]
        rendered = [part.replace(PROMPT_PLACEHOLDER, prompt) for part in self.template]
        return [*rendered, *self.extra_args]
