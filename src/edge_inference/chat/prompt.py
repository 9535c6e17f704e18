"""
Augmented prompt assembly.

The prompt sent to the generator is, in order:

1. one system message: the session's system prompt followed by the retrieved
   document texts in ranked order (omitted when nothing was retrieved)
2. the session history (possibly limited to the most recent messages)
3. the new user message

The context block is rendered with a Jinja2 template so that it can be
customized per orchestrator.
"""

from typing import List, Optional, Sequence

from jinja2 import BaseLoader, Environment, StrictUndefined

from ..storage.vector_store import ScoredDocument
from .session import ChatMessage, ChatSession

DEFAULT_CONTEXT_TEMPLATE = """{{ system_prompt }}
{%- if documents %}

Context information:
{% for doc in documents %}
{{ doc.text }}
{% endfor %}
{%- endif %}"""

_jinja_env = Environment(
    loader=BaseLoader(),
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)


class PromptBuilder:
    """
    Renders the system message and assembles the message list for a turn.

    Args:
        template: Jinja2 source receiving ``system_prompt`` and ``documents``
            (ScoredDocument list, best first).
    """

    def __init__(self, template: Optional[str] = None):
        self.template_source = template or DEFAULT_CONTEXT_TEMPLATE
        self._template = _jinja_env.from_string(self.template_source)

    def render_system(self, system_prompt: str, documents: Sequence[ScoredDocument] = ()) -> str:
        return self._template.render(system_prompt=system_prompt, documents=list(documents)).strip()

    def build(
        self,
        session: ChatSession,
        user_message: str,
        documents: Sequence[ScoredDocument] = (),
    ) -> List[ChatMessage]:
        """
        Assemble the messages for one turn.

        >>> builder = PromptBuilder()
        >>> [m.role.value for m in builder.build(session, "hi")]
        ['system', 'user']
        """
        messages = [ChatMessage.system(self.render_system(session.system_prompt, documents))]
        messages.extend(session.recent_history())
        messages.append(ChatMessage.user(user_message))
        return messages


def render_prompt(messages: Sequence[ChatMessage]) -> str:
    """Flatten a message list to text, for logging and inspection."""
    return "\n\n".join(f"[{m.role.value}]\n{m.content}" for m in messages)


__all__ = ["DEFAULT_CONTEXT_TEMPLATE", "PromptBuilder", "render_prompt"]
