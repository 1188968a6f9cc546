"""
Model Capability

Adapter between stages and a langchain chat model. A stage only needs one
call: given its instruction, the conversation so far and the tools it may
use, return the next assistant message (text and/or tool calls).
"""

import threading
from typing import Dict, Protocol, Sequence, Tuple

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, SystemMessage
from langchain_core.tools import BaseTool


class ModelCapability(Protocol):
    def complete(
        self,
        instruction: str,
        history: Sequence[BaseMessage],
        tools: Sequence[BaseTool] = (),
    ) -> AIMessage:
        ...


def message_text(message: BaseMessage) -> str:
    """Plain text of a message, joining content blocks when needed."""
    content = message.content
    if isinstance(content, str):
        return content

    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class ChatModelCapability:
    """
    ModelCapability backed by a langchain chat model (ChatBedrockConverse in
    production). Tool bindings are cached per tool set.
    """

    def __init__(self, chat_model: BaseChatModel):
        self.chat_model = chat_model
        self._lock = threading.Lock()
        self._bound: Dict[Tuple[str, ...], object] = {}

    def _runnable_for(self, tools: Sequence[BaseTool]):
        if not tools:
            return self.chat_model

        key = tuple(tool.name for tool in tools)
        with self._lock:
            runnable = self._bound.get(key)
            if runnable is None:
                runnable = self.chat_model.bind_tools(list(tools))
                self._bound[key] = runnable
        return runnable

    def complete(
        self,
        instruction: str,
        history: Sequence[BaseMessage],
        tools: Sequence[BaseTool] = (),
    ) -> AIMessage:
        messages = [SystemMessage(content=instruction), *history]
        response = self._runnable_for(tools).invoke(messages)
        if not isinstance(response, AIMessage):
            response = AIMessage(content=message_text(response))
        return response
