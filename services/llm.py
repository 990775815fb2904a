"""Chat model selection and streamed text generation."""
import asyncio
import logging
import os
from typing import Any, Callable, List, Optional, Sequence, Tuple

from langchain.chat_models import init_chat_model
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODEL = os.getenv("DEFAULT_CHAT_MODEL", "openai:gpt-4o-mini")

# Chat modes offered to users and the provider model behind each one.
CHAT_MODE_MODELS = {
    "gpt-4o-mini": "openai:gpt-4o-mini",
    "gpt-4.1": "openai:gpt-4.1",
    "gpt-4.1-mini": "openai:gpt-4.1-mini",
    "gpt-4.1-nano": "openai:gpt-4.1-nano",
    "o4-mini": "openai:o4-mini",
}

TokenCallback = Callable[[str, str], None]


class GenerationAborted(Exception):
    """Raised when the caller's abort signal fires mid-stream."""


def get_model_from_chat_mode(mode: Optional[str]) -> str:
    """Map a chat mode to a provider model id, falling back to the default model."""
    if not mode:
        return DEFAULT_CHAT_MODEL
    return CHAT_MODE_MODELS.get(mode, DEFAULT_CHAT_MODEL)


def get_chat_model(mode: Optional[str]) -> BaseChatModel:
    """Build the chat model for a mode."""
    return init_chat_model(get_model_from_chat_mode(mode))


def _split_chunk(chunk: Any) -> Tuple[str, str]:
    """Return (reasoning, text) carried by a streamed message chunk."""
    reasoning = ""
    text = ""
    content = chunk.content
    if isinstance(content, str):
        text = content
    elif isinstance(content, list):
        for block in content:
            if isinstance(block, str):
                text += block
            elif isinstance(block, dict):
                if block.get("type") == "text":
                    text += block.get("text", "")
                elif block.get("type") in ("reasoning", "thinking"):
                    reasoning += block.get("reasoning") or block.get("thinking") or ""

    extra = getattr(chunk, "additional_kwargs", None) or {}
    if isinstance(extra.get("reasoning_content"), str):
        reasoning += extra["reasoning_content"]
    return reasoning, text


async def generate_text(
    model: BaseChatModel,
    messages: Sequence[BaseMessage],
    signal: Optional[asyncio.Event] = None,
    on_reasoning: Optional[TokenCallback] = None,
    on_chunk: Optional[TokenCallback] = None,
) -> str:
    """
    Stream a completion and return the full answer text.

    Args:
        model: LangChain chat model.
        messages: Conversation including any system message.
        signal: Abort signal; once set, generation stops with GenerationAborted.
        on_reasoning: Called with (chunk, full_reasoning) for reasoning tokens.
        on_chunk: Called with (chunk, full_text) for answer tokens.

    Returns:
        The complete answer text.
    """
    full_text = ""
    full_reasoning = ""
    stream_messages: List[BaseMessage] = list(messages)

    async for chunk in model.astream(stream_messages):
        if signal is not None and signal.is_set():
            logger.info("Generation aborted by caller")
            raise GenerationAborted("Generation aborted")

        reasoning, text = _split_chunk(chunk)
        if reasoning:
            full_reasoning += reasoning
            if on_reasoning:
                on_reasoning(reasoning, full_reasoning)
        if text:
            full_text += text
            if on_chunk:
                on_chunk(text, full_text)

    return full_text
