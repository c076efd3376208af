"""
Wire translation for model backends.

Pure functions converting role-tagged history into each backend's request
shape and parsing the incremental lines each backend streams back. Nothing
here performs I/O, so every backend's protocol handling can be tested
without a network.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..protocols import ChatMessage, MessageRole

logger = logging.getLogger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


@dataclass(frozen=True)
class StreamLine:
    """One parsed server-sent-events line."""

    payload: Optional[Dict[str, Any]] = None
    done: bool = False


def to_openai_messages(history: Sequence[ChatMessage]) -> List[Dict[str, str]]:
    """OpenAI-compatible backends take the history as-is, system turns included."""
    return [message.to_dict() for message in history]


def split_system_prompt(
    history: Sequence[ChatMessage],
) -> Tuple[Optional[str], List[ChatMessage]]:
    """Separate system turns from conversation turns.

    Multiple system turns are joined with blank lines.
    """
    system_parts = [m.content for m in history if m.role is MessageRole.SYSTEM]
    turns = [m for m in history if m.role is not MessageRole.SYSTEM]
    system = "\n\n".join(part for part in system_parts if part) or None
    return system, turns


def to_anthropic_request(
    history: Sequence[ChatMessage], model: str, max_tokens: int = 4096
) -> Dict[str, Any]:
    """Build keyword arguments for an Anthropic messages request."""
    system, turns = split_system_prompt(history)
    request: Dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [m.to_dict() for m in turns],
    }
    if system:
        request["system"] = system
    return request


def to_gemini_request(history: Sequence[ChatMessage]) -> Dict[str, Any]:
    """Build a Gemini generateContent body.

    Gemini names the assistant role ``model`` and carries the system prompt
    in ``systemInstruction``.
    """
    system, turns = split_system_prompt(history)
    body: Dict[str, Any] = {
        "contents": [
            {
                "role": "model" if m.role is MessageRole.ASSISTANT else "user",
                "parts": [{"text": m.content}],
            }
            for m in turns
        ]
    }
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    return body


def to_ollama_request(history: Sequence[ChatMessage], model: str) -> Dict[str, Any]:
    return {
        "model": model,
        "messages": [m.to_dict() for m in history],
        "stream": True,
    }


def parse_sse_line(line: str) -> Optional[StreamLine]:
    """Parse one server-sent-events line.

    Returns None for blank lines, comments, non-data fields and payloads that
    are not JSON objects.
    """
    line = line.strip()
    if not line.startswith(SSE_DATA_PREFIX):
        return None

    data = line[len(SSE_DATA_PREFIX) :].strip()
    if data == SSE_DONE:
        return StreamLine(done=True)

    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Skipping non-JSON SSE payload: {data[:80]}")
        return None

    if not isinstance(payload, dict):
        return None
    return StreamLine(payload=payload)


def extract_openai_delta(payload: Dict[str, Any]) -> Optional[str]:
    """Text fragment of an OpenAI-compatible chat completion chunk."""
    choices = payload.get("choices") or []
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


def extract_gemini_text(payload: Dict[str, Any]) -> Optional[str]:
    """Text of the first candidate part of a Gemini stream event."""
    try:
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    return text if isinstance(text, str) and text else None


def parse_ollama_line(line: str) -> Tuple[Optional[str], bool]:
    """Parse one NDJSON line of an Ollama chat stream.

    Returns the text fragment (if any) and whether the stream is done.
    """
    line = line.strip()
    if not line:
        return None, False

    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Skipping non-JSON Ollama line: {line[:80]}")
        return None, False

    if not isinstance(payload, dict):
        return None, False

    message = payload.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    text = content if isinstance(content, str) and content else None
    return text, bool(payload.get("done", False))
