"""Conversion of recorded model output into content blocks and OpenAI responses."""

import json
import time
import uuid
from typing import Any, Literal

from openai.types.chat import ChatCompletion, ChatCompletionChunk
from pydantic import BaseModel, ConfigDict

from laminar_rollout.cache import CachedCallRecord

FINISH_REASON_ATTRIBUTE = "ai.response.finishReason"

_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool-calls": "tool_calls",
    "tool_calls": "tool_calls",
    "content-filter": "content_filter",
    "content_filter": "content_filter",
    "function_call": "function_call",
}


class TextContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ToolCallContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool-call"] = "tool-call"
    tool_call_id: str
    tool_name: str
    input: str


class ReasoningContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["reasoning"] = "reasoning"
    text: str


ContentBlock = TextContent | ToolCallContent | ReasoningContent


def _json_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def _convert_item(item: Any) -> list[ContentBlock]:
    if not isinstance(item, dict):
        return [TextContent(text=_json_text(item))]

    match item.get("type"):
        case "text":
            return [TextContent(text=item.get("text") or "")]
        case "tool-call" | "tool_call":
            arguments = item.get("input", item.get("arguments"))
            return [
                ToolCallContent(
                    tool_call_id=str(item.get("toolCallId") or item.get("id") or ""),
                    tool_name=str(item.get("toolName") or item.get("name") or ""),
                    input=_json_text(arguments),
                )
            ]
        case "reasoning":
            return [ReasoningContent(text=item.get("text") or "")]
    return [TextContent(text=json.dumps(item))]


def _convert_message(message: dict[str, Any]) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    content = message.get("content")
    if isinstance(content, str):
        try:
            parsed = json.loads(content)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            blocks.extend(block for entry in parsed for block in _convert_item(entry))
        elif content:
            blocks.append(TextContent(text=content))
    elif isinstance(content, list):
        blocks.extend(block for entry in content for block in _convert_item(entry))

    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        blocks.append(
            ToolCallContent(
                tool_call_id=str(call.get("id") or ""),
                tool_name=str(function.get("name") or ""),
                input=_json_text(function.get("arguments", {})),
            )
        )
    return blocks


def convert_to_content_blocks(output: str) -> list[ContentBlock]:
    """Convert a recorded ``output`` string into content blocks.

    Output that is not a JSON list or object is replayed as one text block.
    Chat messages (items with a ``role``) are unwrapped into their content
    and tool calls. Unknown items become their JSON text.
    """
    try:
        parsed = json.loads(output)
    except ValueError:
        return [TextContent(text=output)]

    if isinstance(parsed, dict):
        parsed = [parsed]
    if not isinstance(parsed, list):
        return [TextContent(text=output)]

    blocks: list[ContentBlock] = []
    for item in parsed:
        if isinstance(item, dict) and "role" in item:
            blocks.extend(_convert_message(item))
        else:
            blocks.extend(_convert_item(item))
    return blocks


def resolve_finish_reason(attributes: dict[str, Any], has_tool_calls: bool) -> str:
    """Map a recorded finish reason to an OpenAI ``finish_reason``. Defaults to ``stop``."""
    recorded = str(attributes.get(FINISH_REASON_ATTRIBUTE) or "stop")
    if mapped := _FINISH_REASONS.get(recorded):
        return mapped
    return "tool_calls" if has_tool_calls else "stop"


def _resolve_model(record: CachedCallRecord, model: str | None) -> str:
    return str(
        model
        or record.attributes.get("gen_ai.response.model")
        or record.attributes.get("gen_ai.request.model")
        or record.name
    )


def build_chat_completion(record: CachedCallRecord, model: str | None = None) -> ChatCompletion:
    """Synthesize an OpenAI ``ChatCompletion`` replaying ``record``. Usage is zero."""
    blocks = convert_to_content_blocks(record.output)
    text = "".join(block.text for block in blocks if isinstance(block, TextContent))
    reasoning = "".join(block.text for block in blocks if isinstance(block, ReasoningContent))
    tool_calls = [
        {
            "id": block.tool_call_id,
            "type": "function",
            "function": {"name": block.tool_name, "arguments": block.input},
        }
        for block in blocks
        if isinstance(block, ToolCallContent)
    ]

    message: dict[str, Any] = {
        "role": "assistant",
        "content": text or None,
        "tool_calls": tool_calls or None,
    }
    if reasoning:
        message["reasoning_content"] = reasoning

    return ChatCompletion.model_validate({
        "id": f"chatcmpl-cached-{uuid.uuid4().hex}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": _resolve_model(record, model),
        "choices": [
            {
                "index": 0,
                "finish_reason": resolve_finish_reason(record.attributes, bool(tool_calls)),
                "message": message,
                "logprobs": None,
            }
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    })


def build_chat_completion_chunks(record: CachedCallRecord, model: str | None = None) -> list[ChatCompletionChunk]:
    """Synthesize the ``ChatCompletionChunk`` stream replaying ``record``.

    One chunk per content block, in recorded order, the first one carrying
    the assistant role. A final chunk holds the finish reason and zero usage.
    """
    blocks = convert_to_content_blocks(record.output)
    deltas: list[dict[str, Any]] = []
    tool_call_index = 0
    for block in blocks:
        match block:
            case TextContent(text=text):
                deltas.append({"content": text})
            case ReasoningContent(text=text):
                deltas.append({"reasoning_content": text})
            case ToolCallContent():
                deltas.append({
                    "tool_calls": [
                        {
                            "index": tool_call_index,
                            "id": block.tool_call_id,
                            "type": "function",
                            "function": {"name": block.tool_name, "arguments": block.input},
                        }
                    ]
                })
                tool_call_index += 1
    if deltas:
        deltas[0]["role"] = "assistant"

    chunk_id = f"chatcmpl-cached-{uuid.uuid4().hex}"
    created = int(time.time())
    resolved_model = _resolve_model(record, model)

    def chunk(delta: dict[str, Any], finish_reason: str | None = None, **extra: Any) -> ChatCompletionChunk:
        return ChatCompletionChunk.model_validate({
            "id": chunk_id,
            "object": "chat.completion.chunk",
            "created": created,
            "model": resolved_model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason, "logprobs": None}],
            **extra,
        })

    chunks = [chunk(delta) for delta in deltas]
    chunks.append(
        chunk(
            {} if deltas else {"role": "assistant"},
            resolve_finish_reason(record.attributes, tool_call_index > 0),
            usage={"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        )
    )
    return chunks
