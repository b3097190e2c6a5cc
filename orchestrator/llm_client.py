"""
Non-streaming chat completions client.

Used for the two request/response exchanges the orchestrator makes outside
the realtime channel: supervisor escalation and guardrail classification.
Talks to any OpenAI-compatible `/chat/completions` endpoint (Groq by default).
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from logging_setup import Component, get_logger


logger = get_logger(Component.LLM)


class LLMRequestError(Exception):
    """The completion request failed or returned something unusable."""


@dataclass
class ChatToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_message_part(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass
class ChatCompletion:
    text: str = ""
    tool_calls: List[ChatToolCall] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    def assistant_message(self) -> Dict[str, Any]:
        """The assistant turn to append to the message list before sending tool results."""
        message: Dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [c.to_message_part() for c in self.tool_calls]
        return message


def parse_completion(data: Dict[str, Any]) -> ChatCompletion:
    """Extract text and tool calls from a chat completions response body."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise LLMRequestError("response has no choices[0].message") from e

    tool_calls = []
    for part in message.get("tool_calls") or []:
        function = part.get("function") or {}
        raw_args = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            raise LLMRequestError(f"tool call arguments are not valid JSON: {e}") from e
        if not isinstance(arguments, dict):
            raise LLMRequestError("tool call arguments must be an object")
        tool_calls.append(ChatToolCall(
            id=part.get("id") or f"call_{len(tool_calls)}",
            name=function.get("name", ""),
            arguments=arguments,
        ))

    return ChatCompletion(text=message.get("content") or "", tool_calls=tool_calls, raw=data)


class ChatCompletionClient:
    """One model behind an OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        model: str,
        *,
        timeout_seconds: float = 30.0,
        temperature: Optional[float] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> ChatCompletion:
        endpoint = f"{self.api_base}/chat/completions"
        body: Dict[str, Any] = {"model": self.model, "messages": messages}
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        if response_format:
            body["response_format"] = response_format
        if self.temperature is not None:
            body["temperature"] = self.temperature

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start_ts = time.time()
        try:
            async with aiohttp.ClientSession() as s:
                async with s.post(
                    endpoint,
                    json=body,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as resp:
                    if not 200 <= resp.status < 300:
                        detail = (await resp.text())[:200]
                        raise LLMRequestError(f"HTTP {resp.status}: {detail}")
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as e:
            logger.warning(
                "Chat completion request failed",
                model=self.model,
                error=str(e),
                error_type=type(e).__name__,
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            raise LLMRequestError(f"{type(e).__name__}: {e}") from e

        completion = parse_completion(data)
        logger.debug(
            "Chat completion received",
            model=self.model,
            tool_calls=len(completion.tool_calls),
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return completion
