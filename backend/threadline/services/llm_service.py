"""
LLM service: streams completions from an OpenAI-compatible API as deltas.
"""

from openai import AsyncOpenAI
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
import json
import logging
import re

import aiohttp

from ..config import settings
from ..schemas.message import ChatMessage, DeltaType, GenerationOptions, StreamDelta


logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass
class ToolSpec:
    """A tool the model may call while browsing is enabled."""
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ThinkTagSplitter:
    """Separates ``<think>...</think>`` spans from answer text.

    Tags may arrive split across chunks, so a trailing fragment that could
    still become a tag is held back until the next chunk decides it.
    """

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self):
        self._buffer = ""
        self._inside = False

    def feed(self, text: str) -> List[Tuple[DeltaType, str]]:
        self._buffer += text
        parts: List[Tuple[DeltaType, str]] = []
        while self._buffer:
            tag = self.CLOSE if self._inside else self.OPEN
            kind = DeltaType.REASONING if self._inside else DeltaType.TEXT
            index = self._buffer.find(tag)
            if index >= 0:
                if index:
                    parts.append((kind, self._buffer[:index]))
                self._buffer = self._buffer[index + len(tag):]
                self._inside = not self._inside
                continue

            keep = _partial_tag_length(self._buffer, tag)
            cut = len(self._buffer) - keep
            if cut:
                parts.append((kind, self._buffer[:cut]))
            self._buffer = self._buffer[cut:]
            break
        return parts

    def flush(self) -> List[Tuple[DeltaType, str]]:
        if not self._buffer:
            return []
        kind = DeltaType.REASONING if self._inside else DeltaType.TEXT
        text, self._buffer = self._buffer, ""
        return [(kind, text)]


def _partial_tag_length(text: str, tag: str) -> int:
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


@dataclass
class _PendingCall:
    id: str
    name: str = ""
    arguments: str = ""
    announced: bool = False

    def parsed_args(self) -> Any:
        if not self.arguments:
            return {}
        try:
            return json.loads(self.arguments)
        except json.JSONDecodeError:
            return {"raw": self.arguments}


@dataclass
class _StepResult:
    finish_reason: Optional[str] = None
    total_tokens: int = 0
    text: str = ""
    calls: Dict[int, _PendingCall] = field(default_factory=dict)


class LLMService:
    """Model provider backed by an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_base: Optional[str] = None,
        model_id: Optional[str] = None,
        api_key: Optional[str] = None,
        tools: Sequence[ToolSpec] = (),
        max_tool_steps: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_base = api_base or settings.DEFAULT_API_BASE
        self.model_id = model_id or settings.DEFAULT_MODEL_ID
        self.api_key = api_key or settings.DEFAULT_API_KEY or "not-needed"  # local servers often skip auth
        self.tools = {tool.name: tool for tool in tools}
        self.max_tool_steps = settings.MAX_TOOL_STEPS if max_tool_steps is None else max_tool_steps

        self.client = client or AsyncOpenAI(
            base_url=self.api_base,
            api_key=self.api_key
        )

    async def list_models(self) -> List[Dict[str, Any]]:
        """List available models from the LLM API."""
        response = await self.client.models.list()
        return [
            {
                "id": model.id,
                "owned_by": getattr(model, "owned_by", "unknown"),
                "created": getattr(model, "created", None),
            }
            for model in response.data
        ]

    def _build_message_content(self, message: ChatMessage) -> Any:
        """Plain string, or content parts when the message carries images."""
        images = [a for a in message.attachments if a.content_type.startswith("image/")]
        if not images:
            return message.content

        parts: List[Dict[str, Any]] = [
            {"type": "image_url", "image_url": {"url": image.url}} for image in images
        ]
        if message.content:
            parts.append({"type": "text", "text": message.content})
        return parts

    def _build_messages(
        self, history: Sequence[ChatMessage], options: GenerationOptions
    ) -> List[Dict[str, Any]]:
        """Build the full message list for the API call."""
        messages: List[Dict[str, Any]] = []

        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})

        for message in history:
            if message.role == "assistant" and not message.content and not message.tool_invocations:
                # placeholders and empty partials carry nothing for the model
                continue
            messages.append({
                "role": message.role,
                "content": self._build_message_content(message),
            })
        return messages

    async def stream(
        self, history: Sequence[ChatMessage], options: GenerationOptions
    ) -> AsyncGenerator[StreamDelta, None]:
        """Stream one generation as deltas, running tools between rounds.

        Provider errors propagate; the caller decides how to surface them.
        """
        messages = self._build_messages(history, options)
        use_tools = options.enable_browsing and bool(self.tools)
        total_tokens = 0
        step = 0

        while True:
            offer_tools = use_tools and step < self.max_tool_steps
            result = _StepResult()
            async for delta in self._stream_step(messages, options, offer_tools, result):
                yield delta
            total_tokens += result.total_tokens

            if not result.calls or not offer_tools:
                yield StreamDelta(
                    type=DeltaType.DONE,
                    finish_reason=result.finish_reason or "stop",
                    token_count=total_tokens,
                )
                return

            step += 1
            logger.info("Tool round %d: %s", step, ", ".join(c.name for c in result.calls.values()))
            messages.append({
                "role": "assistant",
                "content": result.text or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments or "{}"},
                    }
                    for call in result.calls.values()
                ],
            })
            for call in result.calls.values():
                output = await self._run_tool(call)
                yield StreamDelta(
                    type=DeltaType.TOOL_RESULT,
                    tool_call_id=call.id,
                    tool_name=call.name,
                    result=output,
                    state="result",
                )
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": output if isinstance(output, str) else json.dumps(output),
                })

    async def _stream_step(
        self,
        messages: List[Dict[str, Any]],
        options: GenerationOptions,
        offer_tools: bool,
        result: _StepResult,
    ) -> AsyncGenerator[StreamDelta, None]:
        kwargs: Dict[str, Any] = {
            "model": options.model_id or self.model_id,
            "messages": messages,
            "temperature": options.temperature if options.temperature is not None else settings.DEFAULT_TEMPERATURE,
            "max_tokens": options.max_tokens or settings.DEFAULT_MAX_TOKENS,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if offer_tools:
            kwargs["tools"] = [tool.to_openai() for tool in self.tools.values()]
        if options.enable_thinking:
            kwargs["extra_body"] = {"chat_template_kwargs": {"enable_thinking": True}}

        splitter = ThinkTagSplitter()
        stream = await self.client.chat.completions.create(**kwargs)

        async for chunk in stream:
            usage = getattr(chunk, "usage", None)
            if usage is not None and getattr(usage, "total_tokens", None):
                result.total_tokens = usage.total_tokens
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            reasoning: List[StreamDelta] = []
            tools: List[StreamDelta] = []
            text: List[StreamDelta] = []

            reasoning_content = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
            if reasoning_content:
                reasoning.append(StreamDelta(type=DeltaType.REASONING, content=reasoning_content))

            for tool_call in getattr(delta, "tool_calls", None) or []:
                announced = self._collect_tool_call(tool_call, result)
                if announced is not None:
                    tools.append(announced)

            if delta.content:
                result.text += delta.content
                for kind, piece in splitter.feed(delta.content):
                    (reasoning if kind == DeltaType.REASONING else text).append(
                        StreamDelta(type=kind, content=piece)
                    )

            if choice.finish_reason:
                result.finish_reason = choice.finish_reason

            for item in reasoning + tools + text:
                yield item

        for kind, piece in splitter.flush():
            yield StreamDelta(type=kind, content=piece)

        for call in result.calls.values():
            yield StreamDelta(
                type=DeltaType.TOOL_CALL,
                tool_call_id=call.id,
                tool_name=call.name,
                args=call.parsed_args(),
                state="call",
            )

    def _collect_tool_call(self, tool_call: Any, result: _StepResult) -> Optional[StreamDelta]:
        """Accumulate a streamed tool-call fragment; announce the call on first sight."""
        index = getattr(tool_call, "index", None)
        if index is None:
            index = len(result.calls)
        pending = result.calls.get(index)
        if pending is None:
            pending = _PendingCall(id=getattr(tool_call, "id", None) or f"call_{index}")
            result.calls[index] = pending
        elif getattr(tool_call, "id", None) and pending.id.startswith("call_") and not pending.announced:
            pending.id = tool_call.id

        function = getattr(tool_call, "function", None)
        if function is not None:
            if getattr(function, "name", None):
                pending.name += function.name
            if getattr(function, "arguments", None):
                pending.arguments += function.arguments

        if pending.announced or not pending.name:
            return None
        pending.announced = True
        return StreamDelta(
            type=DeltaType.TOOL_CALL,
            tool_call_id=pending.id,
            tool_name=pending.name,
            state="partial-call",
        )

    async def _run_tool(self, call: _PendingCall) -> Any:
        tool = self.tools.get(call.name)
        if tool is None:
            logger.warning("Model called unknown tool %s", call.name)
            return {"error": f"Unknown tool: {call.name}"}
        try:
            return await tool.handler(call.parsed_args())
        except Exception as e:
            # the model sees the failure and can answer without the tool
            logger.warning("Tool %s failed: %s", call.name, e)
            return {"error": str(e)}


_TAG_RE = re.compile(r"<(script|style)[^>]*>[\s\S]*?</\1>|<[^>]+>", re.IGNORECASE)


async def fetch_page(args: Dict[str, Any]) -> Dict[str, Any]:
    """Fetch a web page and return its visible text, truncated."""
    url = args.get("url")
    if not url or not str(url).startswith(("http://", "https://")):
        return {"error": "A full http(s) URL is required."}

    async with aiohttp.ClientSession() as session:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=15)) as response:
            body = await response.text(errors="replace")
            text = re.sub(r"\s+", " ", _TAG_RE.sub(" ", body)).strip()
            return {"url": url, "status": response.status, "text": text[:8000]}


FETCH_PAGE_TOOL = ToolSpec(
    name="fetch_page",
    description="Fetch a web page by URL and return its text content.",
    parameters={
        "type": "object",
        "properties": {"url": {"type": "string", "description": "Absolute http(s) URL"}},
        "required": ["url"],
    },
    handler=fetch_page,
)
