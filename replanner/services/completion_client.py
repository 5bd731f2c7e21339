"""
Completion client over the OpenAI chat completions API.

Four tiers share one request primitive:

``complete``                  single request/response, optional JSON mode
``complete_with_json_schema`` JSON mode + pydantic validation, one corrective retry
``complete_tool_loop``        model-driven tool execution, bounded by max iterations
``stream``                    text deltas, then one usage chunk, then ``done``

Every upstream failure is re-raised as ``CompletionRequestError`` whose message
is ``"<method> failed: <classified message>"``. Callers match on that text for
their own backoff policy, so the classified messages must not drift.
"""

import inspect
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Type, Union

import openai
from langsmith import traceable
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from replanner.config import Settings, settings
from replanner.schemas.completion import (
    CompletionResult,
    ContentBlock,
    ConversationTurn,
    DoneChunk,
    ResponseFormat,
    StreamChunk,
    StructuredResult,
    T,
    TextBlock,
    TextDeltaChunk,
    TokenUsage,
    ToolCompletionResult,
    ToolDefinition,
    ToolLoopResult,
    ToolResult,
    ToolUseBlock,
    UsageChunk,
    UsageStats,
)

logger = logging.getLogger("replanner")

# USD per million tokens
PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o-mini-2024-07-18": {"input": 0.15, "output": 0.60},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4o-2024-08-06": {"input": 2.50, "output": 10.00},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
}
DEFAULT_PRICING = {"input": 2.50, "output": 10.00}

JSON_INSTRUCTION = (
    "\n\nIMPORTANT: You must respond with ONLY valid JSON. "
    "Do not include any markdown code fences, explanatory text, or comments. "
    "Your entire response must be a single, parseable JSON object."
)

_STOP_REASONS = {
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "stop": "end_turn",
    "length": "max_tokens",
    "content_filter": "content_filter",
}

ExecuteToolFn = Callable[[str, Dict[str, Any]], Union[Any, Awaitable[Any]]]


# ==========================================
# ERRORS
# ==========================================

class CompletionError(Exception):
    """Base for every failure raised by the completion client."""

    def __init__(self, method: str, message: str):
        self.method = method
        super().__init__(f"{method} failed: {message}")


class CompletionUnavailableError(CompletionError):
    """AI disabled or no credential configured. Raised before any network call."""


class CompletionRequestError(CompletionError):
    """Upstream failure, classified into a stable message."""

    def __init__(self, method: str, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(method, message)


class CompletionValidationError(CompletionError):
    """Structured output still invalid after the corrective retry."""

    def __init__(self, method: str, errors: List[str], raw: str):
        self.errors = errors
        self.raw = raw
        super().__init__(method, "response failed validation after retry: " + "; ".join(errors))


# ==========================================
# PROMPT TEMPLATES
# ==========================================

class PromptTemplate:
    """``{{name}}`` placeholders, versioned so prompt changes can be traced."""

    def __init__(self, template: str, version: str):
        self.template = template
        self.version = version

    def render(self, **variables: Any) -> str:
        result = self.template
        for key, value in variables.items():
            result = result.replace("{{" + key + "}}", str(value))
        return result


# ==========================================
# CLIENT
# ==========================================

class CompletionClient:
    def __init__(self, config: Settings = settings, client: Optional[AsyncOpenAI] = None):
        self.model = config.ai_model
        self.max_tokens = config.ai_max_tokens
        self.temperature = config.ai_temperature
        self.timeout_seconds = config.ai_request_timeout_seconds
        self.max_iterations = config.ai_tool_loop_max_iterations
        self._enabled = config.ai_enabled
        self._client: Optional[AsyncOpenAI] = None
        self._stats = UsageStats()

        if self._enabled:
            if not config.openai_api_key:
                logger.warning(
                    "completion_client_missing_credential",
                    extra={"detail": "ai_enabled is true but openai_api_key is not configured"},
                )
                self._enabled = False
            else:
                self._client = client or AsyncOpenAI(
                    api_key=config.openai_api_key,
                    timeout=self.timeout_seconds,
                    max_retries=config.ai_max_retries,
                )

    def is_available(self) -> bool:
        return self._enabled and self._client is not None

    def get_usage_stats(self) -> UsageStats:
        return self._stats.model_copy()

    # ------------------------------------------------------------------
    # complete
    # ------------------------------------------------------------------

    @traceable(run_type="llm", name="complete")
    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        conversation_history: Optional[Sequence[ConversationTurn]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        response_format: ResponseFormat = "text",
    ) -> CompletionResult:
        self._assert_available("complete")

        messages = self._build_messages(user_message, conversation_history)
        params = self._build_params(system_prompt, messages, max_tokens, temperature, response_format)
        started = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(**params)
            content = self._extract_text(response)
        except Exception as exc:
            raise self._wrap_error(exc, "complete") from exc

        latency_ms = int((time.perf_counter() - started) * 1000)
        usage = self._usage_from(response.usage)
        self._record_usage(usage)
        logger.info(
            "completion_finished",
            extra={
                "model": response.model,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "latency_ms": latency_ms,
            },
        )
        return CompletionResult(content=content, usage=usage, latency_ms=latency_ms, model=response.model)

    # ------------------------------------------------------------------
    # complete_with_json_schema
    # ------------------------------------------------------------------

    @traceable(run_type="chain", name="complete_with_json_schema")
    async def complete_with_json_schema(
        self,
        system_prompt: str,
        user_message: str,
        schema: Type[T],
        conversation_history: Optional[Sequence[ConversationTurn]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> StructuredResult[T]:
        history = list(conversation_history or [])
        message = user_message
        usage = TokenUsage()
        latency_ms = 0
        errors: List[str] = []
        raw = ""

        for attempt in range(2):
            result = await self.complete(
                system_prompt,
                message,
                conversation_history=history,
                max_tokens=max_tokens,
                temperature=temperature,
                response_format="json",
            )
            usage = usage + result.usage
            latency_ms += result.latency_ms
            raw = result.content

            data, errors = self._parse_structured(raw, schema)
            if data is not None:
                return StructuredResult(data=data, usage=usage, latency_ms=latency_ms, attempts=attempt + 1)

            if attempt == 0:
                logger.warning("structured_output_invalid", extra={"errors": errors, "schema": schema.__name__})
                history = history + [
                    ConversationTurn(role="user", content=message),
                    ConversationTurn(role="assistant", content=raw),
                ]
                message = (
                    "Your previous JSON response failed validation:\n"
                    + "\n".join(f"  - {e}" for e in errors)
                    + "\n\nCorrect the JSON and resend it. Respond with only the raw JSON object, "
                    "no explanation and no markdown formatting."
                )

        raise CompletionValidationError("complete_with_json_schema", errors, raw)

    # ------------------------------------------------------------------
    # tools
    # ------------------------------------------------------------------

    @traceable(run_type="llm", name="complete_with_tools")
    async def complete_with_tools(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        tools: Optional[Sequence[ToolDefinition]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> ToolCompletionResult:
        """One request over a prepared message list. Returns typed content blocks."""
        self._assert_available("complete_with_tools")

        params = self._build_params(system_prompt, messages, max_tokens, temperature, "text")
        if tools:
            params["tools"] = [self._tool_param(t) for t in tools]
        started = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(**params)
            choice = response.choices[0]
            blocks = self._content_blocks(choice.message)
        except Exception as exc:
            raise self._wrap_error(exc, "complete_with_tools") from exc

        usage = self._usage_from(response.usage)
        self._record_usage(usage)
        return ToolCompletionResult(
            content=blocks,
            usage=usage,
            latency_ms=int((time.perf_counter() - started) * 1000),
            model=response.model,
            stop_reason=_STOP_REASONS.get(choice.finish_reason or "stop", "end_turn"),
        )

    @traceable(run_type="chain", name="complete_tool_loop")
    async def complete_tool_loop(
        self,
        system_prompt: str,
        user_message: str,
        tools: Sequence[ToolDefinition],
        execute_tool_fn: ExecuteToolFn,
        max_iterations: Optional[int] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> ToolLoopResult:
        rounds = max_iterations if max_iterations is not None else self.max_iterations
        messages: List[Dict[str, Any]] = [{"role": "user", "content": user_message}]
        tool_results: List[ToolResult] = []
        total = TokenUsage()

        for _ in range(rounds):
            response = await self.complete_with_tools(system_prompt, messages, tools, max_tokens, temperature)
            total = total + response.usage

            calls = [b for b in response.content if isinstance(b, ToolUseBlock)]
            if response.stop_reason != "tool_use" or not calls:
                return ToolLoopResult(
                    final_text=_join_text(response.content), tool_results=tool_results, total_usage=total
                )

            messages.append(_assistant_message(response.content))
            for call in calls:
                outcome = await self._run_tool(execute_tool_fn, call)
                tool_results.append(outcome)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": outcome.result})

        logger.warning("tool_loop_max_iterations", extra={"max_iterations": rounds})
        final = await self.complete_with_tools(system_prompt, messages, None, max_tokens, temperature)
        total = total + final.usage
        return ToolLoopResult(final_text=_join_text(final.content), tool_results=tool_results, total_usage=total)

    async def _run_tool(self, execute_tool_fn: ExecuteToolFn, call: ToolUseBlock) -> ToolResult:
        try:
            value = execute_tool_fn(call.name, call.input)
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:
            logger.warning("tool_failed", extra={"tool": call.name, "error": str(exc)})
            return ToolResult(tool_name=call.name, tool_call_id=call.id, result=f"Error: {exc}", is_error=True)

        logger.info("tool_executed", extra={"tool": call.name})
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        return ToolResult(tool_name=call.name, tool_call_id=call.id, result=text)

    # ------------------------------------------------------------------
    # stream
    # ------------------------------------------------------------------

    @traceable(run_type="llm", name="stream")
    async def stream(
        self,
        system_prompt: str,
        user_message: str,
        conversation_history: Optional[Sequence[ConversationTurn]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        response_format: ResponseFormat = "text",
    ) -> AsyncIterator[StreamChunk]:
        self._assert_available("stream")

        messages = self._build_messages(user_message, conversation_history)
        params = self._build_params(system_prompt, messages, max_tokens, temperature, response_format)
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}

        input_tokens = 0
        output_tokens = 0
        usage_seen = False
        try:
            events = await self._client.chat.completions.create(**params)
            async for event in events:
                if event.usage is not None:
                    if not usage_seen:
                        input_tokens = event.usage.prompt_tokens or 0
                        usage_seen = True
                    output_tokens = event.usage.completion_tokens or 0
                for choice in event.choices:
                    if choice.delta is not None and choice.delta.content:
                        yield TextDeltaChunk(content=choice.delta.content)
        except Exception as exc:
            raise self._wrap_error(exc, "stream") from exc

        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        self._record_usage(usage)
        yield UsageChunk(usage=usage)
        yield DoneChunk()

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _assert_available(self, method: str) -> None:
        if not self.is_available():
            raise CompletionUnavailableError(
                method,
                "AI service is unavailable. Either ai_enabled is false or "
                "openai_api_key is not configured.",
            )

    def _build_messages(
        self, user_message: str, conversation_history: Optional[Sequence[ConversationTurn]]
    ) -> List[Dict[str, Any]]:
        messages = [{"role": turn.role, "content": turn.content} for turn in conversation_history or []]
        messages.append({"role": "user", "content": user_message})
        return messages

    def _build_params(
        self,
        system_prompt: str,
        messages: List[Dict[str, Any]],
        max_tokens: Optional[int],
        temperature: Optional[float],
        response_format: ResponseFormat,
    ) -> Dict[str, Any]:
        system = system_prompt + JSON_INSTRUCTION if response_format == "json" else system_prompt
        params: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens if max_tokens is not None else self.max_tokens,
            "temperature": temperature if temperature is not None else self.temperature,
            "messages": [{"role": "system", "content": system}, *messages],
        }
        if response_format == "json":
            params["response_format"] = {"type": "json_object"}
        return params

    @staticmethod
    def _tool_param(tool: ToolDefinition) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": tool.name, "description": tool.description, "parameters": tool.input_schema},
        }

    @staticmethod
    def _extract_text(response) -> str:
        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice is not None else None
        if not content:
            finish = choice.finish_reason if choice is not None else None
            raise ValueError(f"response contained no text content (finish reason: {finish})")
        return content

    @staticmethod
    def _content_blocks(message) -> List[ContentBlock]:
        blocks: List[ContentBlock] = []
        if message.content:
            blocks.append(TextBlock(text=message.content))
        for call in message.tool_calls or []:
            arguments = json.loads(call.function.arguments or "{}")
            blocks.append(ToolUseBlock(id=call.id, name=call.function.name, input=arguments))
        return blocks

    @staticmethod
    def _usage_from(usage) -> TokenUsage:
        if usage is None:
            return TokenUsage()
        return TokenUsage(input_tokens=usage.prompt_tokens or 0, output_tokens=usage.completion_tokens or 0)

    @staticmethod
    def _parse_structured(raw: str, schema: Type[T]):
        cleaned = _strip_code_fence(raw)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            return None, [f"(root): invalid JSON: {exc.msg} at line {exc.lineno} column {exc.colno}"]
        try:
            return schema.model_validate(parsed), []
        except ValidationError as exc:
            return None, [
                f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}" for err in exc.errors()
            ]

    def _record_usage(self, usage: TokenUsage) -> None:
        pricing = PRICING.get(self.model, DEFAULT_PRICING)
        self._stats.total_requests += 1
        self._stats.total_input_tokens += usage.input_tokens
        self._stats.total_output_tokens += usage.output_tokens
        self._stats.estimated_cost += (
            usage.input_tokens / 1_000_000 * pricing["input"] + usage.output_tokens / 1_000_000 * pricing["output"]
        )

    def _wrap_error(self, exc: BaseException, method: str) -> CompletionRequestError:
        status_code = None
        if isinstance(exc, openai.APIStatusError):
            status_code = exc.status_code
            if status_code == 401:
                reason = "Authentication failed"
            elif status_code == 429:
                reason = "Rate limit exceeded"
            elif status_code in (503, 529):
                reason = "Service overloaded or unavailable"
            elif 400 <= status_code < 500:
                reason = f"Bad request: {exc.message}"
            else:
                reason = f"Provider error (HTTP {status_code}): {exc.message}"
        elif isinstance(exc, openai.APITimeoutError):
            reason = f"Request timed out after {self.timeout_seconds}s"
        elif isinstance(exc, openai.APIConnectionError):
            reason = f"Failed to connect: {exc.message}"
        elif str(exc):
            reason = f"Unexpected error: {exc}"
        else:
            reason = f"Unknown error occurred ({type(exc).__name__})"

        logger.error("completion_request_failed", extra={"method": method, "status_code": status_code, "reason": reason})
        return CompletionRequestError(method, reason, status_code=status_code)


def _strip_code_fence(raw: str) -> str:
    cleaned = raw.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _join_text(blocks: Sequence[ContentBlock]) -> str:
    parts = []
    for block in blocks:
        if isinstance(block, TextBlock):
            parts.append(block.text)
        elif isinstance(block, ToolUseBlock):
            continue
        else:
            raise TypeError(f"unhandled content block: {block!r}")
    return "".join(parts)


def _assistant_message(blocks: Sequence[ContentBlock]) -> Dict[str, Any]:
    """Rebuild the provider's assistant turn so tool results can reference its calls."""
    text = _join_text(blocks)
    return {
        "role": "assistant",
        "content": text or None,
        "tool_calls": [
            {
                "id": b.id,
                "type": "function",
                "function": {"name": b.name, "arguments": json.dumps(b.input)},
            }
            for b in blocks
            if isinstance(b, ToolUseBlock)
        ],
    }
