"""
Builders shared by the test modules: a sample schedule, proposals, and a fake
OpenAI client that replays queued responses instead of calling the network.
"""

import copy
import json
import uuid
from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import openai
from openai.types.chat import ChatCompletion, ChatCompletionChunk

from replanner.config import Settings
from replanner.models import Schedule, Task, TaskStatus
from replanner.schemas.reschedule import EstimatedImpact, ProposalStatus, ProposedChange, RescheduleProposal

MODEL = "gpt-4o-mini-2024-07-18"
_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def ai_settings(**overrides) -> Settings:
    values = {"ai_enabled": True, "openai_api_key": "sk-test"}
    values.update(overrides)
    return Settings(**values)


# ==========================================
# FAKE OPENAI
# ==========================================

class FakeCompletions:
    def __init__(self):
        self.queued: List[Any] = []
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *items) -> None:
        self.queued.extend(items)

    async def create(self, **kwargs):
        self.calls.append(copy.deepcopy(kwargs))
        item = self.queued.pop(0)
        if isinstance(item, BaseException):
            raise item
        if kwargs.get("stream"):
            return _replay(item)
        return item


async def _replay(chunks):
    for chunk in chunks:
        yield chunk


class FakeOpenAI:
    def __init__(self):
        self.completions = FakeCompletions()
        self.chat = SimpleNamespace(completions=self.completions)


def chat_response(
    content: Optional[str] = "ok",
    prompt_tokens: int = 10,
    completion_tokens: int = 5,
    finish_reason: str = "stop",
    tool_calls: Optional[List[Dict[str, Any]]] = None,
) -> ChatCompletion:
    message: Dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return ChatCompletion.model_validate(
        {
            "id": f"chatcmpl-{uuid.uuid4().hex[:8]}",
            "object": "chat.completion",
            "created": 1_700_000_000,
            "model": MODEL,
            "choices": [{"index": 0, "finish_reason": finish_reason, "message": message, "logprobs": None}],
            "usage": {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        }
    )


def json_response(payload: Any, **kwargs) -> ChatCompletion:
    return chat_response(payload if isinstance(payload, str) else json.dumps(payload), **kwargs)


def tool_call(call_id: str, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(arguments)}}


def tool_use_response(*calls, **kwargs) -> ChatCompletion:
    return chat_response(content=None, finish_reason="tool_calls", tool_calls=list(calls), **kwargs)


def stream_chunk(content: Optional[str] = None, usage: Optional[Dict[str, int]] = None, finish_reason=None):
    choices = []
    if content is not None or finish_reason is not None:
        choices.append({"index": 0, "delta": {"content": content}, "finish_reason": finish_reason})
    data: Dict[str, Any] = {
        "id": "chatcmpl-stream",
        "object": "chat.completion.chunk",
        "created": 1_700_000_000,
        "model": MODEL,
        "choices": choices,
    }
    if usage is not None:
        data["usage"] = {**usage, "total_tokens": usage["prompt_tokens"] + usage["completion_tokens"]}
    return ChatCompletionChunk.model_validate(data)


def status_error(status_code: int, message: str = "boom") -> openai.APIStatusError:
    return openai.APIStatusError(message, response=httpx.Response(status_code, request=_REQUEST), body=None)


def timeout_error() -> openai.APITimeoutError:
    return openai.APITimeoutError(request=_REQUEST)


def connection_error(message: str = "connection refused") -> openai.APIConnectionError:
    return openai.APIConnectionError(message=message, request=_REQUEST)


# ==========================================
# SCHEDULE DATA
# ==========================================

def noon(day: date) -> datetime:
    return datetime.combine(day, time(12), tzinfo=timezone.utc)


def sample_schedule(today: date):
    """
    Five tasks around ``today`` (evaluated at noon):

    t1 Foundation   critical, 10% after 20.5 of 30 days -> 175 days late, critical
    t2 Framing      waits on t1, not started yet
    t3 Electrical   40% after 10.5 of 20 days           -> 7 days late, low
    t4 Permits      completed
    t5 Landscaping  on track
    """
    d = lambda n: today + timedelta(days=n)  # noqa: E731
    schedule = Schedule(id="s1", name="House build", start_date=d(-40), end_date=d(60))
    tasks = [
        Task(
            id="t1",
            schedule_id="s1",
            name="Foundation",
            status=TaskStatus.in_progress,
            start_date=d(-20),
            end_date=d(10),
            progress_percentage=10,
            is_critical_path=True,
        ),
        Task(
            id="t2",
            schedule_id="s1",
            name="Framing",
            start_date=d(11),
            end_date=d(30),
            dependency="t1",
            is_critical_path=True,
        ),
        Task(
            id="t3",
            schedule_id="s1",
            name="Electrical",
            status=TaskStatus.in_progress,
            start_date=d(-10),
            end_date=d(10),
            progress_percentage=40,
        ),
        Task(
            id="t4",
            schedule_id="s1",
            name="Permits",
            status=TaskStatus.completed,
            start_date=d(-40),
            end_date=d(-30),
            progress_percentage=100,
        ),
        Task(
            id="t5",
            schedule_id="s1",
            name="Landscaping",
            status=TaskStatus.in_progress,
            start_date=d(-5),
            end_date=d(25),
            progress_percentage=20,
        ),
    ]
    return schedule, tasks


def change(task_id: str, start: date, end: date, name: Optional[str] = None, **kwargs) -> ProposedChange:
    return ProposedChange(
        task_id=task_id,
        task_name=name or task_id,
        proposed_start_date=start,
        proposed_end_date=end,
        reason="Shifted to absorb the delay.",
        **kwargs,
    )


def make_proposal(
    schedule_id: str,
    changes: List[ProposedChange],
    proposal_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
    end_date: date = date(2030, 1, 1),
) -> RescheduleProposal:
    return RescheduleProposal(
        id=proposal_id or f"rp-{uuid.uuid4().hex}",
        schedule_id=schedule_id,
        status=ProposalStatus.pending,
        proposed_changes=changes,
        rationale="Move the delayed work.",
        estimated_impact=EstimatedImpact(
            original_end_date=end_date,
            proposed_end_date=end_date,
            days_change=0,
            critical_path_impact="None.",
        ),
        created_at=created_at or datetime.now(timezone.utc),
    )


def model_answer(today: date, extra_changes=()) -> Dict[str, Any]:
    """A well-formed reschedule answer for ``sample_schedule``."""
    d = lambda n: (today + timedelta(days=n)).isoformat()  # noqa: E731
    return {
        "proposed_changes": [
            {
                "task_id": "t1",
                "task_name": "Foundation",
                "proposed_start_date": d(-20),
                "proposed_end_date": d(40),
                "reason": "Extend to match current velocity.",
            },
            {
                "task_id": "t2",
                "task_name": "Framing",
                "proposed_start_date": d(41),
                "proposed_end_date": d(60),
                "reason": "Starts after the foundation is done.",
            },
            *extra_changes,
        ],
        "rationale": "Foundation is far behind; push framing and compress the tail.",
        "estimated_impact": {
            "proposed_end_date": d(60),
            "days_change": 0,
            "critical_path_impact": "Critical path absorbs the slip without moving the end date.",
        },
    }
