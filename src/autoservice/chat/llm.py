from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from ..config import AssistantSettings
from ..logging import get_logger
from ..pipeline.image import to_data_uri
from ..pipeline.retry import RetryPolicy, with_retry
from .results import Outcome

LOG = get_logger("llm")


def user_content(text: str, images: Sequence[bytes] = ()) -> Any:
    """Plain string, or a text + image_url parts list when images are attached."""
    if not images:
        return text
    parts: List[Dict[str, Any]] = [{"type": "text", "text": text}]
    parts += [{"type": "image_url", "image_url": {"url": to_data_uri(img)}} for img in images]
    return parts


@dataclass
class ToolRun:
    text: str = ""
    calls: List[Tuple[str, Outcome]] = field(default_factory=list)
    steps: int = 0


class ChatModel:
    """OpenAI-compatible chat client (OpenAI, OpenRouter, Mistral).

    Every request goes through the rate-limit retry; the SDK's own retries
    are disabled so the two do not stack.
    """

    def __init__(
        self,
        settings: AssistantSettings,
        client: Optional[Any] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.settings = settings
        self.client = client or AsyncOpenAI(
            api_key=settings.api_key or "missing-api-key",
            base_url=settings.base_url,
            max_retries=0,
            timeout=float(settings.request_timeout_seconds),
        )
        self.policy = policy or RetryPolicy(max_attempts=settings.retry_attempts, delays=settings.retry_delays)

    async def _create(self, label: str, **kwargs: Any) -> Any:
        kwargs.setdefault("model", self.settings.chat_model)
        kwargs.setdefault("temperature", self.settings.temperature)
        return await with_retry(lambda: self.client.chat.completions.create(**kwargs), self.policy, label=label)

    async def complete(
        self,
        system: str,
        messages: Sequence[Dict[str, Any]],
        images: Sequence[bytes] = (),
    ) -> str:
        """One tool-less call; images are attached to the last user message."""
        convo: List[Dict[str, Any]] = [{"role": "system", "content": system}, *messages]
        if images:
            for idx in range(len(convo) - 1, 0, -1):
                if convo[idx]["role"] == "user":
                    text = convo[idx]["content"] or "Analyze this image."
                    convo[idx] = {"role": "user", "content": user_content(text, images)}
                    break
        resp = await self._create("chat", messages=convo)
        return (resp.choices[0].message.content or "").strip()

    async def run_tools(
        self,
        system: str,
        messages: Sequence[Dict[str, Any]],
        registry: Any,
        max_steps: int = 5,
    ) -> ToolRun:
        """Bounded tool loop; tool calls execute sequentially in model order."""
        convo: List[Dict[str, Any]] = [{"role": "system", "content": system}, *messages]
        run = ToolRun()
        specs = registry.specs()
        for step in range(1, max_steps + 1):
            run.steps = step
            resp = await self._create("chat+tools", messages=convo, tools=specs, tool_choice="auto")
            message = resp.choices[0].message
            tool_calls = list(message.tool_calls or [])
            if not tool_calls:
                run.text = (message.content or "").strip()
                return run

            convo.append(
                {
                    "role": "assistant",
                    "content": message.content or "",
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.function.name, "arguments": tc.function.arguments or "{}"},
                        }
                        for tc in tool_calls
                    ],
                }
            )
            for tc in tool_calls:
                name = tc.function.name
                outcome = await registry.dispatch(name, tc.function.arguments or "{}")
                LOG.info(f"Tool {name} -> success={outcome.success}")
                run.calls.append((name, outcome))
                convo.append(
                    {
                        "role": "tool",
                        "tool_call_id": tc.id,
                        "content": json.dumps(outcome.to_payload(), ensure_ascii=False, default=str),
                    }
                )
        LOG.warning(f"Tool loop stopped after {max_steps} step(s)")
        return run

    async def complete_json(
        self,
        system: str,
        user_text: str,
        *,
        images: Sequence[bytes] = (),
        schema_name: str = "result",
        schema: Optional[Dict[str, Any]] = None,
    ) -> str:
        """JSON completion: json_schema response format (non-strict) when a schema is given, else json_object."""
        if schema is not None:
            response_format: Dict[str, Any] = {
                "type": "json_schema",
                "json_schema": {"name": schema_name, "schema": schema, "strict": False},
            }
        else:
            response_format = {"type": "json_object"}
        convo = [
            {"role": "system", "content": system},
            {"role": "user", "content": user_content(user_text, images)},
        ]
        resp = await self._create(
            f"extract {schema_name}",
            model=self.settings.extraction_model,
            messages=convo,
            response_format=response_format,
        )
        return resp.choices[0].message.content or ""
