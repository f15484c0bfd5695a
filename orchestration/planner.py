"""
Planner: decides which responders handle a turn and in what order.

The LLM planner asks the model for a JSON plan. Anything it cannot parse is
treated as an empty plan so the orchestrator's default action applies.
"""
from __future__ import annotations

import json
import time
from typing import Iterable, List, Optional, Protocol

from logging_setup import get_logger, Component
from .models import Action, Conversation, Plan, TokenUsage, format_transcript
from .openai_client import OpenAIClient

logger = get_logger(Component.PLANNER)


class Planner(Protocol):
    async def plan(self, conversation: Conversation, user_message: str) -> Plan:
        ...


def format_history(conversation: Conversation, window: int) -> str:
    return format_transcript(conversation.messages[-window:])


def parse_plan(raw: str) -> Plan:
    """
    Parse the planner's JSON output.

    Accepts `responder` or `agent` as the action key. Actions without a
    string responder are dropped; unparsable output yields an empty plan.
    """
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return Plan()
    if not isinstance(data, dict):
        return Plan()

    actions: List[Action] = []
    raw_actions = data.get("actions")
    if isinstance(raw_actions, list):
        for item in raw_actions:
            if not isinstance(item, dict):
                continue
            responder = item.get("responder", item.get("agent"))
            if not isinstance(responder, str) or not responder.strip():
                continue
            instructions = item.get("instructions")
            if not isinstance(instructions, str) or not instructions.strip():
                instructions = None
            actions.append(Action(responder=responder.strip(), instructions=instructions))

    notes = data.get("notes")
    if not isinstance(notes, str) or not notes.strip():
        notes = None
    else:
        notes = notes.strip()
    return Plan(actions=actions, notes=notes)


class LLMPlanner:
    """Plans with a single JSON-mode chat completion."""

    def __init__(self, client: OpenAIClient, responders: Iterable[str], history_window: int = 8,
                 model: Optional[str] = None):
        self._client = client
        self._responders = sorted(responders)
        self._history_window = history_window
        self._model = model

    def system_instruction(self) -> str:
        names = ", ".join(self._responders)
        choices = " | ".join(f'"{r}"' for r in self._responders)
        return (
            f"You coordinate a team of specialist responders: {names}.\n"
            "Decide which responders should answer the latest user message.\n"
            "Return JSON matching this schema: {\n"
            f'  "actions": [ {{ "responder": {choices}, "instructions"?: string }} ],\n'
            '  "notes"?: string\n'
            "}\n"
            "Only include responders that materially advance the conversation. Prefer greeting for new "
            "sessions or topic changes. Use summarizer for recap requests. Use input_coach to improve "
            "phrasing. Use time_helper when the user asks for the current time somewhere. If attachments "
            "are supplied or the user asks to store a document, include document_store. "
            "If no responder is needed return an empty actions array."
        )

    async def plan(self, conversation: Conversation, user_message: str) -> Plan:
        history = format_history(conversation, self._history_window)
        prompt = "\n\n".join([
            f"Recent conversation:\n{history}" if history else "No previous conversation.",
            f"User message: {user_message}",
            "Respond with JSON only. If unsure, prefer a greeting followed by asking clarifying questions.",
        ])
        start_ts = time.perf_counter()
        result = await self._client.chat_completion(
            [
                {"role": "system", "content": self.system_instruction()},
                {"role": "user", "content": prompt},
            ],
            model=self._model,
            temperature=0,
            json_mode=True,
        )
        plan = parse_plan(result["content"])
        plan.usage = TokenUsage.from_openai(result.get("usage"), result.get("model"))
        logger.info(
            "Plan produced",
            conversation_id=conversation.id,
            actions=[a.responder for a in plan.actions],
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return plan
