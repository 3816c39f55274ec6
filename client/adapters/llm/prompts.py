"""
Request/response text conventions shared by the chat transports.

- System prompt assembled from the talk objective and active directives
- OpenAI-style message list (bounded history + the new user input)
- Job blocks the assistant may emit to schedule background work:

    ```job
    schedule: every weekday at 9am
    prompt: Summarize overnight alerts
    ```
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from context.models import Directive, Message
from spec import MAX_CONTEXT_MESSAGES


SYSTEM_PROMPT_PREFIX: str = "Objective for this conversation:"
DIRECTIVES_PREFIX: str = "Standing directives:"

_JOB_BLOCK_RE = re.compile(r"```job\s*\n([\s\S]*?)```")
_SCHEDULE_LINE_RE = re.compile(r"^schedule:\s*(.+)$", re.MULTILINE)
_PROMPT_LINE_RE = re.compile(r"^prompt:\s*(.+?)$", re.MULTILINE)
_ONE_OFF_RE = re.compile(r"^(in\s|at\s)", re.IGNORECASE)


def build_system_prompt(
    objective: str | None,
    directives: Iterable[Directive] = (),
) -> str | None:
    parts: list[str] = []
    if objective:
        parts.append(f"{SYSTEM_PROMPT_PREFIX}\n{objective}")
    active = [d.text for d in directives if d.active and d.text]
    if active:
        parts.append(DIRECTIVES_PREFIX + "\n" + "\n".join(f"- {t}" for t in active))
    return "\n\n".join(parts) or None


def build_chat_messages(
    history: Sequence[Message],
    turn_input: str,
    system_prompt: str | None = None,
    *,
    max_history: int = MAX_CONTEXT_MESSAGES,
) -> list[dict[str, str]]:
    """
    OpenAI chat messages for a direct-mode request.

    System messages in the history are local notices (errors, tool
    previews) and are not sent.
    """
    messages: list[dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})

    recent = [m for m in history if m.role != "system"][-max_history:]
    messages.extend({"role": m.role, "content": m.content} for m in recent)
    messages.append({"role": "user", "content": turn_input})
    return messages


@dataclass(frozen=True)
class JobBlock:
    schedule: str
    prompt: str

    @property
    def is_one_off(self) -> bool:
        return _ONE_OFF_RE.match(self.schedule) is not None

    def notice(self) -> str:
        label = "Job Scheduled" if self.is_one_off else "Recurring Job Scheduled"
        return f'[{label}] "{self.prompt}" ({self.schedule})'


def parse_job_blocks(text: str) -> list[JobBlock]:
    """Extract ```job blocks that carry both a schedule and a prompt line."""
    blocks: list[JobBlock] = []
    for match in _JOB_BLOCK_RE.finditer(text):
        body = match.group(1)
        schedule = _SCHEDULE_LINE_RE.search(body)
        prompt = _PROMPT_LINE_RE.search(body)
        if schedule and prompt:
            blocks.append(JobBlock(schedule=schedule.group(1).strip(), prompt=prompt.group(1).strip()))
    return blocks
