"""Prompt templates handed to the agent.

Templates use ``str.format()`` placeholders.
"""
from __future__ import annotations

from typing import Sequence

CONTINUATION_TAIL_LINES = 20

CONTINUATION_TEMPLATE = """\
CONTINUATION PROMPT - Task was paused due to time limit.

Original task: {task}

Working directory: {workdir}

Last output before pause:
```
{tail}
```

Please continue the task from where it left off. Maintain consistency with previous work."""


def continuation_prompt(
    description: str,
    workdir: str,
    last_tail: Sequence[str],
    max_lines: int = CONTINUATION_TAIL_LINES,
) -> str:
    """Build the prompt for resuming a paused task."""
    tail = list(last_tail)[-max_lines:] if max_lines > 0 else []
    return CONTINUATION_TEMPLATE.format(
        task=description,
        workdir=workdir,
        tail="\n".join(tail),
    )
