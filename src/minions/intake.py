"""Build jobs from GitHub issue bodies.

Issue format::

    ## Generated Prompt

    ```
    Fix the button color
    ```

    ## Spec Content          (optional)
    ...

    ## Metadata

    - **Type:** simple
    - **Submitted by:** Marie

    <!-- agent-meta: {"prompt_type":"simple","visitor_name":"Marie"} -->

The machine-readable `agent-meta` comment wins; the markdown metadata section
is the fallback.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from .exceptions import IssueParseError
from .job_queue import new_job_id
from .schemas import Job, JobKind

_PROMPT_RE = re.compile(r"## Generated Prompt\s+```\n([\s\S]*?)\n```")
_SPEC_RE = re.compile(r"## Spec Content\s+([\s\S]*?)(?=\n## (?!Spec))")
_META_RE = re.compile(r"<!-- agent-meta: (\{.*?\}) -->")
_TYPE_RE = re.compile(r"\*\*Type:\*\*\s*(simple|ralph_loop)")
_SUBMITTER_RE = re.compile(r"\*\*Submitted by:\*\*\s*(.+)")

TITLE_CHARS = 80


class PromptType(str, Enum):
    SIMPLE = "simple"
    RALPH_LOOP = "ralph_loop"


class ParsedIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    generated_prompt: str
    spec_content: Optional[str] = None
    prompt_type: PromptType = PromptType.SIMPLE
    submitted_by: str = "Anonymous"


def parse_issue_body(body: str) -> ParsedIssue:
    """Extract the prompt, optional spec and metadata from an issue body.

    Raises:
        IssueParseError: No generated prompt block.
    """
    prompt_match = _PROMPT_RE.search(body or "")
    if not prompt_match:
        raise IssueParseError("Could not extract generated prompt from issue body")

    spec_match = _SPEC_RE.search(body)
    spec_content = spec_match.group(1).strip() if spec_match else None

    prompt_type = PromptType.SIMPLE
    submitted_by = "Anonymous"
    meta_parsed = False

    meta_match = _META_RE.search(body)
    if meta_match:
        try:
            meta = json.loads(meta_match.group(1))
        except ValueError:
            meta = None
        if isinstance(meta, dict):
            if meta.get("prompt_type") == PromptType.RALPH_LOOP.value:
                prompt_type = PromptType.RALPH_LOOP
            submitted_by = meta.get("visitor_name") or "Anonymous"
            meta_parsed = True

    if not meta_parsed:
        type_match = _TYPE_RE.search(body)
        if type_match:
            prompt_type = PromptType(type_match.group(1))
        name_match = _SUBMITTER_RE.search(body)
        if name_match:
            submitted_by = name_match.group(1).strip()

    return ParsedIssue(
        generated_prompt=prompt_match.group(1).strip(),
        spec_content=spec_content,
        prompt_type=prompt_type,
        submitted_by=submitted_by,
    )


def issue_branch_name(issue_number: int) -> str:
    return f"feedback/issue-{issue_number}"


def job_from_issue(
    issue_number: int,
    body: str,
    target_repo: str,
    title: Optional[str] = None,
    installation_id: Optional[int] = None,
    job_id: Optional[str] = None,
) -> Job:
    """Build a `build` job for an issue; the spec content, when present, is the task."""
    parsed = parse_issue_body(body)
    task_spec = parsed.generated_prompt
    if parsed.spec_content:
        task_spec = f"{parsed.generated_prompt}\n\n{parsed.spec_content}"

    return Job(
        id=job_id or new_job_id(),
        kind=JobKind.BUILD,
        target_repo=target_repo,
        branch_name=issue_branch_name(issue_number),
        title=title or parsed.generated_prompt.splitlines()[0][:TITLE_CHARS],
        task_spec=task_spec,
        installation_id=installation_id,
    )
