"""Prompt text for the coding agent and the failure classifier."""

from __future__ import annotations

from typing import Dict

from .outcomes import ValidationStage
from .schemas import FailureCategory, FailureClassification, Job

FIX_ERROR_CHARS = 4000
CLASSIFIER_TASK_CHARS = 1000
CLASSIFIER_ERROR_CHARS = 1000
CLASSIFIER_LOG_CHARS = 3000
SELF_IMPROVE_TASK_CHARS = 1000
SELF_IMPROVE_LOG_CHARS = 3000
PR_SPEC_CHARS = 2000


def build_task_prompt(job: Job) -> str:
    return f"""You are implementing a product improvement for a software project.

## Task
{job.title}

## Specification
{job.task_spec}

## Rules
- Implement EXACTLY what the spec says, no more, no less
- Do NOT refactor unrelated code
- Do NOT add features beyond the spec
- Make the minimal changes needed
- Ensure all new code has proper types
- Run the build to verify your changes compile before finishing"""


def build_fix_prompt(stage: ValidationStage, error_output: str) -> str:
    """Fix prompt for one failed validation stage (last 4000 chars of output)."""
    return (
        f"The {stage.value} step failed. Fix the errors without changing unrelated code.\n\n"
        f"## Errors\n{error_output[-FIX_ERROR_CHARS:]}"
    )


CLASSIFIER_INSTRUCTIONS = """Classify this agent failure into exactly ONE category:

- **docs_gap**: Agent instructions, installation instructions, or gotchas are incomplete or wrong. The agent didn't know how to handle a documented situation.
- **widget_bug**: The widget's source code has a bug: wrong exports, broken CSS, incompatible patterns.
- **agent_bug**: The agent's own workflow logic is broken: cloning issues, validation logic, prompt construction.
- **consumer_error**: Consumer's fault: bad config, missing env vars, incompatible dependencies, unusual project structure.
- **transient**: Network timeout, rate limit, flaky CI, GitHub API outage, or other temporary issue.

Respond with ONLY a JSON object:
{"category": "one_of_the_five", "analysis": "What went wrong and why this category", "fix_summary": "What to change to prevent this (N/A for consumer_error and transient)"}"""


def build_classifier_context(logs: str, last_error: str, task_description: str, job_kind: str) -> str:
    """Bounded failure context: task 1000, error 1000, log tail 3000 chars."""
    return f"""# Failure Context

## Job Type
{job_kind}

## Original Task
{task_description[:CLASSIFIER_TASK_CHARS]}

## Last Error
{last_error[:CLASSIFIER_ERROR_CHARS]}

## Run Logs (last entries)
{logs[-CLASSIFIER_LOG_CHARS:]}
"""


def scope_instructions(category: FailureCategory, widget_source_dir: str) -> str:
    scopes: Dict[FailureCategory, str] = {
        FailureCategory.DOCS_GAP: """Focus on updating documentation:
- Agent instruction files and installation steps
- Prompt text in src/minions/prompts.py
- Any README files that reference installation

Do NOT change source code unless the docs reference an incorrect API or export.""",
        FailureCategory.WIDGET_BUG: f"""Focus on fixing widget source code in {widget_source_dir}/:
- Check exports and the package manifest
- Check stylesheets and components
- Check server handlers

Run the build to verify the fix compiles.""",
        FailureCategory.AGENT_BUG: """Focus on fixing orchestration logic in src/minions/:
- worker.py (job processing, classification hand-off)
- pipeline.py, validator.py, remediation.py (build, validation, remediation loop)
- codegen.py (agent invocation)
- github_client.py (GitHub API calls)

Run the tests to verify the fix.""",
    }
    return scopes.get(category, "Analyze the failure and make the minimal fix needed.")


def build_self_improvement_prompt(
    classification: FailureClassification,
    original_task: str,
    log_excerpts: str,
    orchestrator_repo: str,
    widget_source_dir: str,
) -> str:
    return f"""You are fixing the {orchestrator_repo} repository based on a failure analysis.

## Failure Category: {classification.category.value}

## Failure Analysis
{classification.analysis}

## Suggested Fix
{classification.fix_summary}

## Original Task That Triggered the Failed Run
{original_task[:SELF_IMPROVE_TASK_CHARS]}

## Error Logs From the Failed Run
{log_excerpts[-SELF_IMPROVE_LOG_CHARS:]}

## Scope Instructions
{scope_instructions(classification.category, widget_source_dir)}

## Rules
- Make the MINIMAL change needed to prevent this specific failure from recurring
- Do NOT refactor unrelated code
- Do NOT add features
- Do NOT change test infrastructure
- Each change must be directly related to the failure"""


def build_pr_body(job: Job) -> str:
    return (
        f"## Summary\n\nImplemented from job `{job.short_id}`.\n\n"
        f"### Specification\n{job.task_spec[:PR_SPEC_CHARS]}\n\n"
        "---\n*Auto-implemented by the builder agent.*"
    )


def build_self_improvement_pr_body(classification: FailureClassification, source_job_id: str) -> str:
    return f"""## Self-Improvement Fix

**Category:** `{classification.category.value}`
**Source job:** {source_job_id}

### Failure Analysis
{classification.analysis}

### Suggested Fix
{classification.fix_summary}

---
*Auto-generated by the self-improvement pipeline.*"""
