"""Workflow validation and confidence-ranked autofix.

A workflow summary is a flat list of steps derived from a mission graph.
Validation yields issues; each issue maps to at most one fix candidate with a
fixed confidence. Whether a candidate may be applied without approval is
decided by an injectable ``classify(confidence, threshold)`` function.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field

from mission_runtime.config import AutofixConfig
from mission_runtime.models import Mission

logger = logging.getLogger(__name__)

Disposition = Literal["safe_auto_apply", "needs_approval"]
Risk = Literal["low", "medium", "high"]

STEP_TITLE_MISSING = "step_title_missing"
AI_INTEGRATION_MISSING = "ai_integration_missing"
AI_PROMPT_MISSING = "ai_prompt_missing"
AI_PROMPT_TOO_SHORT = "ai_prompt_too_short"
OUTPUT_CHANNEL_MISSING = "output_channel_missing"
OUTPUT_RECIPIENTS_MISSING = "output_recipients_missing"
FETCH_INPUT_MISSING = "fetch_input_missing"
CONDITION_FIELD_MISSING = "condition_field_missing"

RECIPIENTS_PLACEHOLDER = "REPLACE_WITH_RECIPIENTS"
AI_PROMPT_TEMPLATE = "Analyze the provided input, extract key points, and return a concise structured response."
AI_PROMPT_SUFFIX = " Include assumptions, key risks, and a clearly labeled final answer."

_STEP_INDEX_RE = re.compile(r"steps\[(\d+)\]")
_FIX_PATH_UNSAFE = re.compile(r"[^a-zA-Z0-9_.\[\]-]")


class WorkflowStep(BaseModel, extra="allow"):
	id: str = ""
	type: str = "action"
	title: str = ""
	ai_integration: str = ""
	ai_prompt: str = ""
	output_channel: str = ""
	output_recipients: str = ""
	fetch_url: str = ""
	fetch_query: str = ""
	condition_field: str = ""


class WorkflowSummary(BaseModel, extra="allow"):
	description: str = ""
	steps: list[WorkflowStep] = Field(default_factory=list)


@dataclass
class ValidationIssue:
	code: str
	path: str
	message: str


@dataclass
class FixCandidate:
	id: str
	issue_code: str
	risk: Risk
	disposition: Disposition
	confidence: float
	path: str
	title: str
	change_preview: str


@dataclass
class AutofixResult:
	candidates: list[FixCandidate] = field(default_factory=list)
	applied_fix_ids: list[str] = field(default_factory=list)
	pending_approval_fix_ids: list[str] = field(default_factory=list)
	summary: WorkflowSummary = field(default_factory=WorkflowSummary)
	issues_before: int = 0
	issues_after: int = 0


def default_classify(confidence: float, threshold: float) -> Disposition:
	return "safe_auto_apply" if confidence >= threshold else "needs_approval"


@dataclass
class AutofixPolicy:
	"""Thresholds and defaults used when building and gating fixes."""

	low_risk_confidence_threshold: float = 0.85
	max_fix_candidates: int = 20
	default_ai_integration: str = "claude"
	default_output_channel: str = "telegram"
	default_fetch_query: str = "latest updates"
	default_condition_field: str = "data.value"
	min_ai_prompt_chars: int = 24
	classify: Callable[[float, float], Disposition] = default_classify

	@classmethod
	def from_config(
		cls, config: AutofixConfig, classify: Callable[[float, float], Disposition] = default_classify,
	) -> AutofixPolicy:
		return cls(
			low_risk_confidence_threshold=config.low_risk_confidence_threshold,
			max_fix_candidates=config.max_fix_candidates,
			default_ai_integration=config.default_ai_integration,
			default_output_channel=config.default_output_channel,
			default_fetch_query=config.default_fetch_query,
			default_condition_field=config.default_condition_field,
			min_ai_prompt_chars=config.min_ai_prompt_chars,
			classify=classify,
		)


def validate_summary(summary: WorkflowSummary, policy: AutofixPolicy) -> list[ValidationIssue]:
	issues: list[ValidationIssue] = []
	for idx, step in enumerate(summary.steps):
		base = f"steps[{idx}]"
		kind = step.type.strip().lower()
		if not step.title.strip():
			issues.append(ValidationIssue(STEP_TITLE_MISSING, f"{base}.title", "Step has no title"))
		if kind == "ai":
			if not step.ai_integration.strip():
				issues.append(ValidationIssue(AI_INTEGRATION_MISSING, f"{base}.ai_integration", "AI step has no provider"))
			prompt = step.ai_prompt.strip()
			if not prompt:
				issues.append(ValidationIssue(AI_PROMPT_MISSING, f"{base}.ai_prompt", "AI step has no prompt"))
			elif len(prompt) < policy.min_ai_prompt_chars:
				issues.append(ValidationIssue(
					AI_PROMPT_TOO_SHORT, f"{base}.ai_prompt",
					f"AI prompt is shorter than {policy.min_ai_prompt_chars} characters",
				))
		elif kind == "output":
			if not step.output_channel.strip():
				issues.append(ValidationIssue(OUTPUT_CHANNEL_MISSING, f"{base}.output_channel", "Output step has no channel"))
			if not step.output_recipients.strip():
				issues.append(ValidationIssue(
					OUTPUT_RECIPIENTS_MISSING, f"{base}.output_recipients", "Output step has no recipients",
				))
		elif kind == "fetch":
			if not step.fetch_url.strip() and not step.fetch_query.strip():
				issues.append(ValidationIssue(FETCH_INPUT_MISSING, f"{base}.fetch_query", "Fetch step has no URL or query"))
		elif kind == "condition":
			if not step.condition_field.strip():
				issues.append(ValidationIssue(
					CONDITION_FIELD_MISSING, f"{base}.condition_field", "Condition step has no field",
				))
	return issues


# -- Fix plans --

def _default_title(step: WorkflowStep, idx: int) -> str:
	kind = step.type.strip().lower() or "step"
	return f"{kind.capitalize()} step {idx + 1}"


def _fix_title(step: WorkflowStep, policy: AutofixPolicy, idx: int = 0) -> bool:
	if step.title.strip():
		return False
	step.title = _default_title(step, idx)
	return True


def _fix_ai_integration(step: WorkflowStep, policy: AutofixPolicy, idx: int = 0) -> bool:
	if step.ai_integration.strip():
		return False
	step.ai_integration = policy.default_ai_integration
	return True


def _fix_ai_prompt(step: WorkflowStep, policy: AutofixPolicy, idx: int = 0) -> bool:
	if step.ai_prompt.strip():
		return False
	step.ai_prompt = AI_PROMPT_TEMPLATE
	return True


def _fix_ai_prompt_short(step: WorkflowStep, policy: AutofixPolicy, idx: int = 0) -> bool:
	prompt = step.ai_prompt.strip()
	if not prompt or AI_PROMPT_SUFFIX.strip() in prompt:
		return False
	step.ai_prompt = prompt + AI_PROMPT_SUFFIX
	return True


def _fix_output_channel(step: WorkflowStep, policy: AutofixPolicy, idx: int = 0) -> bool:
	if step.output_channel.strip():
		return False
	step.output_channel = policy.default_output_channel
	return True


def _fix_output_recipients(step: WorkflowStep, policy: AutofixPolicy, idx: int = 0) -> bool:
	if step.output_recipients.strip():
		return False
	step.output_recipients = RECIPIENTS_PLACEHOLDER
	return True


def _fix_fetch_input(step: WorkflowStep, policy: AutofixPolicy, idx: int = 0) -> bool:
	if step.fetch_url.strip() or step.fetch_query.strip():
		return False
	step.fetch_query = policy.default_fetch_query
	return True


def _fix_condition_field(step: WorkflowStep, policy: AutofixPolicy, idx: int = 0) -> bool:
	if step.condition_field.strip():
		return False
	step.condition_field = policy.default_condition_field
	return True


# issue code -> (risk, confidence, title, fixer)
FIX_CATALOG: dict[str, tuple[Risk, float, str, Callable[..., bool]]] = {
	STEP_TITLE_MISSING: ("low", 0.97, "Set missing step title", _fix_title),
	AI_INTEGRATION_MISSING: ("low", 0.91, "Set default AI provider", _fix_ai_integration),
	OUTPUT_CHANNEL_MISSING: ("low", 0.90, "Set default output channel", _fix_output_channel),
	FETCH_INPUT_MISSING: ("medium", 0.67, "Set fetch query placeholder", _fix_fetch_input),
	AI_PROMPT_MISSING: ("medium", 0.66, "Insert AI prompt template", _fix_ai_prompt),
	CONDITION_FIELD_MISSING: ("medium", 0.64, "Set condition field placeholder", _fix_condition_field),
	AI_PROMPT_TOO_SHORT: ("medium", 0.61, "Expand short AI prompt", _fix_ai_prompt_short),
	OUTPUT_RECIPIENTS_MISSING: ("high", 0.58, "Set output recipients placeholder", _fix_output_recipients),
}


def _change_preview(code: str, policy: AutofixPolicy) -> str:
	previews = {
		STEP_TITLE_MISSING: "Generate a readable title from the step type and position.",
		AI_INTEGRATION_MISSING: f"Set ai_integration to {policy.default_ai_integration!r}.",
		OUTPUT_CHANNEL_MISSING: f"Set output_channel to {policy.default_output_channel!r}.",
		FETCH_INPUT_MISSING: f"Set fetch_query to {policy.default_fetch_query!r}.",
		AI_PROMPT_MISSING: "Insert a constrained prompt template.",
		CONDITION_FIELD_MISSING: f"Set condition_field to {policy.default_condition_field!r}.",
		AI_PROMPT_TOO_SHORT: "Append explicit output constraints to the prompt.",
		OUTPUT_RECIPIENTS_MISSING: f"Set output_recipients to {RECIPIENTS_PLACEHOLDER!r}; review before use.",
	}
	return previews.get(code, "")


def fix_id(issue: ValidationIssue, index: int) -> str:
	return f"{issue.code}:{_FIX_PATH_UNSAFE.sub('_', issue.path)}:{index}"


@dataclass
class _Plan:
	candidate: FixCandidate
	step_index: int
	fixer: Callable[..., bool]


def _build_plans(issues: list[ValidationIssue], policy: AutofixPolicy) -> list[_Plan]:
	plans: list[_Plan] = []
	for index, issue in enumerate(issues):
		entry = FIX_CATALOG.get(issue.code)
		match = _STEP_INDEX_RE.search(issue.path)
		if entry is None or match is None:
			continue
		risk, confidence, title, fixer = entry
		plans.append(_Plan(
			candidate=FixCandidate(
				id=fix_id(issue, index),
				issue_code=issue.code,
				risk=risk,
				disposition=policy.classify(confidence, policy.low_risk_confidence_threshold),
				confidence=round(min(1.0, max(0.0, confidence)), 3),
				path=issue.path,
				title=title,
				change_preview=_change_preview(issue.code, policy),
			),
			step_index=int(match.group(1)),
			fixer=fixer,
		))
	plans.sort(key=lambda p: (-p.candidate.confidence, p.candidate.id))
	return plans[:policy.max_fix_candidates]


def preview(summary: WorkflowSummary, policy: AutofixPolicy | None = None) -> AutofixResult:
	"""Candidates for ``summary`` without changing anything."""
	policy = policy or AutofixPolicy()
	issues = validate_summary(summary, policy)
	plans = _build_plans(issues, policy)
	return AutofixResult(
		candidates=[p.candidate for p in plans],
		pending_approval_fix_ids=[p.candidate.id for p in plans if p.candidate.disposition == "needs_approval"],
		summary=summary.model_copy(deep=True),
		issues_before=len(issues),
		issues_after=len(issues),
	)


def apply(
	summary: WorkflowSummary,
	approved_fix_ids: list[str] | None = None,
	policy: AutofixPolicy | None = None,
) -> AutofixResult:
	"""Apply safe fixes plus any explicitly approved ones to a copy of ``summary``."""
	policy = policy or AutofixPolicy()
	approved = set(approved_fix_ids or [])
	issues = validate_summary(summary, policy)
	plans = _build_plans(issues, policy)
	working = summary.model_copy(deep=True)
	result = AutofixResult(candidates=[p.candidate for p in plans], issues_before=len(issues))

	for plan in plans:
		candidate = plan.candidate
		if candidate.disposition != "safe_auto_apply" and candidate.id not in approved:
			result.pending_approval_fix_ids.append(candidate.id)
			continue
		if plan.step_index >= len(working.steps):
			continue
		if plan.fixer(working.steps[plan.step_index], policy, plan.step_index):
			result.applied_fix_ids.append(candidate.id)

	result.summary = working
	result.issues_after = len(validate_summary(working, policy))
	if result.applied_fix_ids:
		logger.info(
			"Autofix applied %d fix(es), %d pending approval",
			len(result.applied_fix_ids), len(result.pending_approval_fix_ids),
		)
	return result


# -- Mission graph -> summary --

_FETCH_NODE_TYPES = {"fetch", "web-search", "http-request", "rss-feed"}


def _step_kind(node_type: str) -> str:
	kind = node_type.strip().lower()
	if kind == "schedule-trigger":
		return "trigger"
	if kind in _FETCH_NODE_TYPES:
		return "fetch"
	if kind == "output" or kind.endswith("-output"):
		return "output"
	if kind in ("ai", "condition"):
		return kind
	return "action"


def _text(value: object) -> str:
	if isinstance(value, list):
		return ",".join(str(v).strip() for v in value if str(v).strip())
	return str(value or "").strip()


def summary_from_mission(mission: Mission) -> WorkflowSummary:
	"""Flatten a mission graph into the step list autofix validates."""
	steps: list[WorkflowStep] = []
	for node in mission.nodes:
		cfg = node.config
		kind = _step_kind(node.type)
		channel = _text(cfg.get("channel"))
		if not channel and node.type.endswith("-output"):
			channel = node.type[: -len("-output")]
		steps.append(WorkflowStep(
			id=node.id,
			type=kind,
			title=node.label,
			ai_integration=_text(cfg.get("integration")),
			ai_prompt=_text(cfg.get("prompt")),
			output_channel=channel,
			output_recipients=_text(cfg.get("recipients") or cfg.get("chat_ids")),
			fetch_url=_text(cfg.get("url")),
			fetch_query=_text(cfg.get("query")),
			condition_field=_text(cfg.get("field")),
		))
	return WorkflowSummary(description=mission.label, steps=steps)
