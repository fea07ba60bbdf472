from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from applyflow.config import Settings, get_settings
from applyflow.errors import CustomizationError
from applyflow.llm.prompts import COVER_LETTER_PROMPT, CUSTOMIZE_CV_PROMPT
from applyflow.llm.providers import LLMProvider, ProviderPool
from applyflow.types import CustomizedCV

logger = logging.getLogger(__name__)

MAX_JOB_DESCRIPTION_CHARS = 20000


class AICustomizer:
    """Produces a job-specific CV and cover letter.

    Uses the configured providers in preference order. With no provider
    configured it falls back to deterministic heuristics; with providers
    configured, a failure of all of them raises ``CustomizationError``.
    """

    def __init__(self, settings: Settings | None = None, pool: ProviderPool | None = None):
        self.settings = settings or get_settings()
        self.pool = pool or ProviderPool(self.settings)

    async def customize_cv(self, cv: dict[str, Any], job_description: str) -> CustomizedCV:
        providers = self.pool.enabled()
        if not providers:
            return heuristic_customized_cv(cv, job_description)

        prompt = CUSTOMIZE_CV_PROMPT.format(
            cv_json=json.dumps(cv, ensure_ascii=True, default=str),
            job_description=job_description[:MAX_JOB_DESCRIPTION_CHARS],
        )
        data = await asyncio.to_thread(self._call_json, providers, prompt)
        try:
            customized = CustomizedCV.model_validate(data)
        except ValidationError as exc:
            raise CustomizationError(f"invalid customized CV payload: {exc}") from exc
        customized.metadata.setdefault("strategy", "llm")
        return customized

    async def generate_cover_letter(self, cv: dict[str, Any], job_description: str, company: str) -> str:
        providers = self.pool.enabled()
        if not providers:
            return heuristic_cover_letter(cv, job_description, company)

        prompt = COVER_LETTER_PROMPT.format(
            company=company or "the company",
            cv_json=json.dumps(cv, ensure_ascii=True, default=str),
            job_description=job_description[:MAX_JOB_DESCRIPTION_CHARS],
        )
        return await asyncio.to_thread(self._call_text, providers, prompt)

    def _call_json(self, providers: list[LLMProvider], prompt: str) -> dict[str, Any]:
        errors: list[str] = []
        for provider in providers:
            try:
                data = provider.complete_json(prompt)
            except Exception as exc:
                logger.warning("LLM JSON call failed provider=%s error=%s", provider.config.name, exc)
                errors.append(f"{provider.config.name}: {exc}")
                continue
            if data:
                return data
            errors.append(f"{provider.config.name}: empty or non-JSON output")
        raise CustomizationError("CV customization failed (" + "; ".join(errors) + ")")

    def _call_text(self, providers: list[LLMProvider], prompt: str) -> str:
        errors: list[str] = []
        for provider in providers:
            try:
                text = provider.complete_text(prompt).content.strip()
            except Exception as exc:
                logger.warning("LLM text call failed provider=%s error=%s", provider.config.name, exc)
                errors.append(f"{provider.config.name}: {exc}")
                continue
            if text:
                return text
            errors.append(f"{provider.config.name}: empty output")
        raise CustomizationError("cover letter generation failed (" + "; ".join(errors) + ")")


def _keywords(text: str) -> set[str]:
    return {token for token in re.findall(r"[a-z][a-z0-9+#.]{1,}", text.lower())}


def heuristic_customized_cv(cv: dict[str, Any], job_description: str) -> CustomizedCV:
    job_terms = _keywords(job_description)
    skills = [str(skill) for skill in cv.get("skills", []) if skill]
    matched = [skill for skill in skills if skill.lower() in job_terms]
    ordered_skills = matched + [skill for skill in skills if skill not in matched]

    summary = str(cv.get("summary") or "")
    if matched:
        summary = (summary + " " if summary else "") + f"Relevant strengths: {', '.join(matched[:5])}."

    return CustomizedCV(
        summary=summary,
        skills=ordered_skills,
        experience=list(cv.get("experience", [])),
        education=list(cv.get("education", [])),
        highlights=[f"Hands-on experience with {skill}" for skill in matched[:5]],
        metadata={"strategy": "heuristic_fallback", "matched_skills": matched},
    )


def heuristic_cover_letter(cv: dict[str, Any], job_description: str, company: str) -> str:
    name = str(cv.get("name") or "Candidate")
    lines = [line.strip() for line in job_description.splitlines() if line.strip()]
    role = lines[0] if lines else "the open position"
    matched = heuristic_customized_cv(cv, job_description).metadata["matched_skills"]

    body = [f"Dear Hiring Team at {company or 'your company'},", "", f"I am applying for {role}."]
    if matched:
        body.append(f"My experience with {', '.join(matched[:4])} maps directly to your requirements.")
    body.extend(["I would welcome the chance to contribute.", "", "Sincerely,", name])
    return "\n".join(body)
