from __future__ import annotations

CUSTOMIZE_CV_PROMPT = """
You are tailoring a candidate CV to one job posting.
Keep every fact truthful; reorder and rephrase, never invent.
Return strict JSON with keys:
- summary: string
- skills: string[] (most relevant first)
- experience: array of objects (same shape as the input CV)
- education: array of objects
- highlights: string[] (3-5 achievements matching the job)

Candidate CV JSON:
{cv_json}

Job description:
{job_description}
""".strip()

COVER_LETTER_PROMPT = """
You write a concise, professional cover letter (under 250 words).
Use only facts from the candidate CV. Plain text, no markdown, no placeholders.

Company: {company}

Candidate CV JSON:
{cv_json}

Job description:
{job_description}
""".strip()
