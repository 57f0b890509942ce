from __future__ import annotations

import re

SOURCE_POINTS = {
    "referral": 20,
    "website": 15,
    "linkedin": 15,
    "google-ads": 10,
    "social-media": 10,
    "email-campaign": 8,
    "trade-show": 12,
    "cold-call": 5,
    "other": 3,
}

BUDGET_POINTS = {
    "5000+": 30,
    "1000-5000": 25,
    "500-1000": 20,
    "100-500": 15,
    "under-100": 5,
    "not-specified": 0,
}

TIMELINE_POINTS = {
    "immediate": 25,
    "1-month": 20,
    "1-3-months": 15,
    "3-6-months": 10,
    "6-12-months": 5,
    "not-specified": 0,
}

_DECISION_MAKER_RE = re.compile(r"director|manager|ceo|owner", re.IGNORECASE)


def calculate_lead_score(
    *,
    lead_source: str | None,
    budget: str | None,
    timeline: str | None,
    company: str | None = None,
    job_title: str | None = None,
    product_interest: str | None = None,
) -> int:
    score = SOURCE_POINTS.get(lead_source or "", 0)
    score += BUDGET_POINTS.get(budget or "", 0)
    score += TIMELINE_POINTS.get(timeline or "", 0)
    if company and company.strip():
        score += 10
    if job_title and _DECISION_MAKER_RE.search(job_title):
        score += 15
    if product_interest and product_interest.strip():
        score += 5
    return max(0, min(100, score))
