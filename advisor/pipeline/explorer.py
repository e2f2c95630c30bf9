"""The three explorer pipelines: company analysis, opportunity generation, market signals.

Each pipeline is a stage list for the engine plus the `prepare` / `finish`
hooks that turn a request body into run context and the run context into
the `complete` payload.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from advisor.errors import ParseError, ValidationError
from advisor.llm import Completion, parse_json
from advisor.pipeline.engine import Pipeline, PipelineRun, Stage, StageRequest
from advisor.schemas import (
    CompanyData,
    CompetitorInsight,
    GroundingSource,
    MarketSignals,
    StrategicInference,
    StrategicPriority,
    TwoPaths,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

STRATEGY_DISCLAIMER = (
    "This analysis is based on your company's public information. "
    "Strategic priorities are inferred from available signals."
)

LANGUAGE_RULES = "Use BRITISH ENGLISH spelling throughout. Always return valid JSON."


def _require_object(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body")
    return body


def _parse_model(completion: Completion, model: type[M], **extra: Any) -> M:
    """Parse a JSON reply into `model`; a shape mismatch is a ParseError like bad JSON."""
    data = parse_json(completion.content)
    if not isinstance(data, dict):
        raise ParseError("AI response was not a JSON object")
    try:
        return model.model_validate({**data, **extra})
    except PydanticValidationError as e:
        logger.error(f"AI response did not match {model.__name__}: {e}")
        raise ParseError(f"AI response did not match the expected {model.__name__} structure") from e


def _sources(completion: Completion) -> list[GroundingSource]:
    return [GroundingSource(uri=s.uri, title=s.title) for s in completion.sources]


def _bullets(items: list[str], empty: str = "None identified") -> str:
    return "\n".join(f"• {i}" for i in items) if items else empty


def _months_before(day: date, months: int) -> date:
    month_index = day.year * 12 + day.month - 1 - months
    return date(month_index // 12, month_index % 12 + 1, 1)


def extract_domain(url: str) -> str:
    host = urlparse(url).hostname
    if not host:
        return url
    return host.removeprefix("www.")


# ---------------------------------------------------------------------------
# Pipeline 1: company analysis + strategic inference
# ---------------------------------------------------------------------------


def _prepare_company(run: PipelineRun, body: Any) -> None:
    body = _require_object(body)
    url = body.get("companyUrl")
    url = url.strip() if isinstance(url, str) else ""
    if not url:
        raise ValidationError("Company URL is required")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"

    run.context.update(
        url=url,
        domain=extract_domain(url),
        company_name=body.get("companyName") or None,
        industry=body.get("industry") or None,
    )


def _build_company_research(run: PipelineRun) -> StageRequest:
    url, domain = run.context["url"], run.context["domain"]
    today = date.today()
    cutoff = _months_before(today, 9)
    current_label = today.strftime("%B %Y")
    cutoff_label = cutoff.strftime("%B %Y")

    prompt = f"""Research the company at this URL: {url}

**STEP 1: IDENTIFY THE COMPANY**
Determine the company's PRIMARY business activity, what it sells, and who its customers are.

**STEP 2: FIND DIRECT COMPETITORS**
Find companies that do the EXACT SAME THING and compete for the same deals and customers.

**Company Domain:** {domain}
**Full URL:** {url}

**CRITICAL TIME CONSTRAINT:**
- Today's date is {current_label}
- For "recentInitiatives", ONLY include initiatives announced after {cutoff_label} (last 9 months)
- If you cannot find initiatives from the last 9 months, return an empty array

**Output Format (JSON only):**
{{
  "companyName": "Official company name",
  "industry": "Specific industry",
  "description": "2-3 sentence description of the company, its market position, and key differentiators",
  "keyThemes": ["theme1", "theme2", "theme3"],
  "recentInitiatives": ["Only initiatives from {cutoff_label} to {current_label}"],
  "competitors": [
    {{
      "name": "Competitor name",
      "strategicFocus": "What this competitor is focusing on strategically",
      "relevance": "How this competitor's strategy may be relevant"
    }}
  ]
}}

Include up to 5 DIRECT competitors. Return ONLY valid JSON."""

    return StageRequest(
        messages=[
            {
                "role": "system",
                "content": (
                    "You are a senior competitive intelligence analyst. First understand what the "
                    "target company actually does, then find the companies that win the deals it "
                    f"loses. Never use em dashes. {LANGUAGE_RULES}"
                ),
            },
            {"role": "user", "content": prompt},
        ],
        temperature=0.3,
        max_tokens=3000,
        grounded=True,
        search_query=f"{domain} company overview products customers competitors",
        snippet=(
            f"Analysing company website: {url}\n\nExtracting:\n"
            "• Company name and industry\n"
            "• Business description and key themes\n"
            "• Recent initiatives and strategic signals\n"
            "• Competitor information"
        ),
    )


def _parse_company_research(run: PipelineRun, completion: Completion) -> None:
    sources = _sources(completion)
    company = _parse_model(
        completion,
        CompanyData,
        url=run.context["url"],
        sources=[s.model_dump() for s in sources],
        isGrounded=bool(sources),
    )
    overrides = {}
    if run.context.get("company_name"):
        overrides["company_name"] = run.context["company_name"]
    if run.context.get("industry"):
        overrides["industry"] = run.context["industry"]
    run.context["company_data"] = company.model_copy(update=overrides)


def _build_strategic_inference(run: PipelineRun) -> StageRequest:
    company: CompanyData = run.context["company_data"]
    competitor_context = ""
    if company.competitors:
        lines = "\n".join(f"• {c.name}: {c.strategic_focus}" for c in company.competitors)
        competitor_context = (
            "\n**Competitor Intelligence (for context only, do NOT mention by name in rationale):**\n"
            f"{lines}"
        )

    prompt = f"""You are advising the board of {company.company_name} (Today: {date.today().isoformat()})

**COMPANY CONTEXT**
Company: {company.company_name}
Website: {company.url}
Industry: {company.industry or "Not specified"}
Description: {company.description or "Not available"}
Key Themes: {", ".join(company.key_themes) or "Not available"}
Recent Initiatives: {"; ".join(company.recent_initiatives) or "Not available"}
{competitor_context}

**TASK**
Infer the top 2-3 strategic business priorities the board is likely focused on.

For each priority, give a STRATEGIC RATIONALE that explains why it applies to THIS company and
connects it to industry trends. HIGH confidence: 3-4 sentences. MEDIUM: 2-3. LOW: 1-2.
Use plain English in a quietly confident, advisory tone. Do NOT name competitors.

**OUTPUT FORMAT (JSON):**
{{
  "priorities": [
    {{
      "priority": "Strategic priority title",
      "rationale": "Direct, plain-English explanation.",
      "confidence": "high" | "medium" | "low",
      "evidence": []
    }}
  ]
}}

Return ONLY valid JSON."""

    return StageRequest(
        messages=[
            {
                "role": "system",
                "content": (
                    "You are a senior business strategy consultant analysing companies to infer "
                    f"their strategic priorities. {LANGUAGE_RULES}"
                ),
            },
            {"role": "user", "content": prompt},
        ],
        temperature=0.6,
        max_tokens=3000,
    )


def _parse_strategic_inference(run: PipelineRun, completion: Completion) -> None:
    run.context["strategic_inference"] = _parse_model(
        completion, StrategicInference, disclaimer=STRATEGY_DISCLAIMER
    )


def _finish_company(run: PipelineRun) -> dict[str, Any]:
    return {
        "strategicInference": run.context["strategic_inference"].dump(),
        "companyData": run.context["company_data"].dump(),
    }


company_analysis = Pipeline(
    name="company_analysis",
    stages=[
        Stage(
            name="Company Analysis",
            description="Analysing your company website to understand business context.",
            build_request=_build_company_research,
            parse_result=_parse_company_research,
        ),
        Stage(
            name="Strategic Inference",
            description="Identifying strategic priorities based on public signals.",
            build_request=_build_strategic_inference,
            parse_result=_parse_strategic_inference,
        ),
    ],
    prepare=_prepare_company,
    finish=_finish_company,
)


# ---------------------------------------------------------------------------
# Pipeline 2: opportunity (use case) generation
# ---------------------------------------------------------------------------


def _prepare_opportunities(run: PipelineRun, body: Any) -> None:
    body = _require_object(body)
    company_data = body.get("companyData")
    priorities = body.get("strategicPriorities")
    if not company_data or not priorities:
        raise ValidationError("Company data and strategic priorities are required")
    try:
        run.context["company_data"] = CompanyData.model_validate(company_data)
        run.context["priorities"] = [StrategicPriority.model_validate(p) for p in priorities]
    except (PydanticValidationError, TypeError) as e:
        raise ValidationError(f"Invalid company data or strategic priorities: {e}") from e


def _build_use_cases(run: PipelineRun) -> StageRequest:
    company: CompanyData = run.context["company_data"]
    priorities = [p.priority for p in run.context["priorities"]]
    numbered = "\n".join(f"{i}. {p}" for i, p in enumerate(priorities, 1))

    prompt = f"""You are a senior AI strategy consultant presenting to a BOARD-LEVEL AUDIENCE for {company.company_name}.

**CONTEXT**
Company: {company.company_name}
Industry: {company.industry or "Unknown"}
Description: {company.description or "Not available"}

**STRATEGIC PRIORITIES (these MUST drive your recommendations):**
{numbered}

Every use case MUST directly support one or more of these priorities, and its
strategicRationale must name the priority it supports. Do NOT suggest generic AI use cases.

**TASK**
Path A, Business Reimagination (2-3 opportunities): changes to the business model or offering.
Path B, Efficiency & Optimisation (3-4 opportunities): operational improvements and quicker wins.

For each opportunity give: description (3-4 sentences), strategicRationale (2-3 sentences),
advantages (3-4), risks (3-4, including AI-specific risks), uncertainties (2-3), tradeoffs (2-3)
and a riskAssessment.

**OUTPUT FORMAT (JSON):**
{{
  "reimagination": [
    {{
      "id": "uc-r1",
      "title": "Specific, concrete title",
      "description": "...",
      "path": "reimagination",
      "relevanceScore": 85,
      "tags": ["Priority Name Here"],
      "strategicRationale": "This directly supports [Priority Name] by...",
      "advantages": ["..."],
      "risks": ["..."],
      "uncertainties": ["..."],
      "tradeoffs": ["..."],
      "riskAssessment": {{"rating": "high", "justification": "...", "implementationRisks": ["..."]}}
    }}
  ],
  "efficiency": [
    {{
      "id": "uc-e1",
      "title": "Specific title",
      "description": "...",
      "path": "efficiency",
      "relevanceScore": 75,
      "timeframe": "3-6 months",
      "impact": "Medium: qualitative impact description",
      "tags": ["Priority Name Here"],
      "strategicRationale": "...",
      "advantages": ["..."],
      "risks": ["..."],
      "uncertainties": ["..."],
      "tradeoffs": ["..."],
      "riskAssessment": {{"rating": "low", "justification": "...", "implementationRisks": ["..."]}}
    }}
  ]
}}

Return ONLY valid JSON."""

    return StageRequest(
        messages=[
            {
                "role": "system",
                "content": (
                    "You are a senior AI strategy consultant preparing board-level strategic "
                    "recommendations. Your analysis must be balanced, honest, and actionable. "
                    f"{LANGUAGE_RULES}"
                ),
            },
            {"role": "user", "content": prompt},
        ],
        temperature=0.6,
        max_tokens=6000,
        snippet=(
            f"Generating AI opportunities for {company.company_name}\n\n"
            f"Based on priorities:\n{_bullets(priorities)}"
        ),
    )


def _parse_use_cases(run: PipelineRun, completion: Completion) -> None:
    run.context["two_paths"] = _parse_model(completion, TwoPaths)


opportunity_generation = Pipeline(
    name="opportunity_generation",
    stages=[
        Stage(
            name="Use Case Generation",
            description="Creating AI use cases aligned with your priorities.",
            build_request=_build_use_cases,
            parse_result=_parse_use_cases,
            response_chars=400,
        ),
    ],
    prepare=_prepare_opportunities,
    finish=lambda run: {"twoPaths": run.context["two_paths"].dump()},
)


# ---------------------------------------------------------------------------
# Pipeline 3: market signals (competitor AI initiatives)
# ---------------------------------------------------------------------------


def _prepare_market_signals(run: PipelineRun, body: Any) -> None:
    body = _require_object(body)
    try:
        competitors = [CompetitorInsight.model_validate(c) for c in body.get("competitors") or []]
    except (PydanticValidationError, TypeError) as e:
        raise ValidationError(f"Invalid competitors: {e}") from e

    run.context.update(
        industry=body.get("industry") or None,
        company_name=body.get("companyName") or None,
        competitor_names=[c.name for c in competitors][:5],
    )


def _build_market_signals(run: PipelineRun) -> StageRequest:
    industry = run.context["industry"]
    company_name = run.context["company_name"] or "the target company"
    names = run.context["competitor_names"]
    competitor_list = ", ".join(names) if names else "major players in the industry"

    prompt = f"""Search for recent AI initiatives by companies in the {industry or "business"} sector.

**TARGET COMPANIES:**
{competitor_list}

**COMPANY CONTEXT:**
Researching AI initiatives relevant to {company_name} in {industry or "their industry"}.

**SEARCH REQUIREMENTS:**
1. Find REAL, VERIFIABLE AI initiatives announced in the last 12 months
2. Focus on AI adoption, automation, machine learning, or digital transformation projects
3. Include source URLs where available
4. Only include initiatives you can verify through search

**OUTPUT FORMAT (JSON):**
{{
  "signals": [
    {{
      "company": "Company name",
      "country": "Country where headquartered",
      "industry": "{industry or "Industry"}",
      "initiative": "Brief description of the AI initiative (2-3 sentences)",
      "source": "URL to source article or press release",
      "date": "YYYY-MM format when announced"
    }}
  ],
  "disclaimer": "This information is based on publicly available sources and may not be comprehensive."
}}

Return 3-6 relevant signals, or an empty signals array if none can be verified.

Return ONLY valid JSON."""

    return StageRequest(
        messages=[
            {
                "role": "system",
                "content": (
                    "You are a market intelligence analyst researching AI adoption trends. Only "
                    f"report verifiable information from your search results. {LANGUAGE_RULES}"
                ),
            },
            {"role": "user", "content": prompt},
        ],
        temperature=0.3,
        max_tokens=3000,
        grounded=True,
        search_query=f"{competitor_list} AI initiatives {industry or ''}".strip(),
        snippet=(
            f"Researching AI initiatives in {industry or 'the industry'}\n\n"
            f"Looking at: {competitor_list}"
        ),
    )


def _parse_market_signals(run: PipelineRun, completion: Completion) -> None:
    sources = _sources(completion)
    run.context["market_signals"] = _parse_model(
        completion,
        MarketSignals,
        sources=[s.model_dump() for s in sources],
        isGrounded=bool(sources),
    )


market_signals = Pipeline(
    name="market_signals",
    stages=[
        Stage(
            name="Market Intelligence",
            description="Researching competitor AI initiatives.",
            build_request=_build_market_signals,
            parse_result=_parse_market_signals,
        ),
    ],
    prepare=_prepare_market_signals,
    finish=lambda run: {"marketSignals": run.context["market_signals"].dump()},
    fallback_error="Market intelligence failed",
)


PIPELINES: dict[str, Pipeline] = {
    "step1": company_analysis,
    "step2": opportunity_generation,
    "step3": market_signals,
}
