"""Website scanner: the collaborator behind /api/scan.

Discovers a site's key pages, reads them, and asks the model for AI
opportunities, yielding a `ScanProgress` after every step. Failures end
the scan with a single `error` progress rather than an exception.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncIterator
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError as PydanticValidationError

from advisor.config import ScannerConfig
from advisor.llm import ContentClient, extract_json
from advisor.schemas import AIOpportunity, DiscoveredPage, PageContent, ScanProgress, ScanResult

logger = logging.getLogger(__name__)

SITEMAP_PATHS = ("/sitemap.xml", "/sitemap_index.xml", "/sitemap1.xml")
MAX_PAGE_CHARS = 15000

BRITISH_ENGLISH = (
    "You must use British English spelling throughout "
    "(e.g., analyse, optimise, personalise, organisation, colour, centre)."
)

_SCRIPT = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_STYLE = re.compile(r"<style\b[^<]*(?:(?!</style>)<[^<]*)*</style>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_SPACE = re.compile(r"\s+")


def html_to_text(html: str) -> str:
    text = _TAG.sub(" ", _STYLE.sub("", _SCRIPT.sub("", html)))
    return _SPACE.sub(" ", text).strip()[:MAX_PAGE_CHARS]


def opportunity_score(opp: AIOpportunity) -> int:
    return opp.impact * 2 - opp.complexity


class WebsiteScanner:
    def __init__(
        self,
        client: ContentClient,
        config: ScannerConfig,
        *,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.client = client
        self.config = config
        self.http_transport = http_transport

    async def scan(self, target_url: str) -> AsyncIterator[ScanProgress]:
        try:
            if urlparse(target_url).scheme not in ("http", "https"):
                raise ValueError("Invalid URL protocol")

            yield ScanProgress(
                stage="initialising",
                message="Preparing to analyse your website",
                detail=target_url,
                progress=5,
            )

            async with httpx.AsyncClient(
                headers={
                    "User-Agent": self.config.user_agent,
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                },
                follow_redirects=True,
                transport=self.http_transport,
            ) as http:
                yield ScanProgress(
                    stage="discovering",
                    message="Discovering your website structure",
                    detail="Looking for sitemap and key pages...",
                    progress=15,
                )
                pages, business_name, industry = await self._discover(http, target_url)
                yield ScanProgress(
                    stage="discovering",
                    message=f"Found {len(pages)} key pages",
                    detail=f"Analysing {business_name} ({industry})",
                    progress=30,
                )

                yield ScanProgress(
                    stage="fetching",
                    message="Reading your website content",
                    detail=f"Extracting content from {len(pages)} pages...",
                    progress=40,
                )
                contents = await self._extract(http, pages)
                yield ScanProgress(
                    stage="fetching",
                    message="Content extracted successfully",
                    detail=f"Processed {len(contents)} pages",
                    progress=55,
                )

            yield ScanProgress(
                stage="analysing",
                message="Identifying AI opportunities",
                detail="Our AI is analysing your business for potential solutions...",
                progress=65,
            )
            opportunities = await self._analyse(business_name, industry, contents)
            yield ScanProgress(
                stage="analysing",
                message=f"Found {len(opportunities)} opportunities",
                detail="Ranking by impact and feasibility...",
                progress=80,
            )

            yield ScanProgress(
                stage="generating",
                message="Generating your personalised insights",
                detail="Creating actionable recommendations...",
                progress=90,
            )
            top = max(opportunities, key=opportunity_score) if opportunities else None
            summary = await self._summarise(business_name, industry, opportunities, top)

            result = ScanResult(
                url=target_url,
                business_name=business_name,
                industry=industry,
                pages_analysed=len(contents),
                opportunities=opportunities,
                top_recommendation=top,
                summary=summary,
            )
            yield ScanProgress(
                stage="complete",
                message="Analysis complete",
                detail=summary,
                progress=100,
                data=result,
            )

        except Exception as e:
            logger.error(f"Scanner error for {target_url}: {e}", exc_info=True)
            yield ScanProgress(
                stage="error",
                message="Analysis failed",
                detail=str(e) or "An unexpected error occurred",
                progress=0,
            )

    async def _fetch(self, http: httpx.AsyncClient, url: str, timeout: float) -> str | None:
        """Return the body text, or None for 404s, timeouts and other failures."""
        try:
            response = await http.get(url, timeout=timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Fetch failed for {url}: {e}")
            return None
        if response.status_code >= 400:
            return None
        return response.text

    async def _discover(
        self, http: httpx.AsyncClient, base_url: str
    ) -> tuple[list[DiscoveredPage], str, str]:
        parsed = urlparse(base_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"

        sitemap = ""
        for path in SITEMAP_PATHS:
            body = await self._fetch(http, origin + path, self.config.sitemap_timeout_s)
            if body:
                sitemap = body
                break

        homepage = await self._fetch(http, base_url, self.config.fetch_timeout_s)
        homepage_text = html_to_text(homepage) if homepage else ""
        sitemap_block = f"\nSitemap content:\n{sitemap[:5000]}" if sitemap else "No sitemap found."

        prompt = f"""{BRITISH_ENGLISH}

Analyse this website to discover key pages and understand the business.

Website URL: {base_url}
{sitemap_block}

Homepage content:
{homepage_text[:8000]}

Tasks:
1. Identify the business name and industry
2. Find up to {self.config.max_pages} key pages to analyse (prioritise: services, products, about, features)
3. Categorise each page

Return JSON in this exact format:
{{
  "businessName": "Company Name",
  "industry": "e.g., E-commerce, SaaS, Healthcare, etc.",
  "pages": [
    {{
      "url": "https://example.com/page",
      "title": "Page Title",
      "category": "homepage|product|service|blog|documentation|about|contact|other",
      "priority": 1-10
    }}
  ]
}}

Only return the JSON, no other text."""

        completion = await self.client.generate(
            [{"role": "user", "content": prompt}],
            temperature=0.3,
            max_tokens=2000,
            model=self.client.models.fast,
        )
        found = extract_json(completion.content)
        if not isinstance(found, dict):
            logger.warning(f"Page discovery returned no JSON for {base_url}, using homepage only")
            return (
                [DiscoveredPage(url=base_url, title="Homepage", category="homepage", priority=10)],
                "Unknown Business",
                "Unknown",
            )

        pages = []
        for raw in found.get("pages") or []:
            try:
                pages.append(DiscoveredPage.model_validate(raw))
            except PydanticValidationError:
                continue
        if not pages:
            pages = [DiscoveredPage(url=base_url, title="Homepage", category="homepage", priority=10)]
        return (
            pages[: self.config.max_pages],
            found.get("businessName") or "Unknown Business",
            found.get("industry") or "Unknown",
        )

    async def _extract(
        self, http: httpx.AsyncClient, pages: list[DiscoveredPage]
    ) -> list[PageContent]:
        contents = []
        for page in pages:
            body = await self._fetch(http, page.url, self.config.fetch_timeout_s)
            text = html_to_text(body) if body else ""
            if not text:
                continue
            contents.append(
                PageContent(
                    url=page.url,
                    title=page.title,
                    description=text[:500],
                    content_type=page.category,
                )
            )
        return contents

    async def _analyse(
        self, business_name: str, industry: str, contents: list[PageContent]
    ) -> list[AIOpportunity]:
        content_summary = "\n\n".join(
            f"Page: {c.title} ({c.url})\nContent: {c.description}" for c in contents
        )
        prompt = f"""{BRITISH_ENGLISH}

You are an expert AI strategist for {business_name}, a {industry} business.

Analyse their website content and identify 3 specific, high-impact AI opportunities.

Website content:
{content_summary}

Return JSON in this exact format:
{{
  "opportunities": [
    {{
      "id": "opp-1",
      "title": "Short, compelling title",
      "description": "2-3 sentences explaining the opportunity and its value",
      "category": "chatbot|automation|personalisation|search|analytics|content|other",
      "targetPages": ["relevant page URLs"],
      "painPointsSolved": ["specific pain point 1", "specific pain point 2"],
      "complexity": 1-5,
      "impact": 1-5,
      "implementationSketch": "Brief technical approach in 1-2 sentences",
      "icon": "MessageSquare|Zap|Target|Search|BarChart|FileText|Sparkles"
    }}
  ]
}}

Focus on opportunities that are specific to THIS business, actionable, and high impact
relative to complexity.

Only return the JSON, no other text."""

        completion = await self.client.generate(
            [{"role": "user", "content": prompt}], temperature=0.5, max_tokens=3000
        )
        found = extract_json(completion.content)
        raw_items = found.get("opportunities", []) if isinstance(found, dict) else []

        opportunities = []
        for raw in raw_items:
            try:
                opportunities.append(AIOpportunity.model_validate(raw))
            except PydanticValidationError as e:
                logger.warning(f"Dropping malformed opportunity: {e}")
        return opportunities

    async def _summarise(
        self,
        business_name: str,
        industry: str,
        opportunities: list[AIOpportunity],
        top: AIOpportunity | None,
    ) -> str:
        found = "\n".join(f"- {o.title}: {o.description}" for o in opportunities)
        prompt = f"""{BRITISH_ENGLISH}

Write a brief, compelling summary (2-3 sentences) for {business_name} ({industry}) about their AI opportunities.

Opportunities found:
{found}

Top recommendation: {top.title if top else "None"}

The summary should be conversational and engaging, highlight the potential value,
and create urgency to explore further.

Return only the summary text, nothing else."""

        completion = await self.client.generate(
            [{"role": "user", "content": prompt}],
            temperature=0.7,
            max_tokens=500,
            model=self.client.models.fast,
        )
        return completion.content.strip()
