"""Request/response models: the contract between the service and the site.

Keys are camelCase on the wire (the site is a TypeScript client) and
snake_case in Python.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Explorer: company analysis
# ---------------------------------------------------------------------------


class GroundingSource(CamelModel):
    uri: str
    title: str


class CompetitorInsight(CamelModel):
    name: str
    strategic_focus: str = ""
    relevance: str = ""


class CompanyData(CamelModel):
    company_name: str
    url: str = ""
    industry: str = ""
    description: str = ""
    key_themes: list[str] = []
    recent_initiatives: list[str] = []
    competitors: list[CompetitorInsight] = []
    sources: list[GroundingSource] = []
    is_grounded: bool = False


class EvidencePoint(CamelModel):
    point: str
    source: str = ""
    url: str | None = None
    date: str | None = None


class StrategicPriority(CamelModel):
    priority: str
    rationale: str | None = None
    confidence: Literal["high", "medium", "low"] = "medium"
    evidence: list[EvidencePoint] = []


class StrategicInference(CamelModel):
    priorities: list[StrategicPriority]
    disclaimer: str = ""


# ---------------------------------------------------------------------------
# Explorer: opportunity generation
# ---------------------------------------------------------------------------


class RiskAssessment(CamelModel):
    rating: Literal["low", "medium", "high"] = "medium"
    justification: str = ""
    implementation_risks: list[str] = []


class UseCase(CamelModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: str
    description: str = ""
    path: Literal["reimagination", "efficiency"]
    relevance_score: int = 0
    timeframe: str | None = None
    impact: str | None = None
    tags: list[str] = []
    strategic_rationale: str = ""
    advantages: list[str] = []
    risks: list[str] = []
    uncertainties: list[str] = []
    tradeoffs: list[str] = []
    risk_assessment: RiskAssessment | None = None


class TwoPaths(CamelModel):
    reimagination: list[UseCase] = []
    efficiency: list[UseCase] = []


# ---------------------------------------------------------------------------
# Explorer: market signals
# ---------------------------------------------------------------------------


class MarketSignal(CamelModel):
    company: str
    country: str = ""
    industry: str = ""
    initiative: str
    source: str = ""
    date: str = ""


class MarketSignals(CamelModel):
    signals: list[MarketSignal] = []
    disclaimer: str = ""
    sources: list[GroundingSource] = []
    is_grounded: bool = False


# ---------------------------------------------------------------------------
# Website scanner
# ---------------------------------------------------------------------------

ScanStage = Literal[
    "initialising", "discovering", "fetching", "analysing", "generating", "complete", "error"
]


class DiscoveredPage(CamelModel):
    url: str
    title: str = ""
    category: str = "other"
    priority: int = 5


class PageContent(CamelModel):
    url: str
    title: str
    description: str
    content_type: str


class AIOpportunity(CamelModel):
    id: str
    title: str
    description: str = ""
    category: str = "other"
    target_pages: list[str] = []
    pain_points_solved: list[str] = []
    complexity: int = Field(default=3, ge=1, le=5)
    impact: int = Field(default=3, ge=1, le=5)
    implementation_sketch: str = ""
    icon: str = "Sparkles"


class ScanResult(CamelModel):
    url: str
    business_name: str
    industry: str
    pages_analysed: int = 0
    opportunities: list[AIOpportunity] = []
    top_recommendation: AIOpportunity | None = None
    summary: str = ""


class ScanProgress(CamelModel):
    """One progress notification from the scanner. Serialized as-is onto the stream."""

    stage: ScanStage
    message: str
    detail: str | None = None
    progress: int | None = None
    data: ScanResult | None = None


# ---------------------------------------------------------------------------
# Notification endpoints
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    role: str
    content: str = ""


class ScanReportRequest(CamelModel):
    result: ScanResult
    email: str
    name: str | None = None
