# =============================================================================
# Advisory Pipeline: Claude-backed citation reports and directory picks
# =============================================================================
#
# One request flows through:
#   snapshot (client + citations) -> flow context -> prompt -> Claude
#   -> extraction (Parsed | Degraded) -> sink (persist / shape response)
#
# Two flows share the pipeline:
#   ReportFlow         : executive summary, insights, recommendations; saved
#   RecommendationFlow : ranked directory picks; returned only
#
# The session and the Claude client are passed in; nothing here holds state.
# =============================================================================

import asyncio
import json
import logging
from typing import Optional

import anthropic
from anthropic import AsyncAnthropic
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from database import Citation, Client, Directory, Report
from extraction import extract_recommendations, extract_report
from scoring import citation_stats

logger = logging.getLogger("localcite")

REPORT_TYPE = "citation_audit"
DEFAULT_RECOMMENDATION_LIMIT = 15
CATALOG_SORT_KEYS = ("tier", "domain_authority")


# ---------------------------------------------------------------------------
# Errors: each carries the HTTP status the API boundary responds with
# ---------------------------------------------------------------------------

class AdvisoryError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidInput(AdvisoryError):
    status_code = 400
    message = "Invalid input"


class Unauthenticated(AdvisoryError):
    status_code = 401
    message = "Unauthorized"


class NotFound(AdvisoryError):
    status_code = 404
    message = "Not found"


class CatalogEmpty(NotFound):
    message = "No directories found"


class ServiceMisconfigured(AdvisoryError):
    status_code = 500
    message = "Claude API key not configured"


class UpstreamError(AdvisoryError):
    status_code = 502
    message = "AI service error"


ServiceUnavailable = UpstreamError


class PersistenceError(AdvisoryError):
    status_code = 500
    message = "Failed to save report"


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

class ClientSnapshot:
    """One client plus its citations and the status counts derived from them."""

    def __init__(self, client: Client, citations: list):
        self.client = client
        self.citations = citations
        self.stats = citation_stats(citations)

    def directory_names(self, status: str) -> list[str]:
        return [
            c.directory.name for c in self.citations
            if c.status == status and c.directory is not None
        ]


def read_client_snapshot(db: Session, client_id: str, agency_id: Optional[str] = None) -> ClientSnapshot:
    """Load a client and its citations with their directories. Raises NotFound; never writes."""
    query = db.query(Client).filter(Client.id == client_id)
    if agency_id is not None:
        query = query.filter(Client.agency_id == agency_id)
    client = query.first()
    if client is None:
        raise NotFound("Client not found")

    citations = (
        db.query(Citation)
        .options(joinedload(Citation.directory))
        .filter(Citation.client_id == client.id)
        .order_by(Citation.created_at.asc(), Citation.id.asc())
        .all()
    )
    return ClientSnapshot(client, citations)


def read_catalog(db: Session, sort: str = "tier") -> list[Directory]:
    """All directories, tier ascending or domain authority descending. Raises CatalogEmpty."""
    if sort == "domain_authority":
        order = (Directory.domain_authority.desc(), Directory.tier.asc(), Directory.name.asc())
    elif sort == "tier":
        order = (Directory.tier.asc(), Directory.domain_authority.desc(), Directory.name.asc())
    else:
        raise InvalidInput(f"sort must be one of {', '.join(CATALOG_SORT_KEYS)}")

    directories = db.query(Directory).order_by(*order).all()
    if not directories:
        raise CatalogEmpty()
    return directories


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

REPORT_PROMPT = """You are a UK local SEO expert writing a citation report for an agency client.

Client Details:
- Business: {business_name}
- Category: {category}
- City: {city}
- Postcode: {postcode}
- Citation Score: {citation_score}/100

Citation Statistics:
- Total Citations: {total}
- Live: {live}
- Pending: {pending}
- Failed: {failed}

Live citations on: {live_names}
Pending citations on: {pending_names}

Generate a professional citation report with:
1. An executive summary (2-3 paragraphs) of current citation status and local SEO health
2. Key insights about their current citation profile (3-5 bullet points)
3. Actionable recommendations to improve their local visibility (3-5 bullet points)

Return your response as JSON:
{{
  "summary": "string",
  "insights": "string (use \\n for line breaks between points)",
  "recommendations": "string (use \\n for line breaks between points)"
}}

Return ONLY the JSON object, no other text."""

RECOMMENDATION_PROMPT = """You are a local SEO expert specialising in UK businesses. A client business needs citation recommendations.

Client Details:
- Business: {business_name}
- Category: {category}
- City: {city}
- Postcode: {postcode}
- Current Citation Score: {citation_score}

Available Directories:
{directory_json}

{scope} for this {category} business in {city}. For each recommendation, explain in one sentence why it's a good fit. Prioritise:
1. Tier 1 general directories (always include)
2. Category-specific directories matching "{category}"
3. Higher domain authority
4. Free directories first, then paid
5. UK-only directories for UK businesses

Return your response as JSON with this structure:
{{
  "recommendations": [
    {{
      "directory_id": "string",
      "directory_name": "string",
      "priority": "high" | "medium" | "low",
      "reason": "string"
    }}
  ],
  "strategy_notes": "string"
}}

Return ONLY the JSON object, no other text."""


def build_report_prompt(snapshot: ClientSnapshot) -> str:
    client = snapshot.client
    stats = snapshot.stats
    return REPORT_PROMPT.format(
        business_name=client.business_name,
        category=client.category,
        city=client.city,
        postcode=client.postcode,
        citation_score=client.citation_score,
        total=stats["total"],
        live=stats["live"],
        pending=stats["pending"],
        failed=stats["failed"],
        live_names=", ".join(snapshot.directory_names("live")) or "None yet",
        pending_names=", ".join(snapshot.directory_names("pending")) or "None",
    )


def build_recommendation_prompt(
    snapshot: ClientSnapshot,
    directories: list,
    limit: Optional[int] = DEFAULT_RECOMMENDATION_LIMIT,
) -> str:
    client = snapshot.client
    catalog = [
        {
            "id": d.id,
            "name": d.name,
            "tier": d.tier,
            "domain_authority": d.domain_authority,
            "categories": d.categories,
            "automation_level": d.automation_level,
            "is_free": d.is_free,
            "uk_only": d.uk_only,
        }
        for d in directories
    ]
    scope = f"Recommend the top {limit} directories" if limit else "Recommend all applicable directories"
    return RECOMMENDATION_PROMPT.format(
        business_name=client.business_name,
        category=client.category,
        city=client.city,
        postcode=client.postcode,
        citation_score=client.citation_score,
        directory_json=json.dumps(catalog, indent=2),
        scope=scope,
    )


# ---------------------------------------------------------------------------
# Claude client: one attempt per request, no SDK retries
# ---------------------------------------------------------------------------

class AdvisoryClient:
    """Thin wrapper over the Anthropic messages API. Built once per process."""

    def __init__(self, api_key: str, model: str, sdk_client=None):
        self.api_key = api_key
        self.model = model
        self._sdk = sdk_client

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self._sdk is not None

    def _client(self):
        if self._sdk is None:
            if not self.api_key:
                raise ServiceMisconfigured()
            self._sdk = AsyncAnthropic(api_key=self.api_key, max_retries=0)
        return self._sdk

    async def complete(self, prompt: str, max_tokens: int) -> str:
        """Send ``prompt`` and return the first text block, or "" if there is none."""
        sdk = self._client()
        try:
            response = await sdk.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIStatusError as e:
            logger.error(f"Claude API error {e.status_code}: {e.message}")
            raise UpstreamError() from e
        except anthropic.APIConnectionError as e:
            logger.error(f"Claude API unreachable: {e}")
            raise UpstreamError() from e

        content = getattr(response, "content", None) or []
        if not content:
            return ""
        first = content[0]
        if getattr(first, "type", "text") != "text":
            return ""
        return getattr(first, "text", "") or ""


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------

class ReportFlow:
    name = "report"

    def __init__(self, max_tokens: int = 1500):
        self.max_tokens = max_tokens

    def load_context(self, db: Session, snapshot: ClientSnapshot) -> dict:
        return {"snapshot": snapshot}

    def build_prompt(self, context: dict) -> str:
        return build_report_prompt(context["snapshot"])

    def extract(self, text: str):
        return extract_report(text)

    def finish(self, db: Session, context: dict, extraction) -> dict:
        snapshot = context["snapshot"]
        content = extraction.value
        report = Report(
            client_id=snapshot.client.id,
            report_type=REPORT_TYPE,
            summary=content.summary,
            insights=content.insights,
            recommendations=content.recommendations,
        )
        try:
            db.add(report)
            db.commit()
            db.refresh(report)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Report save failed: {type(e).__name__}: {e}", exc_info=True)
            raise PersistenceError() from e

        client = snapshot.client
        return {
            "report": report.to_dict(),
            "client": {
                "business_name": client.business_name,
                "category": client.category,
                "city": client.city,
            },
            "citation_stats": dict(snapshot.stats),
            "degraded": extraction.degraded,
        }


class RecommendationFlow:
    name = "recommendation"

    def __init__(self, max_tokens: int = 1024, limit: Optional[int] = DEFAULT_RECOMMENDATION_LIMIT,
                 sort: str = "tier"):
        self.max_tokens = max_tokens
        self.limit = limit
        self.sort = sort

    def load_context(self, db: Session, snapshot: ClientSnapshot) -> dict:
        return {"snapshot": snapshot, "directories": read_catalog(db, self.sort)}

    def build_prompt(self, context: dict) -> str:
        return build_recommendation_prompt(context["snapshot"], context["directories"], self.limit)

    def extract(self, text: str):
        return extract_recommendations(text)

    def finish(self, db: Session, context: dict, extraction) -> dict:
        client = context["snapshot"].client
        result = extraction.value
        body = {
            "client": {
                "id": client.id,
                "business_name": client.business_name,
                "category": client.category,
                "city": client.city,
            },
            "recommendations": list(result.recommendations),
            "degraded": extraction.degraded,
        }
        if result.strategy_notes is not None:
            body["strategy_notes"] = result.strategy_notes
        return body


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def run_advisory(
    flow,
    db: Session,
    advisor: AdvisoryClient,
    client_id: str,
    agency_id: Optional[str] = None,
    request_id: str = "",
) -> dict:
    """
    Run one advisory request end to end. The first failing step raises its
    AdvisoryError; a reply that cannot be parsed is not a failure and comes
    back as the flow's degraded value.
    """
    loop = asyncio.get_running_loop()
    logger.info(f"[{request_id}] {flow.name} starting for client {client_id}")

    # DB work runs in the thread pool so we don't block the event loop
    snapshot = await loop.run_in_executor(None, read_client_snapshot, db, client_id, agency_id)
    context = await loop.run_in_executor(None, flow.load_context, db, snapshot)

    prompt = flow.build_prompt(context)
    text = await advisor.complete(prompt, flow.max_tokens)

    extraction = flow.extract(text)
    if extraction.degraded:
        logger.warning(f"[{request_id}] {flow.name} reply degraded: {extraction.reason}")

    result = await loop.run_in_executor(None, flow.finish, db, context, extraction)
    logger.info(f"[{request_id}] {flow.name} completed for client {client_id}")
    return result
