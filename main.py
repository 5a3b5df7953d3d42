# =============================================================================
# LocalCite: FastAPI Backend
# =============================================================================
# Multi-tenant citation dashboard for UK local SEO agencies.
#
# Areas:
#   1. Auth       : agency sign-up, login, JWT bearer tokens
#   2. Records    : clients, directory catalog, citations, reports
#   3. AI advisory: Claude citation reports + directory recommendations
#
# Run:  python main.py
# Test: curl http://localhost:8000/health
# =============================================================================

import asyncio
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException
import bcrypt as _bcrypt_lib
from jose import JWTError, jwt as jose_jwt
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

load_dotenv()                       # reads .env into os.environ before database.py

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("localcite")

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "") or os.getenv("CLAUDE_API_KEY", "")
CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-20250514")
REPORT_MAX_TOKENS = int(os.getenv("REPORT_MAX_TOKENS", "1500"))
RECOMMEND_MAX_TOKENS = int(os.getenv("RECOMMEND_MAX_TOKENS", "1024"))
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", "30"))

if not ANTHROPIC_API_KEY:
    logger.warning("ANTHROPIC_API_KEY is not set: AI endpoints will return 500")
if not JWT_SECRET:
    logger.warning("JWT_SECRET is not set: auth endpoints will fail")

# ---------------------------------------------------------------------------
# Database + advisory pipeline
# ---------------------------------------------------------------------------

from database import (  # noqa: E402
    CITATION_STATUSES, CLIENT_STATUSES, Agency, Citation, Client, Directory, Report, User,
    get_db, init_db,
)
from advisory import (  # noqa: E402
    DEFAULT_RECOMMENDATION_LIMIT, AdvisoryClient, AdvisoryError, InvalidInput,
    RecommendationFlow, ReportFlow, Unauthenticated, read_catalog, read_client_snapshot, run_advisory,
)
from pdf_export import build_report_pdf  # noqa: E402
from scoring import calculate_citation_score, citation_stats  # noqa: E402

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="LocalCite API",
    version="1.0.0",
    description="Citation tracking and AI advisory for UK local SEO agencies",
)

ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Built once per process; handlers receive it through get_advisory_client
app.state.advisory_client = AdvisoryClient(api_key=ANTHROPIC_API_KEY, model=CLAUDE_MODEL)


@app.on_event("startup")
async def startup_event():
    init_db()
    logger.info("Database tables ready")


def get_advisory_client(request: Request) -> AdvisoryClient:
    return request.app.state.advisory_client


# ---------------------------------------------------------------------------
# Error handlers: every failure leaves as {"error": "..."}
# ---------------------------------------------------------------------------

@app.exception_handler(AdvisoryError)
async def advisory_error_handler(request: Request, exc: AdvisoryError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# =============================================================================
# Auth: password hashing, JWT, request models, dependency
# =============================================================================

def _hash_password(password: str) -> str:
    return _bcrypt_lib.hashpw(password.encode(), _bcrypt_lib.gensalt()).decode()


def _verify_password(plain: str, hashed: str) -> bool:
    return _bcrypt_lib.checkpw(plain.encode(), hashed.encode())


def _create_token(user_id: str, email: str) -> str:
    payload = {
        "sub": user_id,
        "email": email,
        "exp": datetime.utcnow() + timedelta(days=JWT_EXPIRE_DAYS),
    }
    return jose_jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


class CurrentUser(BaseModel):
    id: str
    email: str


def _decode_user(authorization: Optional[str]) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated()
    token = authorization[len("Bearer "):]
    try:
        payload = jose_jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise Unauthenticated("Invalid token")
    user_id = payload.get("sub")
    email = payload.get("email")
    if not user_id or not email:
        raise Unauthenticated("Invalid token")
    return CurrentUser(id=user_id, email=email)


def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    """FastAPI dependency: validates Bearer JWT and returns the current user."""
    return _decode_user(authorization)


def _agency_for(db: Session, user: CurrentUser) -> Agency:
    agency = db.query(Agency).filter(Agency.user_id == user.id).first()
    if not agency:
        raise HTTPException(status_code=404, detail="Agency not found")
    return agency


def get_current_agency(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Agency:
    """The agency owned by the authenticated user. Every record lookup is scoped to it."""
    return _agency_for(db, current_user)


class RegisterRequest(BaseModel):
    email: str
    password: str
    agency_name: str

    @field_validator("email")
    @classmethod
    def email_valid(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or len(v) > 255:
            raise ValueError("A valid email is required")
        return v

    @field_validator("password")
    @classmethod
    def password_valid(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v

    @field_validator("agency_name")
    @classmethod
    def agency_name_valid(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Agency name is required")
        return v


class LoginRequest(BaseModel):
    email: str
    password: str


# =============================================================================
# Auth endpoints
# =============================================================================

@app.post("/auth/register", status_code=201)
def auth_register(body: RegisterRequest, db: Session = Depends(get_db)):
    """Create an agency owner account and its agency."""
    if db.query(User).filter(User.email == body.email).first():
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(email=body.email, hashed_password=_hash_password(body.password))
    db.add(user)
    db.flush()
    agency = Agency(user_id=user.id, name=body.agency_name)
    db.add(agency)
    db.commit()
    logger.info(f"Registered agency '{agency.name}' ({agency.id})")
    token = _create_token(user.id, user.email)
    return {"id": user.id, "email": user.email, "agency_id": agency.id, "access_token": token}


@app.post("/auth/login")
def auth_login(body: LoginRequest, db: Session = Depends(get_db)):
    """Verify email/password credentials and issue a bearer token."""
    email = body.email.lower().strip()
    user = db.query(User).filter(User.email == email).first()
    if not user or not _verify_password(body.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    agency = db.query(Agency).filter(Agency.user_id == user.id).first()
    token = _create_token(user.id, user.email)
    return {
        "id": user.id,
        "email": user.email,
        "agency_id": agency.id if agency else None,
        "access_token": token,
    }


# =============================================================================
# Request models: records
# =============================================================================

CLIENT_CATEGORIES = ("Plumber", "Electrician", "Builder", "Dentist", "Solicitor", "Restaurant", "Other")


def _required(v: str, label: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError(f"{label} is required")
    return v


def _match_category(v: str) -> str:
    v = v.strip()
    match = next((c for c in CLIENT_CATEGORIES if c.lower() == v.lower()), None)
    if not match:
        raise ValueError(f"Category must be one of {', '.join(CLIENT_CATEGORIES)}")
    return match


class ClientCreate(BaseModel):
    business_name: str
    category: str
    city: str
    postcode: str
    address_line_1: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None

    @field_validator("business_name")
    @classmethod
    def business_name_valid(cls, v: str) -> str:
        return _required(v, "Business name")

    @field_validator("city")
    @classmethod
    def city_valid(cls, v: str) -> str:
        return _required(v, "City")

    @field_validator("postcode")
    @classmethod
    def postcode_valid(cls, v: str) -> str:
        return _required(v, "Postcode").upper()

    @field_validator("category")
    @classmethod
    def category_valid(cls, v: str) -> str:
        return _match_category(v)


class ClientUpdate(BaseModel):
    business_name: Optional[str] = None
    category: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None
    address_line_1: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    status: Optional[str] = None

    @field_validator("category")
    @classmethod
    def category_valid(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _match_category(v)

    @field_validator("status")
    @classmethod
    def status_valid(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in CLIENT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(CLIENT_STATUSES)}")
        return v


class CitationCreate(BaseModel):
    directory_id: str
    status: Literal["live", "pending", "failed"] = "pending"
    listing_url: Optional[str] = None


class CitationUpdate(BaseModel):
    status: Literal["live", "pending", "failed"]
    listing_url: Optional[str] = None


class AdvisoryRequest(BaseModel):
    # Optional so a missing clientId is reported as 400 by the handler itself
    clientId: Optional[str] = None


class RecommendationRequest(AdvisoryRequest):
    limit: Optional[int] = DEFAULT_RECOMMENDATION_LIMIT
    sortBy: Literal["tier", "domain_authority"] = "tier"

    @field_validator("limit")
    @classmethod
    def limit_valid(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and not 1 <= v <= 100:
            raise ValueError("limit must be between 1 and 100")
        return v


# =============================================================================
# Serialisers
# =============================================================================

def _client_dict(c: Client) -> dict:
    return {
        "id": c.id,
        "agency_id": c.agency_id,
        "business_name": c.business_name,
        "category": c.category,
        "address_line_1": c.address_line_1,
        "city": c.city,
        "postcode": c.postcode,
        "phone": c.phone,
        "email": c.email,
        "website": c.website,
        "citation_score": c.citation_score,
        "live_citations": c.live_citations,
        "pending_citations": c.pending_citations,
        "status": c.status,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }


def _citation_dict(c: Citation) -> dict:
    return {
        "id": c.id,
        "client_id": c.client_id,
        "directory_id": c.directory_id,
        "directory_name": c.directory.name if c.directory else None,
        "status": c.status,
        "listing_url": c.listing_url,
        "updated_at": c.updated_at.isoformat() if c.updated_at else None,
    }


def _owned_client(db: Session, agency: Agency, client_id: str) -> Client:
    client = db.query(Client).filter(Client.id == client_id, Client.agency_id == agency.id).first()
    if not client:
        raise HTTPException(status_code=404, detail="Client not found")
    return client


def _refresh_citation_totals(db: Session, client: Client) -> None:
    """Recompute the client's denormalized counters and score from its citation set."""
    citations = db.query(Citation).filter(Citation.client_id == client.id).all()
    stats = citation_stats(citations)
    client.live_citations = stats["live"]
    client.pending_citations = stats["pending"]
    client.citation_score = calculate_citation_score(
        client.category, citations, db.query(Directory).all(),
    )


# =============================================================================
# Agency dashboard
# =============================================================================

@app.get("/agency")
def get_agency(agency: Agency = Depends(get_current_agency), db: Session = Depends(get_db)):
    """Agency identity plus headline stats across all of its clients."""
    clients = db.query(Client).filter(Client.agency_id == agency.id).all()
    avg_score = round(sum(c.citation_score or 0 for c in clients) / len(clients)) if clients else 0
    return {
        "id": agency.id,
        "name": agency.name,
        "stats": {
            "total_clients": len(clients),
            "live_citations": sum(c.live_citations or 0 for c in clients),
            "pending_citations": sum(c.pending_citations or 0 for c in clients),
            "avg_score": avg_score,
        },
    }


# =============================================================================
# Clients
# =============================================================================

@app.get("/clients")
def list_clients(agency: Agency = Depends(get_current_agency), db: Session = Depends(get_db)):
    rows = (
        db.query(Client)
        .filter(Client.agency_id == agency.id)
        .order_by(Client.created_at.desc())
        .all()
    )
    return [_client_dict(c) for c in rows]


@app.post("/clients", status_code=201)
def create_client(body: ClientCreate, agency: Agency = Depends(get_current_agency),
                  db: Session = Depends(get_db)):
    client = Client(agency_id=agency.id, status="active", **body.model_dump())
    db.add(client)
    db.commit()
    db.refresh(client)
    logger.info(f"Client '{client.business_name}' added for agency {agency.id}")
    return _client_dict(client)


@app.get("/clients/{client_id}")
def get_client(client_id: str, agency: Agency = Depends(get_current_agency),
               db: Session = Depends(get_db)):
    """Client record with its citations and derived status counts."""
    snapshot = read_client_snapshot(db, client_id, agency.id)
    return {
        **_client_dict(snapshot.client),
        "citations": [_citation_dict(c) for c in snapshot.citations],
        "citation_stats": snapshot.stats,
    }


@app.patch("/clients/{client_id}")
def update_client(client_id: str, body: ClientUpdate, agency: Agency = Depends(get_current_agency),
                  db: Session = Depends(get_db)):
    client = _owned_client(db, agency, client_id)
    changes = body.model_dump(exclude_unset=True)
    for field in ("business_name", "city", "postcode", "category", "status"):
        if field in changes and not (changes[field] or "").strip():
            raise HTTPException(status_code=400, detail=f"{field} cannot be blank")
        if field in changes:
            changes[field] = changes[field].strip()
    if "postcode" in changes:
        changes["postcode"] = changes["postcode"].upper()
    for field, value in changes.items():
        setattr(client, field, value)
    if "category" in changes:
        # Relevance depends on category, so the score moves with it
        _refresh_citation_totals(db, client)
    db.commit()
    db.refresh(client)
    return _client_dict(client)


# =============================================================================
# Directory catalog
# =============================================================================

@app.get("/directories")
def list_directories(sort: str = "tier", current_user: CurrentUser = Depends(get_current_user),
                     db: Session = Depends(get_db)):
    return [d.to_dict() for d in read_catalog(db, sort)]


# =============================================================================
# Citations
# =============================================================================

@app.post("/clients/{client_id}/citations", status_code=201)
def create_citation(client_id: str, body: CitationCreate, agency: Agency = Depends(get_current_agency),
                    db: Session = Depends(get_db)):
    client = _owned_client(db, agency, client_id)
    directory = db.query(Directory).filter(Directory.id == body.directory_id).first()
    if not directory:
        raise HTTPException(status_code=404, detail="Directory not found")

    citation = Citation(
        client_id=client.id,
        directory_id=directory.id,
        status=body.status,
        listing_url=body.listing_url,
    )
    db.add(citation)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Citation already tracked for this directory")

    _refresh_citation_totals(db, client)
    db.commit()
    db.refresh(citation)
    return _citation_dict(citation)


@app.patch("/citations/{citation_id}")
def update_citation(citation_id: str, body: CitationUpdate, agency: Agency = Depends(get_current_agency),
                    db: Session = Depends(get_db)):
    citation = (
        db.query(Citation)
        .join(Client, Client.id == Citation.client_id)
        .filter(Citation.id == citation_id, Client.agency_id == agency.id)
        .first()
    )
    if not citation:
        raise HTTPException(status_code=404, detail="Citation not found")

    citation.status = body.status
    if body.listing_url is not None:
        citation.listing_url = body.listing_url
    db.flush()
    _refresh_citation_totals(db, citation.client)
    db.commit()
    db.refresh(citation)
    return _citation_dict(citation)


# =============================================================================
# Reports
# =============================================================================

def _owned_report(db: Session, agency: Agency, report_id: str) -> Report:
    report = (
        db.query(Report)
        .join(Client, Client.id == Report.client_id)
        .filter(Report.id == report_id, Client.agency_id == agency.id)
        .first()
    )
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


@app.get("/clients/{client_id}/reports")
def list_reports(client_id: str, limit: int = Query(20, ge=1, le=100), offset: int = Query(0, ge=0),
                 agency: Agency = Depends(get_current_agency), db: Session = Depends(get_db)):
    client = _owned_client(db, agency, client_id)
    rows = (
        db.query(Report)
        .filter(Report.client_id == client.id)
        .order_by(Report.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [r.to_dict() for r in rows]


@app.get("/reports/{report_id}")
def get_report(report_id: str, agency: Agency = Depends(get_current_agency),
               db: Session = Depends(get_db)):
    return _owned_report(db, agency, report_id).to_dict()


@app.post("/reports/{report_id}/export")
def export_report_pdf(report_id: str, agency: Agency = Depends(get_current_agency),
                      db: Session = Depends(get_db)):
    """Generate and return a PDF for a saved report (owner agency only)."""
    report = _owned_report(db, agency, report_id)
    snapshot = read_client_snapshot(db, report.client_id, agency.id)

    try:
        pdf_bytes = build_report_pdf(report.to_dict(), _client_dict(snapshot.client), snapshot.stats)
    except Exception as e:
        logger.error(f"PDF generation failed for {report_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="PDF generation failed")

    slug = snapshot.client.business_name.lower().replace(" ", "-")[:30]
    filename = f"citation-report-{slug}-{report_id[:8]}.pdf"

    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


# =============================================================================
# AI advisory
# =============================================================================

def _advisory_user(client_id: Optional[str], authorization: Optional[str]) -> CurrentUser:
    """clientId is checked before authentication so a bad body never costs a lookup."""
    if not client_id or not str(client_id).strip():
        raise InvalidInput("clientId is required")
    return _decode_user(authorization)


@app.post("/ai/generate-report")
async def generate_report(
    body: AdvisoryRequest,
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    advisor: AdvisoryClient = Depends(get_advisory_client),
):
    """Claude-written citation report for one client, saved and returned."""
    user = _advisory_user(body.clientId, authorization)
    request_id = str(uuid.uuid4())[:8]
    agency = await asyncio.get_running_loop().run_in_executor(None, _agency_for, db, user)
    try:
        return await run_advisory(
            ReportFlow(max_tokens=REPORT_MAX_TOKENS), db, advisor,
            body.clientId, agency_id=agency.id, request_id=request_id,
        )
    except AdvisoryError as e:
        logger.warning(f"[{request_id}] generate-report failed ({e.status_code}): {e.message}")
        raise


@app.post("/ai/optimize-citations")
async def optimize_citations(
    body: RecommendationRequest,
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    advisor: AdvisoryClient = Depends(get_advisory_client),
):
    """Claude-ranked directory recommendations for one client. Not persisted."""
    user = _advisory_user(body.clientId, authorization)
    request_id = str(uuid.uuid4())[:8]
    agency = await asyncio.get_running_loop().run_in_executor(None, _agency_for, db, user)
    flow = RecommendationFlow(max_tokens=RECOMMEND_MAX_TOKENS, limit=body.limit, sort=body.sortBy)
    try:
        return await run_advisory(flow, db, advisor, body.clientId, agency_id=agency.id,
                                  request_id=request_id)
    except AdvisoryError as e:
        logger.warning(f"[{request_id}] optimize-citations failed ({e.status_code}): {e.message}")
        raise


# =============================================================================
# Health & info
# =============================================================================

@app.get("/health")
async def health(request: Request):
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "api_key_set": request.app.state.advisory_client.configured,
    }


@app.get("/info")
async def info():
    return {
        "name": "LocalCite API",
        "version": "1.0.0",
        "model": CLAUDE_MODEL,
        "citation_statuses": list(CITATION_STATUSES),
        "endpoints": {
            "register": "POST /auth/register",
            "login": "POST /auth/login",
            "clients": "GET|POST /clients",
            "directories": "GET /directories",
            "citations": "POST /clients/{id}/citations",
            "generate_report": "POST /ai/generate-report",
            "optimize_citations": "POST /ai/optimize-citations",
            "health": "GET /health",
        },
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
