import pytest

from conftest import make_agency, make_catalog, make_client, register
from database import Report, seed_directories

NEW_CLIENT = {
    "business_name": "Bright Sparks Electrical",
    "category": "electrician",
    "city": "Leeds",
    "postcode": "ls1 4ap",
    "phone": "0113 496 0000",
    "website": "https://brightsparks.example",
}


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def test_register_then_login(api):
    headers, agency_id = register(api, email="Founder@Agency.co.uk")
    resp = api.post("/auth/login", json={"email": "founder@agency.co.uk", "password": "s3cret-pass"})
    assert resp.status_code == 200
    assert resp.json()["agency_id"] == agency_id
    assert resp.json()["access_token"]


def test_register_duplicate_email(api, agency):
    resp = api.post("/auth/register", json={
        "email": "owner@agency.co.uk", "password": "another-pass", "agency_name": "Copycat",
    })
    assert resp.status_code == 400
    assert resp.json() == {"error": "Email already registered"}


@pytest.mark.parametrize("body", [
    {"email": "not-an-email", "password": "s3cret-pass", "agency_name": "A"},
    {"email": "a@b.co.uk", "password": "short", "agency_name": "A"},
    {"email": "a@b.co.uk", "password": "s3cret-pass", "agency_name": "  "},
])
def test_register_validation(api, body):
    resp = api.post("/auth/register", json=body)
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_login_bad_password(api, agency):
    resp = api.post("/auth/login", json={"email": "owner@agency.co.uk", "password": "wrong-pass"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "Invalid credentials"}


def test_records_require_auth(api):
    for path in ("/agency", "/clients", "/directories"):
        assert api.get(path).status_code == 401


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

def test_create_client_defaults(api, agency):
    headers, agency_id = agency
    resp = api.post("/clients", json=NEW_CLIENT, headers=headers)
    assert resp.status_code == 201, resp.text
    data = resp.json()
    assert data["agency_id"] == agency_id
    assert data["category"] == "Electrician"
    assert data["postcode"] == "LS1 4AP"
    assert data["status"] == "active"
    assert (data["citation_score"], data["live_citations"], data["pending_citations"]) == (0, 0, 0)


def test_create_client_rejects_unknown_category(api, agency):
    headers, _ = agency
    resp = api.post("/clients", json={**NEW_CLIENT, "category": "Astronaut"}, headers=headers)
    assert resp.status_code == 400
    assert "Category must be one of" in resp.json()["error"]


def test_create_client_requires_postcode(api, agency):
    headers, _ = agency
    body = {k: v for k, v in NEW_CLIENT.items() if k != "postcode"}
    assert api.post("/clients", json=body, headers=headers).status_code == 400


def test_clients_are_scoped_to_agency(api, agency, db):
    headers, agency_id = agency
    mine = make_client(db, agency_id)
    rival = make_agency(db, email="rival@agency.co.uk", name="Rival")
    theirs = make_client(db, rival.id, business_name="Rival Roofing")

    listed = api.get("/clients", headers=headers).json()
    assert [c["id"] for c in listed] == [mine.id]
    assert api.get(f"/clients/{theirs.id}", headers=headers).status_code == 404
    assert api.patch(f"/clients/{theirs.id}", json={"status": "paused"}, headers=headers).status_code == 404


def test_update_client(api, agency, db):
    headers, agency_id = agency
    client = make_client(db, agency_id)

    resp = api.patch(f"/clients/{client.id}", json={"status": "paused", "phone": "0161 496 0000"},
                     headers=headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "paused"
    assert resp.json()["phone"] == "0161 496 0000"

    assert api.patch(f"/clients/{client.id}", json={"status": "deleted"}, headers=headers).status_code == 400
    assert api.patch(f"/clients/{client.id}", json={"city": " "}, headers=headers).status_code == 400


def test_update_client_trims_fields(api, agency, db):
    headers, agency_id = agency
    client = make_client(db, agency_id)

    resp = api.patch(f"/clients/{client.id}",
                     json={"business_name": "  ABC Plumbing Ltd ", "city": " Salford", "postcode": " m5 4wt "},
                     headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert (data["business_name"], data["city"], data["postcode"]) == ("ABC Plumbing Ltd", "Salford", "M5 4WT")


# ---------------------------------------------------------------------------
# Directories + citations
# ---------------------------------------------------------------------------

def test_directories_sorted(api, agency, db):
    headers, _ = agency
    make_catalog(db)
    by_da = api.get("/directories?sort=domain_authority", headers=headers).json()
    assert [d["domain_authority"] for d in by_da] == sorted((d["domain_authority"] for d in by_da), reverse=True)
    by_tier = api.get("/directories", headers=headers).json()
    assert by_tier[0]["tier"] == 1
    assert by_tier[0]["categories"] == ["general"]
    assert api.get("/directories?sort=name", headers=headers).status_code == 400


def test_directories_empty_catalog(api, agency):
    headers, _ = agency
    resp = api.get("/directories", headers=headers)
    assert resp.status_code == 404
    assert resp.json() == {"error": "No directories found"}


def test_citation_changes_refresh_client_totals(api, agency, db):
    headers, agency_id = agency
    client = make_client(db, agency_id, citation_score=0)
    gbp, yell, checkatrade, _, _ = make_catalog(db)

    resp = api.post(f"/clients/{client.id}/citations",
                    json={"directory_id": gbp.id, "status": "live"}, headers=headers)
    assert resp.status_code == 201
    assert resp.json()["directory_name"] == "Google Business Profile"
    pending = api.post(f"/clients/{client.id}/citations",
                       json={"directory_id": checkatrade.id}, headers=headers).json()
    assert pending["status"] == "pending"

    detail = api.get(f"/clients/{client.id}", headers=headers).json()
    assert detail["live_citations"] == 1
    assert detail["pending_citations"] == 1
    # gbp 3 live of gbp 3 + yell 3 + yelp 2 + checkatrade 2
    assert detail["citation_score"] == 30
    assert detail["citation_stats"] == {"total": 2, "live": 1, "pending": 1, "failed": 0}
    assert len(detail["citations"]) == 2

    resp = api.patch(f"/citations/{pending['id']}", json={"status": "live"}, headers=headers)
    assert resp.status_code == 200
    detail = api.get(f"/clients/{client.id}", headers=headers).json()
    assert (detail["live_citations"], detail["pending_citations"], detail["citation_score"]) == (2, 0, 50)


def test_citation_errors(api, agency, db):
    headers, agency_id = agency
    client = make_client(db, agency_id)
    gbp = make_catalog(db)[0]

    url = f"/clients/{client.id}/citations"
    assert api.post(url, json={"directory_id": "nope"}, headers=headers).status_code == 404
    assert api.post(url, json={"directory_id": gbp.id, "status": "maybe"}, headers=headers).status_code == 400
    assert api.post(url, json={"directory_id": gbp.id}, headers=headers).status_code == 201
    dup = api.post(url, json={"directory_id": gbp.id}, headers=headers)
    assert dup.status_code == 400
    assert dup.json() == {"error": "Citation already tracked for this directory"}
    assert api.patch("/citations/nope", json={"status": "live"}, headers=headers).status_code == 404


def test_agency_dashboard_stats(api, agency, db):
    headers, agency_id = agency
    make_client(db, agency_id, citation_score=60, live_citations=4, pending_citations=1)
    make_client(db, agency_id, business_name="Smile Dental", category="Dentist",
                citation_score=35, live_citations=2, pending_citations=3)

    data = api.get("/agency", headers=headers).json()
    assert data["name"] == "North West SEO"
    assert data["stats"] == {
        "total_clients": 2, "live_citations": 6, "pending_citations": 4, "avg_score": 48,
    }


def test_agency_dashboard_without_clients(api, agency):
    headers, _ = agency
    assert api.get("/agency", headers=headers).json()["stats"]["avg_score"] == 0


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def _saved_report(db, client_id) -> Report:
    report = Report(
        client_id=client_id,
        summary="Solid foundations on core directories.",
        insights="Google live\nYell pending",
        recommendations="- Claim Bing Places\n- Fix NAP on Yell",
    )
    db.add(report)
    db.commit()
    return report


def test_report_list_and_get(api, agency, db):
    headers, agency_id = agency
    client = make_client(db, agency_id)
    report = _saved_report(db, client.id)

    listed = api.get(f"/clients/{client.id}/reports", headers=headers).json()
    assert [r["id"] for r in listed] == [report.id]
    got = api.get(f"/reports/{report.id}", headers=headers).json()
    assert got["report_type"] == "citation_audit"
    assert got["insights"] == "Google live\nYell pending"


def test_report_list_paging(api, agency, db):
    headers, agency_id = agency
    client = make_client(db, agency_id)
    _saved_report(db, client.id)
    _saved_report(db, client.id)

    url = f"/clients/{client.id}/reports"
    assert len(api.get(url, params={"limit": 1}, headers=headers).json()) == 1
    assert len(api.get(url, params={"offset": 1}, headers=headers).json()) == 1
    for params in ({"limit": -1}, {"limit": 0}, {"limit": 101}, {"offset": -5}):
        resp = api.get(url, params=params, headers=headers)
        assert resp.status_code == 400
        assert "error" in resp.json()


def test_report_export_pdf(api, agency, db):
    headers, agency_id = agency
    client = make_client(db, agency_id)
    report = _saved_report(db, client.id)

    resp = api.post(f"/reports/{report.id}/export", headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/pdf"
    assert "citation-report-abc-plumbing" in resp.headers["content-disposition"]
    assert resp.content.startswith(b"%PDF")


def test_reports_hidden_from_other_agencies(api, agency, db):
    rival = make_agency(db, email="rival@agency.co.uk", name="Rival")
    theirs = make_client(db, rival.id)
    report = _saved_report(db, theirs.id)
    headers, _ = agency
    assert api.get(f"/reports/{report.id}", headers=headers).status_code == 404
    assert api.post(f"/reports/{report.id}/export", headers=headers).status_code == 404


# ---------------------------------------------------------------------------
# Seed + ops
# ---------------------------------------------------------------------------

def test_seed_directories_once(db):
    added = seed_directories(db)
    assert added > 0
    assert seed_directories(db) == 0


def test_health(api):
    data = api.get("/health").json()
    assert data["status"] == "ok"
    assert data["api_key_set"] is False


def test_unknown_route_uses_error_body(api):
    resp = api.get("/nope")
    assert resp.status_code == 404
    assert "error" in resp.json()
