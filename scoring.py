# =============================================================================
# Citation Score: pure Python, no Claude needed
# =============================================================================
#
# calculate_citation_score(): 0-100 health score for one client's listings.
# citation_stats(): live / pending / failed / total counts for a citation set.
#
# Works on plain attributes so it runs against ORM rows or test doubles alike.
# =============================================================================

from typing import Iterable

# Tier 1 directories are essential; anything past tier 2 counts once.
TIER_WEIGHTS = {1: 3, 2: 2}
DEFAULT_TIER_WEIGHT = 1

GENERAL_CATEGORY = "general"


def tier_weight(tier) -> int:
    try:
        return TIER_WEIGHTS.get(int(tier), DEFAULT_TIER_WEIGHT)
    except (TypeError, ValueError):
        return DEFAULT_TIER_WEIGHT


def citation_stats(citations: Iterable) -> dict:
    """Count citations by status. total == live + pending + failed."""
    stats = {"total": 0, "live": 0, "pending": 0, "failed": 0}
    for c in citations:
        status = getattr(c, "status", None)
        if status not in ("live", "pending", "failed"):
            continue
        stats[status] += 1
        stats["total"] += 1
    return stats


def is_relevant(directory, category: str) -> bool:
    """General directories suit everyone; others must list the client's category."""
    tags = {str(t).strip().lower() for t in (directory.categories or [])}
    return GENERAL_CATEGORY in tags or (category or "").strip().lower() in tags


def calculate_citation_score(category: str, citations: Iterable, directories: Iterable) -> int:
    """
    Score a client's citation coverage.

    Relevant directories are those matching the client's category (or
    general), plus any directory the client already has a citation on.
    Score = tier-weighted share of relevant directories with a live listing.
    """
    citations = list(citations)
    cited = {c.directory_id: c.status for c in citations}

    total_weight = 0
    live_weight = 0
    for d in directories:
        if d.id not in cited and not is_relevant(d, category):
            continue
        w = tier_weight(d.tier)
        total_weight += w
        if cited.get(d.id) == "live":
            live_weight += w

    if total_weight == 0:
        return 0
    return max(0, min(100, round(100 * live_weight / total_weight)))
