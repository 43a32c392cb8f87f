"""Store path helpers for the site/case/query tree."""

from typing import List

from relevancy_types import InvalidInput

SITES = "sites"
SCORES = "scores"
SNAPSHOTS = "snapshots"


def split_path(path: str) -> List[str]:
    """Split a store path into validated segments.

    Args:
        path: Slash-separated path, leading/trailing slashes ignored

    Returns:
        List of segments (empty for the root)

    Raises:
        InvalidInput: If a segment is empty
    """
    stripped = (path or "").strip("/")
    if not stripped:
        return []
    segments = stripped.split("/")
    if any(not s for s in segments):
        raise InvalidInput(f"Invalid store path '{path}'")
    return segments


def join_path(*segments: str) -> str:
    for segment in segments:
        if not segment or "/" in str(segment):
            raise InvalidInput(f"Invalid path segment '{segment}'")
    return "/".join(str(s) for s in segments)


def site_path(site_id: str) -> str:
    return join_path(SITES, site_id)


def case_path(site_id: str, case_id: str) -> str:
    return join_path(SITES, site_id, "cases", case_id)


def query_path(site_id: str, case_id: str, query_id: str) -> str:
    return join_path(SITES, site_id, "cases", case_id, "queries", query_id)


def score_index_path(site_id: str, *ids: str) -> str:
    """Path in the score index, nested as scores/{site}/{case}/{query}.

    With only a site (or site and case) id, the path of that subtree.
    """
    return join_path(SCORES, site_id, *ids)
