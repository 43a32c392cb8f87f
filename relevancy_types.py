"""Shared data types and errors for the relevancy tool."""

from dataclasses import dataclass, field
from typing import Any, Optional


class RelevancyError(Exception):
    """Base class for all relevancy tool errors."""


class InvalidInput(RelevancyError, ValueError):
    """A scoring call or store path is missing required data or is malformed."""


class StoreError(RelevancyError):
    """A read or write against the hierarchical store failed."""


class NotFound(RelevancyError, LookupError):
    """No node exists at the requested store path."""

    def __init__(self, path: str):
        super().__init__(f"No node at '{path}'")
        self.path = path


class SearchError(RelevancyError):
    """The external product search call failed or returned nothing."""


@dataclass
class Judgement:
    """A human-assigned relevance grade for one product within one query."""

    product_id: str
    score: Any  # raw stored value, parsed with scoring.ndcg.parse_score


@dataclass
class ResultItem:
    """One product in a query's ordered search results."""

    product_id: str
    rank: int
    fields: dict = field(default_factory=dict)  # display passthrough (title, brand, skus)

    def to_node(self) -> dict:
        node = dict(self.fields)
        node["id"] = self.product_id
        node["rank"] = self.rank
        return node


@dataclass
class SiteConfig:
    """Search configuration of a site, as stored on the site node."""

    endpoint: str
    site_code: str
    field_list: str = ""
    result_limit: int = 20

    @classmethod
    def from_node(cls, node: dict, result_limit: int = 20) -> "SiteConfig":
        """Build a SiteConfig from a stored site node.

        Args:
            node: Site node with apiUrl, code and fields
            result_limit: Number of results to request

        Returns:
            SiteConfig

        Raises:
            InvalidInput: If the site has no apiUrl or code
        """
        endpoint = (node or {}).get("apiUrl")
        site_code = (node or {}).get("code")
        if not endpoint or not site_code:
            raise InvalidInput("Site node is missing apiUrl or code")
        return cls(
            endpoint=endpoint.rstrip("/"),
            site_code=site_code,
            field_list=node.get("fields") or "",
            result_limit=result_limit,
        )


@dataclass
class QueryScore:
    """Outcome of scoring one query."""

    site_id: str
    case_id: str
    query_id: str
    score: float
    rollup_requested: bool = True


@dataclass
class ChangeEvent:
    """A write observed on the store's change-notification stream."""

    path: str
    value: Optional[Any]
