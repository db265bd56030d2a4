"""Pure query operations over rule collections."""
from query.engine import Facets, RuleQueryEngine, matches_search_term
from query.transfer import import_rules, parse_export

__all__ = [
    "Facets",
    "RuleQueryEngine",
    "matches_search_term",
    "import_rules",
    "parse_export",
]
