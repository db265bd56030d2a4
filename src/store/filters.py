"""Client-side equivalents of the remote list/search predicates."""
from __future__ import annotations

from config.loader import get_default_list_limit
from models.rules import Rule, RuleListFilters, RuleSearchFilters


def matches_list_filters(rule: Rule, filters: RuleListFilters) -> bool:
    if filters.category and rule.category != filters.category:
        return False
    if filters.template_id and rule.template_id != filters.template_id:
        return False
    return True


def paginate(rules: list[Rule], filters: RuleListFilters) -> list[Rule]:
    """Slice [offset, offset + limit); limit defaults to rules.default_list_limit."""
    offset = filters.offset or 0
    limit = filters.limit or get_default_list_limit()
    return rules[offset: offset + limit]


def apply_list_filters(rules: list[Rule], filters: RuleListFilters) -> list[Rule]:
    return paginate([r for r in rules if matches_list_filters(r, filters)], filters)


def matches_search(rule: Rule, filters: RuleSearchFilters) -> bool:
    """
    All given criteria must hold:
    - category / template_id: exact match
    - tags: at least one shared tag
    - name_contains: case-insensitive substring of name or description
    """
    if filters.category and rule.category != filters.category:
        return False
    if filters.template_id and rule.template_id != filters.template_id:
        return False
    if filters.tags:
        rule_tags = set(rule.tags or [])
        if not any(tag in rule_tags for tag in filters.tags):
            return False
    if filters.name_contains:
        term = filters.name_contains.lower()
        name = (rule.name or "").lower()
        description = (rule.description or "").lower()
        if term not in name and term not in description:
            return False
    return True


def apply_search(rules: list[Rule], filters: RuleSearchFilters) -> list[Rule]:
    return [r for r in rules if matches_search(r, filters)]
