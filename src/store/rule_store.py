"""Remote-first, local-fallback rule store.

One RuleStore serves one category. Every operation runs against the remote
backend first; a TransportFailure (and only that) reroutes the same call to
the local backend, and the result is tagged with the source that produced it.
LocalStoreFailure from the fallback path is raised to the caller since no
further fallback exists.

Rules saved while offline stay LOCAL_ONLY: nothing replays them against the
remote store later. ``pending_local`` lists them for callers that want to.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar, Union

import httpx
import structlog
from pydantic import ValidationError

from models.rules import (
    AllRulesResult,
    BulkDeleteResult,
    CategoriesResult,
    DeleteResult,
    NotFound,
    Rule,
    RuleListFilters,
    RuleListResult,
    RuleMetadata,
    RuleResult,
    RuleSearchFilters,
    SaveResult,
    UsageResult,
)
from models.shared import COMMON_TAGS, ResultSource, RuleCategoryType, RuleOrigin
from store.backends import LocalRuleBackend, RemoteRuleBackend, RuleBackend
from store.local_replica import LocalReplicaStore
from utils.error_handler import (
    LocalStoreFailure,
    TransportFailure,
    UnsupportedCategoryError,
    ValidationFailure,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

OFFLINE_WARNING = "Using offline data due to connection issues"

_UNSET: Any = object()


def parse_category(value: Union[str, RuleCategoryType]) -> RuleCategoryType:
    try:
        return RuleCategoryType.parse(value)
    except ValueError as e:
        raise UnsupportedCategoryError(str(value)) from e


def _coerce_metadata(metadata: Union[RuleMetadata, Mapping[str, Any]]) -> RuleMetadata:
    """RuleMetadata from a mapping; malformed fields raise ValidationFailure."""
    if isinstance(metadata, RuleMetadata):
        return metadata
    try:
        return RuleMetadata.model_validate(dict(metadata))
    except ValidationError as e:
        raise ValidationFailure(
            [f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()]
        ) from e


class RuleStore:
    """CRUD, usage tracking and search for a single rule category."""

    def __init__(
        self,
        category: Union[str, RuleCategoryType],
        remote: RuleBackend,
        local: RuleBackend,
        replica: LocalReplicaStore,
    ) -> None:
        self.category = parse_category(category)
        self._remote = remote
        self._local = local
        self._replica = replica

    @classmethod
    def create(
        cls,
        category: Union[str, RuleCategoryType],
        client: httpx.AsyncClient,
        replica: LocalReplicaStore,
    ) -> "RuleStore":
        cat = parse_category(category)
        return cls(
            cat,
            remote=RemoteRuleBackend(cat, client),
            local=LocalRuleBackend(cat, replica),
            replica=replica,
        )

    async def _with_fallback(
        self,
        operation: str,
        call: Callable[[RuleBackend], Awaitable[T]],
        **context: Any,
    ) -> tuple[T, ResultSource]:
        """Run call on the remote backend, rerunning it locally on TransportFailure."""
        try:
            return await call(self._remote), ResultSource.REMOTE
        except TransportFailure as e:
            logger.warning(
                "remote_call_failed",
                operation=operation,
                category=self.category.value,
                status_code=e.status_code,
                error=e.details,
                **context,
            )
        result = await call(self._local)
        logger.info("served_from_local_replica", operation=operation, category=self.category.value, **context)
        return result, ResultSource.LOCAL

    def _remember_recent(self, rule: Rule) -> None:
        try:
            self._replica.push_recent(self.category, rule.to_record())
        except LocalStoreFailure as e:
            logger.warning("recent_rules_update_failed", category=self.category.value, error=e.details)

    # -- validation ---------------------------------------------------------

    def validate(self, metadata: Union[RuleMetadata, Mapping[str, Any]]) -> tuple[bool, list[str]]:
        try:
            errors = _coerce_metadata(metadata).validation_errors()
        except ValidationFailure as e:
            errors = e.errors
        return not errors, errors

    def _require_valid(self, metadata: RuleMetadata) -> None:
        errors = metadata.validation_errors()
        if errors:
            raise ValidationFailure(errors)

    # -- operations ---------------------------------------------------------

    async def save(self, metadata: Union[RuleMetadata, Mapping[str, Any]], rule_config: Any) -> SaveResult:
        """Validate and create a rule. Offline, the rule is kept in the replica as LOCAL_ONLY."""
        md = _coerce_metadata(metadata)
        self._require_valid(md)

        rule, source = await self._with_fallback(
            "save", lambda backend: backend.save(md, rule_config), name=md.name
        )
        self._remember_recent(rule)
        if source == ResultSource.LOCAL:
            return SaveResult(rule=rule, source=source, warning="Rule saved locally; it has not reached the server")

        logger.info("rule_saved", category=self.category.value, rule_id=rule.id)
        return SaveResult(rule=rule, source=source)

    async def list(self, filters: Optional[RuleListFilters] = None, **kwargs: Any) -> RuleListResult:
        filters = filters or RuleListFilters(**kwargs)
        rules, source = await self._with_fallback("list", lambda backend: backend.list(filters))
        return RuleListResult(
            rules=rules,
            source=source,
            warning=OFFLINE_WARNING if source == ResultSource.LOCAL else None,
        )

    async def get(self, rule_id: str) -> Union[RuleResult, NotFound]:
        rule, source = await self._with_fallback("get", lambda backend: backend.get(rule_id), rule_id=rule_id)
        if isinstance(rule, NotFound):
            return rule
        return RuleResult(rule=rule, source=source)

    async def update(
        self,
        rule_id: str,
        changes: Union[RuleMetadata, Mapping[str, Any]],
        rule_config: Any = _UNSET,
    ) -> Union[RuleResult, NotFound]:
        """Apply metadata changes (and optionally a new config) as a full replacement.

        Partial changes are merged onto the stored rule's metadata and the
        merged result is validated as a whole before anything is sent.
        """
        current = await self.get(rule_id)
        if isinstance(current, NotFound):
            return current
        existing = current.rule

        if isinstance(changes, RuleMetadata):
            merged = changes
        else:
            base = existing.to_metadata().model_dump()
            base.update(dict(changes))
            merged = _coerce_metadata(base)

        errors = merged.validation_errors()
        if existing.template_id and merged.template_id != existing.template_id:
            errors.append("Template reference cannot be changed once set")
        if errors:
            raise ValidationFailure(errors)

        config = existing.rule_config if rule_config is _UNSET else rule_config
        rule, source = await self._with_fallback(
            "update", lambda backend: backend.update(rule_id, merged, config), rule_id=rule_id
        )
        if isinstance(rule, NotFound):
            return rule
        return RuleResult(rule=rule, source=source)

    async def delete(self, rule_id: str) -> Union[DeleteResult, NotFound]:
        outcome, source = await self._with_fallback(
            "delete", lambda backend: backend.delete(rule_id), rule_id=rule_id
        )
        if isinstance(outcome, NotFound):
            return outcome
        return DeleteResult(id=rule_id, source=source)

    async def mark_used(self, rule_id: str) -> Union[UsageResult, NotFound]:
        """Increment usage_count; the returned count comes from whichever path succeeded."""
        count, source = await self._with_fallback(
            "mark_used", lambda backend: backend.mark_used(rule_id), rule_id=rule_id
        )
        if isinstance(count, NotFound):
            return count
        return UsageResult(id=rule_id, usage_count=count, source=source)

    async def search(self, filters: Optional[RuleSearchFilters] = None, **kwargs: Any) -> RuleListResult:
        filters = filters or RuleSearchFilters(**kwargs)
        rules, source = await self._with_fallback("search", lambda backend: backend.search(filters))
        return RuleListResult(
            rules=rules,
            source=source,
            warning=OFFLINE_WARNING if source == ResultSource.LOCAL else None,
        )

    async def bulk_delete(self, rule_ids: Sequence[str]) -> BulkDeleteResult:
        ids = list(rule_ids)
        (deleted_count, not_found_ids), source = await self._with_fallback(
            "bulk_delete", lambda backend: backend.bulk_delete(ids), count=len(ids)
        )
        return BulkDeleteResult(deleted_count=deleted_count, not_found_ids=not_found_ids, source=source)

    async def categories(self) -> CategoriesResult:
        categories, source = await self._with_fallback("categories", lambda backend: backend.categories())
        return CategoriesResult(categories=categories, source=source)

    def common_tags(self) -> list[str]:
        return list(COMMON_TAGS[self.category])

    def recent(self) -> list[Rule]:
        """Most recently saved rules, newest first."""
        rules: list[Rule] = []
        for record in self._replica.load_recent(self.category):
            try:
                rules.append(Rule.from_record(record, self.category))
            except ValueError as e:
                logger.warning("recent_record_skipped", category=self.category.value, error=str(e)[:200])
        return rules

    def pending_local(self) -> list[Rule]:
        """Replica rules whose last write never reached the remote store."""
        local = LocalRuleBackend(self.category, self._replica)
        return [r for r in local.load_all() if r.origin == RuleOrigin.LOCAL_ONLY]


class RuleRepository:
    """The three category stores sharing one HTTP client and one replica."""

    def __init__(self, client: httpx.AsyncClient, replica: LocalReplicaStore) -> None:
        self._client = client
        self._replica = replica
        self._stores = {cat: RuleStore.create(cat, client, replica) for cat in RuleCategoryType}

    @classmethod
    def from_env(cls, base_url: Optional[str] = None) -> "RuleRepository":
        return cls(RemoteRuleBackend.create_client(base_url), LocalReplicaStore())

    def store(self, category: Union[str, RuleCategoryType]) -> RuleStore:
        return self._stores[parse_category(category)]

    async def list_all(self, filters: Optional[RuleListFilters] = None) -> AllRulesResult:
        """All categories listed concurrently, newest (updated_at, else created_at) first."""
        filters = filters or RuleListFilters()
        categories = list(self._stores)
        results = await asyncio.gather(
            *(self._stores[cat].list(filters) for cat in categories),
            return_exceptions=True,
        )

        rules: list[Rule] = []
        sources: list[ResultSource] = []
        partial_failure = False
        for cat, result in zip(categories, results):
            if isinstance(result, LocalStoreFailure):
                logger.error("list_all_category_failed", category=cat.value, error=result.details)
                partial_failure = True
                continue
            if isinstance(result, BaseException):
                raise result
            rules.extend(result.rules)
            if result.source not in sources:
                sources.append(result.source)

        rules.sort(key=lambda r: r.updated_at or r.created_at, reverse=True)
        return AllRulesResult(rules=rules, sources=sources, partial_failure=partial_failure)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RuleRepository":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
